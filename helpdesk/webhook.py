"""
Slack/Discord webhook sink: POST one message per incident event.
Uses WEBHOOK_URL from config; no-op if unset.
"""

import json
import logging
import ssl
import urllib.request
from typing import Any

from helpdesk.config import WEBHOOK_URL
from helpdesk.models import NotificationEvent

logger = logging.getLogger(__name__)


def _build_slack_payload(event: NotificationEvent) -> dict[str, Any]:
    """Build a Slack-compatible webhook payload."""
    inc = event.incident
    return {
        "text": event.message or f"Incident {inc.incident_number} {event.kind.value}",
        "blocks": [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": (
                        f"*Incident:* `{inc.incident_number}`\n*Event:* {event.kind.value}\n"
                        f"*Category:* {inc.category}\n*Status:* {inc.status.value}\n"
                        f"*Handler:* {inc.handler or '-'}\n*Priority:* {inc.priority.value}"
                    ),
                },
            },
        ],
    }


def _do_post(url: str, payload: dict[str, Any]) -> None:
    """Synchronous POST (runs on a dispatcher thread)."""
    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    ctx = ssl.create_default_context()
    urllib.request.urlopen(req, timeout=5, context=ctx)


class WebhookSink:
    def __init__(self, url: str = WEBHOOK_URL):
        self.url = url

    def deliver(self, event: NotificationEvent) -> None:
        if not self.url:
            return
        try:
            _do_post(self.url, _build_slack_payload(event))
        except Exception as e:
            logger.warning("Webhook delivery failed for incident %s: %s", event.incident.incident_number, e)
