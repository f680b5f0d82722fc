"""
In-memory activity log for incident events (created, assigned, transferred, closed, ...).
With the Redis backend the worker publishes events on a pub/sub channel and the API
subscribes in a background thread, so the API's log also shows sweep assignments.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from helpdesk.config import ACTIVITY_MAX_EVENTS, REDIS_URL
from helpdesk.models import NotificationEvent

logger = logging.getLogger(__name__)

ACTIVITY_CHANNEL = "incident_activity"


@dataclass
class ActivityEvent:
    """One entry of the activity log; `data` is the JSON-ready event payload."""

    ts: float = field(default_factory=time.time)
    type: str = ""
    data: dict[str, Any] = field(default_factory=dict)


_events: list[ActivityEvent] = []
_lock = threading.Lock()


def emit(event_type: str, data: Optional[dict[str, Any]] = None) -> None:
    """Append an event, dropping the oldest beyond ACTIVITY_MAX_EVENTS."""
    with _lock:
        _events.append(ActivityEvent(type=event_type, data=data or {}))
        while len(_events) > ACTIVITY_MAX_EVENTS:
            _events.pop(0)


def get_recent(limit: int = 100, recipient: Optional[str] = None) -> list[dict]:
    """Return the most recent events (newest last), optionally only those addressed to `recipient`."""
    with _lock:
        events = list(_events)
    if recipient is not None:
        events = [e for e in events if recipient in e.data.get("recipients", [])]
    return [{"ts": e.ts, "type": e.type, "data": e.data} for e in events[-limit:]]


def clear() -> None:
    with _lock:
        _events.clear()


_redis_client = None

# Seconds to wait before re-subscribing after the Redis connection drops.
RESUBSCRIBE_DELAY = 5.0


def _redis():
    import redis
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(REDIS_URL, decode_responses=True)
    return _redis_client


def _consume(pubsub) -> None:
    for message in pubsub.listen():
        if message["type"] != "message":
            continue
        try:
            payload = json.loads(message["data"])
            emit(payload["type"], payload.get("data", {}))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Dropping malformed activity message: %s", e)


def _redis_subscriber_thread(stop: threading.Event) -> None:
    """Daemon loop: mirror incident events published by other processes into this log."""
    while not stop.is_set():
        try:
            pubsub = _redis().pubsub(ignore_subscribe_messages=True)
            pubsub.subscribe(ACTIVITY_CHANNEL)
            logger.info("Activity subscriber listening on channel %s", ACTIVITY_CHANNEL)
            _consume(pubsub)
        except Exception as e:
            logger.warning("Activity subscriber lost Redis (%s); retrying in %.0fs", e, RESUBSCRIBE_DELAY)
            stop.wait(RESUBSCRIBE_DELAY)


def start_redis_subscriber() -> threading.Event:
    """Start the subscriber thread; set the returned event to stop it after its next reconnect."""
    stop = threading.Event()
    threading.Thread(target=_redis_subscriber_thread, args=(stop,), name="activity-subscriber", daemon=True).start()
    return stop


def publish_event(event_type: str, data: dict[str, Any]) -> None:
    """Send an event to every subscribed API process. Failures are logged, never raised."""
    try:
        receivers = _redis().publish(ACTIVITY_CHANNEL, json.dumps({"type": event_type, "data": data}))
    except Exception as e:
        logger.warning("Activity publish failed for %s: %s", event_type, e)
        return
    if not receivers:
        logger.debug("No activity subscribers for %s.", event_type)


def event_payload(event: NotificationEvent) -> dict[str, Any]:
    return {
        "incident_number": event.incident.incident_number,
        "status": event.incident.status.value,
        "handler": event.incident.handler,
        "message": event.message,
        "recipients": list(event.recipients),
        "broadcast": event.broadcast,
        "incident": event.incident.model_dump(mode="json"),
    }


class ActivitySink:
    """NotificationSink writing to the local activity log, or to the Redis channel when `publish` is set."""

    def __init__(self, publish: bool = False):
        self.publish = publish

    def deliver(self, event: NotificationEvent) -> None:
        event_type = f"incident_{event.kind.value}"
        data = event_payload(event)
        if self.publish:
            publish_event(event_type, data)
        else:
            emit(event_type, data)
