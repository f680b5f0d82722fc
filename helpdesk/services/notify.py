"""Build incident events and hand them to the notification sinks without waiting."""

import logging
from typing import Callable, Iterable, Optional

from helpdesk.dispatch import Dispatcher
from helpdesk.models import EventKind, Incident, NotificationEvent, NotificationSink

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(
        self,
        sinks: Iterable[NotificationSink],
        dispatcher: Dispatcher,
        display_name: Optional[Callable[[str], str]] = None,
    ):
        self.sinks = list(sinks)
        self.dispatcher = dispatcher
        self.display_name = display_name or (lambda person_id: person_id)

    def build_events(self, incident: Incident, kind: EventKind) -> list[NotificationEvent]:
        """Messages per recipient for one state change; the first event is the broadcast."""
        number = incident.incident_number
        handler = incident.handler
        handler_name = self.display_name(handler) if handler else None
        events = [NotificationEvent(kind=kind, incident=incident, broadcast=True)]

        def direct(recipient: str, message: str) -> None:
            events.append(NotificationEvent(
                kind=kind, incident=incident, message=message, recipients=[recipient], broadcast=False,
            ))

        if kind in (EventKind.CREATED, EventKind.ASSIGNED):
            if handler:
                direct(handler, f"You have been assigned incident {number}")
            if incident.informant and handler:
                direct(incident.informant, f"Your incident {number} has been assigned to {handler_name or handler}")
        elif kind == EventKind.TRANSFERRED:
            if handler:
                direct(handler, f"Incident {number} has been transferred to you")
        elif kind == EventKind.UPDATED:
            if handler:
                direct(handler, f"Incident {number} has been updated")
        elif kind == EventKind.CLOSED:
            if incident.informant:
                direct(incident.informant, f"Your incident {number} has been closed by the technician")
            events[0].message = f"Incident {number} has been closed by technician {handler_name or handler}"
        return events

    def notify(self, incident: Incident, kind: EventKind) -> None:
        """Submit every event to every sink as a detached task. Never raises."""
        try:
            events = self.build_events(incident, kind)
        except Exception as e:
            logger.exception("Failed to build %s events for incident %s: %s", kind.value, incident.incident_number, e)
            return
        for event in events:
            for sink in self.sinks:
                self.dispatcher.submit(f"notify-{kind.value}-{incident.incident_number}", sink.deliver, event)
        logger.debug("Dispatched %d %s event(s) for incident %s.", len(events), kind.value, incident.incident_number)
