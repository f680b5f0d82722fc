"""Append-only incident history."""

import logging
from typing import Optional

from helpdesk.models import Incident, IncidentHistory, IncidentStatus
from helpdesk.store import Datastore

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "System"

PENDING_LABELS = {
    IncidentStatus.PENDING_ASSIGNMENT: "Pending Assignment",
    IncidentStatus.PENDING_TIER2_ASSIGNMENT: "Pending Tier2 Assignment",
}


class HistoryRecorder:
    def __init__(self, store: Datastore):
        self.store = store

    def display_name(self, person_id: Optional[str]) -> str:
        """Technician or team admin display name, falling back to the raw id."""
        if not person_id:
            return ""
        try:
            tech = self.store.get_technician(person_id)
            if tech and tech.name:
                return tech.name
            admin = self.store.get_team_admin(person_id)
            if admin and admin.user_name:
                return admin.user_name
        except Exception as e:
            logger.warning("Display name lookup failed for %s: %s", person_id, e)
        return person_id

    def assignee_label(self, incident: Incident) -> str:
        if incident.handler:
            return self.display_name(incident.handler)
        return PENDING_LABELS.get(incident.status, "N/A")

    def record(
        self,
        incident: Incident,
        comment: str,
        actor: Optional[str] = None,
        attachment: str = "",
        attachment_original_name: str = "",
    ) -> IncidentHistory:
        """Append one entry capturing the incident's status and assignee as they are now."""
        entry = IncidentHistory(
            incident_number=incident.incident_number,
            status=incident.status,
            assigned_to=self.assignee_label(incident),
            updated_by=SYSTEM_ACTOR if actor is None else self.display_name(actor),
            comment=comment or "",
            category=incident.category,
            location=incident.location,
            attachment=attachment or "",
            attachment_original_name=attachment_original_name or "",
        )
        self.store.add_history(entry)
        logger.debug("History recorded for %s: %s -> %s", incident.incident_number, entry.status.value, entry.assigned_to)
        return entry
