"""Read-side incident queries and dashboard statistics."""

import logging
from datetime import date
from typing import Optional

from helpdesk.errors import IncidentNotFound, NotFoundError, ValidationError, wrap_infrastructure
from helpdesk.models import Incident, IncidentHistory, IncidentPriority, IncidentStatus, utcnow
from helpdesk.services.hierarchy import CategoryHierarchyResolver
from helpdesk.store import Datastore

logger = logging.getLogger(__name__)


def _newest_first(incidents: list[Incident]) -> list[Incident]:
    return sorted(incidents, key=lambda i: (i.updated_at, i.incident_number), reverse=True)


class IncidentQueries:
    def __init__(self, store: Datastore, resolver: CategoryHierarchyResolver):
        self.store = store
        self.resolver = resolver

    def get(self, incident_number: str) -> Incident:
        with wrap_infrastructure("retrieve incident"):
            incident = self.store.get_incident(incident_number)
        if incident is None:
            raise IncidentNotFound(incident_number)
        return incident

    def all(self) -> list[Incident]:
        with wrap_infrastructure("retrieve all incidents"):
            return self.store.list_incidents()

    def assigned_to(self, handler: str) -> list[Incident]:
        if not handler:
            raise ValidationError("handler is required")
        with wrap_infrastructure("retrieve incidents"):
            return self.store.list_incidents(handler=handler)

    def raised_by(self, informant: str) -> list[Incident]:
        """Incidents whose informant matches once surrounding whitespace is ignored."""
        if not informant or not informant.strip():
            raise ValidationError("informant is required")
        with wrap_infrastructure("retrieve incidents assigned by informant"):
            return self.store.list_incidents(informant=informant.strip())

    def by_category(self, category: str) -> list[Incident]:
        if not category:
            raise ValidationError("category is required")
        with wrap_infrastructure("retrieve incidents by category"):
            return self.store.list_incidents(category=category)

    def history(self, incident_number: str) -> list[IncidentHistory]:
        with wrap_infrastructure("retrieve incident history"):
            return self.store.list_history(incident_number)

    def by_main_category_code(self, code: str) -> list[Incident]:
        """Incidents of every category item under the main category with this code, newest first."""
        with wrap_infrastructure("retrieve incidents by main category code"):
            names = [
                item.name for item in self.store.list_category_items()
                if item.sub_category and item.sub_category.main_category
                and item.sub_category.main_category.code == code
            ]
            if not names:
                raise NotFoundError(f"No category items found for main category code: {code}")
            return _newest_first(self.store.list_incidents(category=names))

    def dashboard_stats(
        self,
        user_type: Optional[str] = None,
        technician_id: Optional[str] = None,
        admin_id: Optional[str] = None,
        today: Optional[date] = None,
    ) -> dict:
        """
        Status / priority counts, optionally scoped: a technician sees their own incidents,
        an admin sees their team's (team id holds the main category code). Overall counts are
        always over every incident.
        """
        today = today or utcnow().date()
        with wrap_infrastructure("retrieve dashboard stats"):
            incidents = self.store.list_incidents()
            scoped = incidents
            kind = (user_type or "").lower()
            if kind == "technician" and technician_id:
                scoped = self.store.list_incidents(handler=technician_id)
            elif kind == "admin" and admin_id:
                admin = self.store.get_team_admin(admin_id)
                if admin and admin.team_id:
                    try:
                        scoped = self.by_main_category_code(admin.team_id)
                    except NotFoundError:
                        scoped = []
                    logger.info("Dashboard for admin %s scoped to %d incidents (team %s).",
                                admin_id, len(scoped), admin.team_name)
                else:
                    logger.warning("No team admin found for service number %s.", admin_id)
                    scoped = []

        def is_today(incident: Incident) -> bool:
            return incident.updated_at.date() == today

        def status_counts(items, only_today=False) -> dict:
            suffix = " (Today)" if only_today else ""
            return {
                f"{s.value}{suffix}": sum(1 for i in items if i.status == s and (not only_today or is_today(i)))
                for s in IncidentStatus
            }

        return {
            "status_counts": status_counts(scoped),
            "priority_counts": {p.value: sum(1 for i in scoped if i.priority == p) for p in IncidentPriority},
            "today_stats": status_counts(scoped, only_today=True),
            "overall_status_counts": {**status_counts(incidents), **status_counts(incidents, only_today=True)},
        }
