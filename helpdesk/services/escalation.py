"""
Escalation controller: the incident create / update state machine.

Creation tries Tier1 of the category's team and otherwise parks the incident in
Pending-Assignment. An update is evaluated in a fixed order:

  1. category change   -> Tier1 of the new team, or Pending-Assignment (cancels 2 and 3)
  2. assign_tier2      -> Tier2 of the team, or Pending-Tier2-Assignment
  3. assign_team_admin -> the current handler's team admin (no pending state, no capacity check)
  4. manual handler    -> target must be active, skilled and under the ceiling

Closing an incident or changing its handler schedules, without waiting, a backfill of the
previous handler's queue and a Tier2 pending pass.
"""

import logging
from typing import Optional

from helpdesk.dispatch import Dispatcher
from helpdesk.errors import (
    IncidentNotFound,
    NoCurrentHandler,
    TeamAdminNotFound,
    TechnicianAtCapacity,
    TechnicianNotFound,
    TechnicianNotSkilled,
    ValidationError,
    wrap_infrastructure,
)
from helpdesk.models import (
    ACTIVE_STATUSES,
    PENDING_STATUSES,
    EventKind,
    Incident,
    IncidentCreate,
    IncidentStatus,
    IncidentUpdate,
    TeamAdmin,
    utcnow,
)
from helpdesk.services.candidates import CandidateSearch
from helpdesk.services.hierarchy import CategoryHierarchyResolver
from helpdesk.services.history import HistoryRecorder
from helpdesk.services.notify import Notifier
from helpdesk.services.skills import SkillMatcher
from helpdesk.services.sweep import PendingSweepScheduler
from helpdesk.services.workload import WorkloadGate
from helpdesk.store import Datastore

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("informant", "location", "category")

PENDING_REASON_CREATE = "Incident moved to pending queue - no active technicians available"
PENDING_REASON_CATEGORY = "Incident moved to pending queue - no active technicians available for the new category"
PENDING_REASON_TIER2 = "Incident moved to Tier2 pending queue - no active Tier2 technicians available"


def format_incident_number(day, sequence: int) -> str:
    """INYYYY.MM.DD.NNNN, sequence restarting every day."""
    return f"IN{day:%Y.%m.%d}.{sequence:04d}"


class EscalationController:
    def __init__(
        self,
        store: Datastore,
        resolver: CategoryHierarchyResolver,
        matcher: SkillMatcher,
        search: CandidateSearch,
        gate: WorkloadGate,
        history: HistoryRecorder,
        notifier: Notifier,
        dispatcher: Dispatcher,
        scheduler: Optional[PendingSweepScheduler] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.matcher = matcher
        self.search = search
        self.gate = gate
        self.history = history
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.scheduler = scheduler

    # --- create ---

    def create_incident(self, payload: IncidentCreate) -> Incident:
        for name in REQUIRED_FIELDS:
            if not (getattr(payload, name) or "").strip():
                raise ValidationError(f"Missing required field: {name}")

        with wrap_infrastructure("create incident"):
            path = self.resolver.resolve(payload.category)
            with self.gate.admission():
                technician = self.search.tier1(path)
                now = utcnow()
                incident = Incident(
                    incident_number=format_incident_number(now, self.store.next_incident_sequence(now.date())),
                    informant=payload.informant.strip(),
                    location=payload.location,
                    category=payload.category,
                    priority=payload.priority,
                    updated_by=payload.updated_by or payload.informant.strip(),
                    description=payload.description,
                    notify_informant=payload.notify_informant,
                    attachment_filename=payload.attachment_filename,
                    attachment_original_name=payload.attachment_original_name,
                    handler=technician.technician_id if technician else None,
                    status=IncidentStatus.OPEN if technician else IncidentStatus.PENDING_ASSIGNMENT,
                    created_at=now,
                    updated_at=now,
                )
                self.store.save_incident(incident)

            if technician:
                logger.info("Incident %s created and assigned to %s.", incident.incident_number, technician.technician_id)
                comment = payload.description
            else:
                logger.info("Incident %s created as %s: no Tier1 technician available for '%s'.",
                            incident.incident_number, incident.status.value, path.sub_category)
                comment = PENDING_REASON_CREATE
            self.history.record(
                incident,
                comment,
                actor=incident.updated_by,
                attachment=payload.attachment_filename,
                attachment_original_name=payload.attachment_original_name,
            )

        self.notifier.notify(incident, EventKind.CREATED)
        return incident

    # --- update ---

    def update_incident(self, incident_number: str, update: IncidentUpdate) -> Incident:
        fields = update.changes()
        if not fields and not (update.assign_tier2 or update.assign_team_admin):
            raise ValidationError("At least one field is required to update")

        with wrap_infrastructure(f"update incident {incident_number}"):
            with self.gate.admission():
                incident = self.store.get_incident(incident_number)
                if incident is None:
                    raise IncidentNotFound(incident_number)
                updated, pending_reason = self._apply(incident, update, fields)

                comment = pending_reason or fields.get("description") or incident.description
                self.history.record(
                    updated,
                    comment,
                    actor=updated.updated_by,
                    attachment=fields.get("attachment_filename") or "",
                    attachment_original_name=fields.get("attachment_original_name") or "",
                )
                self.store.save_incident(updated)

        self._after_update(incident, updated)
        return updated

    def _apply(self, incident: Incident, update: IncidentUpdate, fields: dict) -> tuple[Incident, Optional[str]]:
        """Run the four escalation steps in order; returns the new incident and a pending reason if parked."""
        target = dict(fields)
        assign_tier2 = update.assign_tier2
        assign_team_admin = update.assign_team_admin
        pending_reason = None

        category_changed = bool(fields.get("category")) and fields["category"] != incident.category
        if category_changed:
            path = self.resolver.resolve(fields["category"])
            technician = self.search.tier1(path)
            if technician:
                target["handler"] = technician.technician_id
                logger.info("Incident %s reassigned to %s after category change to '%s'.",
                            incident.incident_number, technician.technician_id, path.category)
            else:
                target["handler"] = None
                target["status"] = IncidentStatus.PENDING_ASSIGNMENT
                pending_reason = PENDING_REASON_CATEGORY
                logger.info("Incident %s set to pending after category change to '%s'.",
                            incident.incident_number, path.category)
            assign_tier2 = assign_team_admin = False

        if assign_tier2:
            path = self.resolver.resolve(target.get("category") or incident.category)
            technician = self.search.tier2(path)
            if technician:
                target["handler"] = technician.technician_id
                logger.info("Incident %s escalated to Tier2 technician %s.", incident.incident_number, technician.technician_id)
            else:
                target["handler"] = None
                target["status"] = IncidentStatus.PENDING_TIER2_ASSIGNMENT
                pending_reason = PENDING_REASON_TIER2
                logger.info("Incident %s added to Tier2 pending queue for team '%s'.",
                            incident.incident_number, path.team_name)

        if assign_team_admin:
            admin = self._team_admin_for(incident.handler)
            target["handler"] = admin.admin_id
            logger.info("Incident %s escalated to team admin %s.", incident.incident_number, admin.admin_id)

        manual = (
            fields.get("handler")
            and fields["handler"] != incident.handler
            and not (category_changed or update.assign_tier2 or update.assign_team_admin)
        )
        if manual:
            self._validate_manual_assignment(fields["handler"], target.get("category") or incident.category)

        updated = incident.model_copy(update=target)
        updated.updated_at = utcnow()
        if updated.status in PENDING_STATUSES:
            if pending_reason is not None or fields.get("status") in PENDING_STATUSES:
                updated.handler = None
            elif updated.handler:
                updated.status = IncidentStatus.OPEN
        if updated.status in ACTIVE_STATUSES and not updated.handler:
            raise ValidationError(f"An incident in status {updated.status.value} requires a handler")
        return updated, pending_reason

    def _team_admin_for(self, handler: Optional[str]) -> TeamAdmin:
        if not handler:
            raise NoCurrentHandler("Cannot assign to a team admin because the incident has no current handler.")
        technician = self.store.get_technician(handler)
        if technician is None or not technician.active:
            raise TechnicianNotFound(handler)
        refs = [r for r in (technician.team, technician.team_id) if r]
        admin = self.store.find_team_admin(refs, active=True)
        if admin is None:
            raise TeamAdminNotFound(f"No active team admin found for technician's team ({', '.join(refs)}).")
        return admin

    def _validate_manual_assignment(self, handler: str, category: str) -> None:
        technician = self.store.get_technician(handler)
        if technician is None or not technician.active:
            raise TechnicianNotFound(handler)

        if not self.matcher.is_skilled(technician, category):
            path = self.resolver.try_resolve(category)
            sub = path.sub_category if path else "Unknown"
            team = path.team_name if path else "Unknown"
            logger.warning("Technician %s is not skilled for category '%s' (sub-category: %s).", handler, category, sub)
            raise TechnicianNotSkilled(
                f"Technician {technician.name} ({handler}) is not skilled to handle incidents in "
                f"sub-category '{sub}' (Category: {category}, Team: {team})."
            )

        load = self.gate.workload(handler)
        if load >= self.gate.ceiling:
            logger.warning("Technician %s is at max capacity (%d/%d).", handler, load, self.gate.ceiling)
            raise TechnicianAtCapacity(
                f"Technician {technician.name} ({handler}) is already at maximum capacity "
                f"({load}/{self.gate.ceiling} active incidents)."
            )

    # --- side effects ---

    def _after_update(self, before: Incident, after: Incident) -> None:
        closing = after.status == IncidentStatus.CLOSED and before.status != IncidentStatus.CLOSED
        handler_changed = after.handler != before.handler

        if handler_changed and after.handler:
            self.notifier.notify(after, EventKind.TRANSFERRED)
        if closing:
            self.notifier.notify(after, EventKind.CLOSED)
        if not closing and not (handler_changed and after.handler):
            self.notifier.notify(after, EventKind.UPDATED)

        if not (closing or handler_changed) or self.scheduler is None:
            return
        action = "CLOSED" if closing else "TRANSFERRED"
        if before.handler:
            logger.info("Triggering backfill for technician %s after %s incident %s.",
                        before.handler, action.lower(), after.incident_number)
            self.dispatcher.submit(
                f"backfill-{before.handler}", self.scheduler.backfill_technician, before.handler, action,
            )
        self.dispatcher.submit("tier2-pending-sweep", self.scheduler.sweep_tier2_pending)
