"""
Pending sweep: retry incidents left in Pending-Assignment / Pending-Tier2-Assignment, and
backfill a technician's queue right after they close or hand off an incident.

Passes are serial and oldest-first (by last update), so the outcome of a sweep is deterministic.
"""

import logging
from typing import Optional

from helpdesk.errors import wrap_infrastructure
from helpdesk.models import EventKind, Incident, IncidentStatus, Technician, Tier, utcnow
from helpdesk.services.candidates import CandidateSearch
from helpdesk.services.hierarchy import CategoryHierarchyResolver
from helpdesk.services.history import HistoryRecorder
from helpdesk.services.notify import Notifier
from helpdesk.services.skills import SkillMatcher
from helpdesk.services.workload import WorkloadGate
from helpdesk.store import Datastore

logger = logging.getLogger(__name__)

SWEEP_COMMENT = "Incident automatically assigned by the system."
TIER2_SWEEP_COMMENT = "Incident automatically assigned from Tier2 pending queue."

_TIER_FOR_STATUS = {
    IncidentStatus.PENDING_ASSIGNMENT: Tier.TIER1,
    IncidentStatus.PENDING_TIER2_ASSIGNMENT: Tier.TIER2,
}


class PendingSweepScheduler:
    def __init__(
        self,
        store: Datastore,
        resolver: CategoryHierarchyResolver,
        matcher: SkillMatcher,
        search: CandidateSearch,
        gate: WorkloadGate,
        history: HistoryRecorder,
        notifier: Notifier,
    ):
        self.store = store
        self.resolver = resolver
        self.matcher = matcher
        self.search = search
        self.gate = gate
        self.history = history
        self.notifier = notifier

    def run_pending_sweep(self) -> int:
        """Regular pass then Tier2 pass. Returns how many incidents were assigned."""
        with wrap_infrastructure("list pending incidents"):
            pending = self.store.list_incidents(status=IncidentStatus.PENDING_ASSIGNMENT)
            pending_tier2 = self.store.list_incidents(status=IncidentStatus.PENDING_TIER2_ASSIGNMENT)
        total = len(pending) + len(pending_tier2)
        if total == 0:
            logger.info("No pending incidents to assign.")
            return 0
        logger.info("Found %d regular pending incidents and %d Tier2 pending incidents.",
                    len(pending), len(pending_tier2))
        assigned = self._run_pass(pending, SWEEP_COMMENT)
        assigned += self._run_pass(pending_tier2, TIER2_SWEEP_COMMENT)
        logger.info("Completed assignment task. Assigned %d incidents. %d still pending.", assigned, total - assigned)
        return assigned

    def sweep_tier2_pending(self) -> int:
        """The Tier2 pass on its own (triggered after a close or hand-off)."""
        with wrap_infrastructure("list Tier2 pending incidents"):
            pending_tier2 = self.store.list_incidents(status=IncidentStatus.PENDING_TIER2_ASSIGNMENT)
        if not pending_tier2:
            logger.debug("No pending Tier2 incidents found.")
            return 0
        assigned = self._run_pass(pending_tier2, TIER2_SWEEP_COMMENT)
        logger.info("Tier2 pass assigned %d of %d incidents.", assigned, len(pending_tier2))
        return assigned

    def _run_pass(self, incidents: list[Incident], comment: str) -> int:
        assigned = 0
        for incident in incidents:
            try:
                if self.assign_pending(incident, comment):
                    assigned += 1
            except Exception as e:
                logger.exception("Failed to process incident %s: %s", incident.incident_number, e)
        return assigned

    def assign_pending(self, incident: Incident, comment: str = SWEEP_COMMENT) -> bool:
        """One pending incident through the same selection as creation (Tier2 search for Tier2-pending)."""
        with self.gate.admission():
            # Re-read: a request may have moved it since the list was taken.
            current = self.store.get_incident(incident.incident_number)
            if current is None or current.status not in _TIER_FOR_STATUS:
                return False
            path = self.resolver.try_resolve(current.category)
            if path is None:
                logger.warning("Could not find team for category '%s' on incident %s. Skipping.",
                               current.category, current.incident_number)
                return False
            technician = self.search.select(path, _TIER_FOR_STATUS[current.status])
            if technician is None:
                logger.info("Incident %s remains pending (%s).", current.incident_number, current.status.value)
                return False
            self._assign(current, technician, comment)
        self.notifier.notify(current, EventKind.ASSIGNED)
        logger.info("Assigned pending incident %s to technician %s.", current.incident_number, technician.technician_id)
        return True

    def backfill_technician(self, technician_id: str, action: str = "CLOSED") -> Optional[Incident]:
        """
        Offer a freed technician the oldest skill-compatible Pending-Assignment incident of their
        own team, falling back to the oldest skill-compatible one from any team.
        """
        with self.gate.admission():
            if not self.gate.has_capacity(technician_id):
                return None
            technician = self.store.get_technician(technician_id)
            if technician is None or not technician.active:
                logger.warning("Technician %s not found or not active; no backfill.", technician_id)
                return None

            pending = self.store.list_incidents(status=IncidentStatus.PENDING_ASSIGNMENT)
            team_labels = set()
            for item in self.resolver.items_for_team([technician.team, technician.team_id]):
                team_labels.update((item.name, item.code))
            team_queue = [i for i in pending if i.category in team_labels]
            others = [i for i in pending if i.category not in team_labels]

            chosen = self._first_skilled(technician, team_queue)
            comment = f"Automatic assignment after {action}"
            if chosen is None:
                logger.info("No skill-matched pending incident in the team queue for technician %s.", technician_id)
                chosen = self._first_skilled(technician, others)
                comment = f"Cross-team assignment after {action}"
            if chosen is None:
                return None
            self._assign(chosen, technician, comment)
        self.notifier.notify(chosen, EventKind.ASSIGNED)
        logger.info("Backfilled technician %s with incident %s (%s).", technician_id, chosen.incident_number, comment)
        return chosen

    def _first_skilled(self, technician: Technician, incidents: list[Incident]) -> Optional[Incident]:
        for incident in incidents:
            if self.matcher.is_skilled(technician, incident.category):
                return incident
        return None

    def _assign(self, incident: Incident, technician: Technician, comment: str) -> None:
        incident.handler = technician.technician_id
        incident.status = IncidentStatus.OPEN
        incident.updated_at = utcnow()
        self.store.save_incident(incident)
        self.history.record(incident, comment)
