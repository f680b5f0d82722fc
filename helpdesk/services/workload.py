"""
Workload gate: counts a technician's incidents in Open / Hold / In-Progress and owns the
admission lock under which an assignment's count-then-save runs.
"""

import logging
import threading
from contextlib import contextmanager

from helpdesk.config import MAX_ACTIVE_INCIDENTS
from helpdesk.store import Datastore

logger = logging.getLogger(__name__)


class WorkloadGate:
    def __init__(self, store: Datastore, ceiling: int = MAX_ACTIVE_INCIDENTS):
        self.store = store
        self.ceiling = ceiling
        # Re-entrant: a sweep holds it while calling back into selection.
        self._admission = threading.RLock()

    def workload(self, technician_id: str) -> int:
        return self.store.count_active_incidents(technician_id)

    def has_capacity(self, technician_id: str) -> bool:
        load = self.workload(technician_id)
        ok = load < self.ceiling
        if not ok:
            logger.info("Technician %s at max capacity (%d/%d).", technician_id, load, self.ceiling)
        return ok

    @contextmanager
    def admission(self):
        """
        Serialise assignment attempts in this process so that a workload read and the save
        that follows it cannot interleave with another attempt. Not coordinated across processes.
        """
        with self._admission:
            yield
