"""
Round-robin selection with a workload ceiling.

Each fairness group (team, tier, sub-category) keeps a cursor: the index in the group's
ordered technician list where the next scan starts. A scan offers every member one turn,
skipping saturated technicians, and moves the cursor just past the one selected.
"""

import json
import logging
import threading
from typing import NamedTuple, Optional, Protocol

from helpdesk.config import REDIS_URL
from helpdesk.models import Technician, Tier
from helpdesk.services.workload import WorkloadGate

logger = logging.getLogger(__name__)

ROTATION_CURSORS_HASH = "rotation:cursors"


class RotationKey(NamedTuple):
    """One fairness group. Tier2 groups span the whole team (sub_category is None)."""

    team: str
    tier: Tier
    sub_category: Optional[str] = None

    def encode(self) -> str:
        # JSON array, so no separator inside a team or category name can collide.
        return json.dumps([self.team, self.tier.value, self.sub_category])


class CursorStore(Protocol):
    def get(self, key: RotationKey) -> int: ...

    def set(self, key: RotationKey, value: int) -> None: ...


class InMemoryCursorStore:
    """Process-lifetime cursors; reset on restart."""

    def __init__(self) -> None:
        self._cursors: dict[RotationKey, int] = {}
        self._lock = threading.Lock()

    def get(self, key: RotationKey) -> int:
        with self._lock:
            return self._cursors.get(key, 0)

    def set(self, key: RotationKey, value: int) -> None:
        with self._lock:
            self._cursors[key] = value

    def clear(self) -> None:
        with self._lock:
            self._cursors.clear()


class RedisCursorStore:
    """Cursors in one Redis hash, shared by every API / worker instance."""

    def __init__(self, client=None, url: str = REDIS_URL) -> None:
        self._client = client
        self._url = url

    def _redis(self):
        if self._client is None:
            import redis
            self._client = redis.from_url(self._url, decode_responses=True)
        return self._client

    def get(self, key: RotationKey) -> int:
        raw = self._redis().hget(ROTATION_CURSORS_HASH, key.encode())
        return int(raw) if raw else 0

    def set(self, key: RotationKey, value: int) -> None:
        self._redis().hset(ROTATION_CURSORS_HASH, key.encode(), str(value))


class RotationSelector:
    def __init__(self, gate: WorkloadGate, cursors: CursorStore):
        self.gate = gate
        self.cursors = cursors

    def select(self, candidates: list[Technician], key: RotationKey) -> Optional[Technician]:
        """
        Pick the next technician under the workload ceiling, starting at the group's cursor.
        A single candidate is taken iff it has capacity and leaves the cursor alone.
        On a full scan with nobody under the ceiling, returns None and the cursor is unchanged.
        """
        if not candidates:
            return None

        if len(candidates) == 1:
            only = candidates[0]
            if self.gate.has_capacity(only.technician_id):
                logger.info("Single technician %s available for %s.", only.technician_id, key)
                return only
            return None

        n = len(candidates)
        start = self.cursors.get(key) % n
        for attempt in range(n):
            index = (start + attempt) % n
            candidate = candidates[index]
            if self.gate.has_capacity(candidate.technician_id):
                self.cursors.set(key, (index + 1) % n)
                logger.info("Round-robin selected %s for %s (index %d of %d).",
                            candidate.technician_id, key, index, n)
                return candidate

        logger.info("All %d technicians for %s are at max capacity (%d each).", n, key, self.gate.ceiling)
        return None
