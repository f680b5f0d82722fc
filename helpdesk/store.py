"""
Datastore capability used by the assignment engine.

Two implementations of the same protocol: an in-process store (single instance, tests)
and a Redis-backed store (INCIDENT:{number}, TECHNICIAN:{id}, ... plus index sets)
that the API and the arq worker share.
"""

import logging
import threading
from datetime import date
from typing import Iterable, Optional, Protocol, Union

from helpdesk.config import REDIS_URL
from helpdesk.models import (
    ACTIVE_STATUSES,
    CategoryItem,
    Incident,
    IncidentHistory,
    IncidentStatus,
    TeamAdmin,
    Technician,
    Tier,
)

logger = logging.getLogger(__name__)

StatusFilter = Union[IncidentStatus, Iterable[IncidentStatus], None]
TextFilter = Union[str, Iterable[str], None]


class Datastore(Protocol):
    def get_incident(self, incident_number: str) -> Optional[Incident]: ...

    def save_incident(self, incident: Incident) -> Incident: ...

    def list_incidents(
        self,
        *,
        status: StatusFilter = None,
        handler: Optional[str] = None,
        category: TextFilter = None,
        informant: Optional[str] = None,
    ) -> list[Incident]: ...

    def count_active_incidents(self, handler: str) -> int: ...

    def next_incident_sequence(self, day: date) -> int: ...

    def get_technician(self, technician_id: str) -> Optional[Technician]: ...

    def save_technician(self, technician: Technician) -> Technician: ...

    def list_technicians(self) -> list[Technician]: ...

    def find_technicians(self, team_refs: Iterable[str], tier: Tier, active: bool = True) -> list[Technician]: ...

    def get_team_admin(self, admin_id: str) -> Optional[TeamAdmin]: ...

    def save_team_admin(self, admin: TeamAdmin) -> TeamAdmin: ...

    def find_team_admin(self, team_refs: Iterable[str], active: bool = True) -> Optional[TeamAdmin]: ...

    def get_category(self, name: str) -> Optional[CategoryItem]: ...

    def save_category(self, item: CategoryItem) -> CategoryItem: ...

    def list_category_items(self) -> list[CategoryItem]: ...

    def add_history(self, entry: IncidentHistory) -> None: ...

    def list_history(self, incident_number: str) -> list[IncidentHistory]: ...


# --- Shared filtering (both stores load records and filter in Python) ---


def _as_set(value) -> Optional[set]:
    if value is None:
        return None
    if isinstance(value, (str, IncidentStatus)):
        return {value}
    return set(value)


def _matches(incident: Incident, statuses, handler, categories, informant) -> bool:
    if statuses is not None and incident.status not in statuses:
        return False
    if handler is not None and incident.handler != handler:
        return False
    if categories is not None and incident.category not in categories:
        return False
    if informant is not None and (incident.informant or "").strip() != informant.strip():
        return False
    return True


def _oldest_first(incidents: Iterable[Incident]) -> list[Incident]:
    return sorted(incidents, key=lambda i: (i.updated_at, i.incident_number))


def _normalise_refs(team_refs: Iterable[str]) -> set[str]:
    return {str(ref).strip() for ref in team_refs if ref is not None and str(ref).strip()}


def _on_team(technician: Technician, refs: set[str]) -> bool:
    return technician.team.strip() in refs or technician.team_id.strip() in refs


def _select_technicians(technicians: Iterable[Technician], team_refs, tier: Tier, active: bool) -> list[Technician]:
    """One normalised query: team name or team id, tier in any casing, de-duplicated, stable order."""
    refs = _normalise_refs(team_refs)
    seen: dict[str, Technician] = {}
    for t in technicians:
        if t.active != active or Tier.parse(t.tier) != tier or not _on_team(t, refs):
            continue
        seen.setdefault(t.technician_id, t)
    return sorted(seen.values(), key=lambda t: (t.order, t.technician_id))


def _select_team_admin(admins: Iterable[TeamAdmin], team_refs, active: bool) -> Optional[TeamAdmin]:
    refs = _normalise_refs(team_refs)
    for admin in sorted(admins, key=lambda a: a.admin_id):
        if admin.active != active:
            continue
        if admin.team_id.strip() in refs or admin.team_name.strip() in refs:
            return admin
    return None


class InMemoryDatastore:
    """Process-local store. Records are copied on the way in and out."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._incidents: dict[str, Incident] = {}
        self._technicians: dict[str, Technician] = {}
        self._team_admins: dict[str, TeamAdmin] = {}
        self._categories: dict[str, CategoryItem] = {}
        self._history: dict[str, list[IncidentHistory]] = {}
        self._sequences: dict[str, int] = {}

    def get_incident(self, incident_number: str) -> Optional[Incident]:
        with self._lock:
            inc = self._incidents.get(incident_number)
            return inc.model_copy(deep=True) if inc else None

    def save_incident(self, incident: Incident) -> Incident:
        with self._lock:
            self._incidents[incident.incident_number] = incident.model_copy(deep=True)
        return incident

    def list_incidents(self, *, status=None, handler=None, category=None, informant=None) -> list[Incident]:
        statuses, categories = _as_set(status), _as_set(category)
        with self._lock:
            found = [
                i.model_copy(deep=True)
                for i in self._incidents.values()
                if _matches(i, statuses, handler, categories, informant)
            ]
        return _oldest_first(found)

    def count_active_incidents(self, handler: str) -> int:
        with self._lock:
            return sum(
                1 for i in self._incidents.values()
                if i.handler == handler and i.status in ACTIVE_STATUSES
            )

    def next_incident_sequence(self, day: date) -> int:
        key = day.isoformat()
        with self._lock:
            self._sequences[key] = self._sequences.get(key, 0) + 1
            return self._sequences[key]

    def get_technician(self, technician_id: str) -> Optional[Technician]:
        with self._lock:
            t = self._technicians.get(technician_id)
            return t.model_copy(deep=True) if t else None

    def save_technician(self, technician: Technician) -> Technician:
        with self._lock:
            self._technicians[technician.technician_id] = technician.model_copy(deep=True)
        return technician

    def list_technicians(self) -> list[Technician]:
        with self._lock:
            techs = [t.model_copy(deep=True) for t in self._technicians.values()]
        return sorted(techs, key=lambda t: (t.order, t.technician_id))

    def find_technicians(self, team_refs, tier: Tier, active: bool = True) -> list[Technician]:
        return _select_technicians(self.list_technicians(), team_refs, tier, active)

    def get_team_admin(self, admin_id: str) -> Optional[TeamAdmin]:
        with self._lock:
            a = self._team_admins.get(admin_id)
            return a.model_copy(deep=True) if a else None

    def save_team_admin(self, admin: TeamAdmin) -> TeamAdmin:
        with self._lock:
            self._team_admins[admin.admin_id] = admin.model_copy(deep=True)
        return admin

    def find_team_admin(self, team_refs, active: bool = True) -> Optional[TeamAdmin]:
        with self._lock:
            admins = [a.model_copy(deep=True) for a in self._team_admins.values()]
        return _select_team_admin(admins, team_refs, active)

    def get_category(self, name: str) -> Optional[CategoryItem]:
        with self._lock:
            item = self._categories.get(name)
            return item.model_copy(deep=True) if item else None

    def save_category(self, item: CategoryItem) -> CategoryItem:
        with self._lock:
            self._categories[item.name] = item.model_copy(deep=True)
        return item

    def list_category_items(self) -> list[CategoryItem]:
        with self._lock:
            return [c.model_copy(deep=True) for c in self._categories.values()]

    def add_history(self, entry: IncidentHistory) -> None:
        with self._lock:
            self._history.setdefault(entry.incident_number, []).append(entry.model_copy(deep=True))

    def list_history(self, incident_number: str) -> list[IncidentHistory]:
        with self._lock:
            entries = [h.model_copy(deep=True) for h in self._history.get(incident_number, [])]
        return sorted(entries, key=lambda h: h.updated_at)


INCIDENT_PREFIX = "incident:"
INCIDENTS_SET = "incidents"
ACTIVE_INCIDENTS_PREFIX = "incidents:active:"
INCIDENT_SEQ_PREFIX = "incident_seq:"
INCIDENT_HISTORY_PREFIX = "incident_history:"
TECHNICIAN_PREFIX = "technician:"
TECHNICIANS_SET = "technicians"
TEAM_ADMIN_PREFIX = "team_admin:"
TEAM_ADMINS_SET = "team_admins"
CATEGORY_PREFIX = "category_item:"
CATEGORIES_SET = "category_items"


class RedisDatastore:
    """Redis-backed store: one JSON document per record plus an index set per record type."""

    def __init__(self, client=None, url: str = REDIS_URL) -> None:
        self._client = client
        self._url = url

    def _redis(self):
        if self._client is None:
            import redis
            self._client = redis.from_url(self._url, decode_responses=True)
        return self._client

    def _load_all(self, index_key: str, prefix: str, model):
        r = self._redis()
        ids = sorted(r.smembers(index_key))
        if not ids:
            return []
        pipe = r.pipeline()
        for rid in ids:
            pipe.get(f"{prefix}{rid}")
        out = []
        for raw in pipe.execute():
            if raw:
                out.append(model.model_validate_json(raw))
        return out

    def _load_one(self, key: str, model):
        raw = self._redis().get(key)
        if not raw:
            return None
        return model.model_validate_json(raw)

    def _store(self, index_key: str, prefix: str, rid: str, record) -> None:
        pipe = self._redis().pipeline()
        pipe.set(f"{prefix}{rid}", record.model_dump_json())
        pipe.sadd(index_key, rid)
        pipe.execute()

    def get_incident(self, incident_number: str) -> Optional[Incident]:
        return self._load_one(f"{INCIDENT_PREFIX}{incident_number}", Incident)

    def save_incident(self, incident: Incident) -> Incident:
        """Write the document and keep incidents:active:{handler} in step with status and handler."""
        number = incident.incident_number
        previous = self.get_incident(number)
        pipe = self._redis().pipeline()
        pipe.set(f"{INCIDENT_PREFIX}{number}", incident.model_dump_json())
        pipe.sadd(INCIDENTS_SET, number)
        if previous is not None and previous.handler:
            pipe.srem(f"{ACTIVE_INCIDENTS_PREFIX}{previous.handler}", number)
        if incident.handler and incident.status in ACTIVE_STATUSES:
            pipe.sadd(f"{ACTIVE_INCIDENTS_PREFIX}{incident.handler}", number)
        pipe.execute()
        return incident

    def list_incidents(self, *, status=None, handler=None, category=None, informant=None) -> list[Incident]:
        statuses, categories = _as_set(status), _as_set(category)
        incidents = self._load_all(INCIDENTS_SET, INCIDENT_PREFIX, Incident)
        return _oldest_first(i for i in incidents if _matches(i, statuses, handler, categories, informant))

    def count_active_incidents(self, handler: str) -> int:
        return int(self._redis().scard(f"{ACTIVE_INCIDENTS_PREFIX}{handler}"))

    def rebuild_active_index(self) -> int:
        """Recompute every incidents:active:{handler} set from the stored documents. Returns the entries written."""
        r = self._redis()
        stale = list(r.scan_iter(match=f"{ACTIVE_INCIDENTS_PREFIX}*"))
        active: dict[str, list[str]] = {}
        for inc in self._load_all(INCIDENTS_SET, INCIDENT_PREFIX, Incident):
            if inc.handler and inc.status in ACTIVE_STATUSES:
                active.setdefault(inc.handler, []).append(inc.incident_number)
        pipe = r.pipeline()
        if stale:
            pipe.delete(*stale)
        for handler, numbers in active.items():
            pipe.sadd(f"{ACTIVE_INCIDENTS_PREFIX}{handler}", *numbers)
        pipe.execute()
        written = sum(len(n) for n in active.values())
        logger.info("Active incident index rebuilt: %d incident(s) across %d handler(s).", written, len(active))
        return written

    def next_incident_sequence(self, day: date) -> int:
        return int(self._redis().incr(f"{INCIDENT_SEQ_PREFIX}{day.isoformat()}"))

    def get_technician(self, technician_id: str) -> Optional[Technician]:
        return self._load_one(f"{TECHNICIAN_PREFIX}{technician_id}", Technician)

    def save_technician(self, technician: Technician) -> Technician:
        self._store(TECHNICIANS_SET, TECHNICIAN_PREFIX, technician.technician_id, technician)
        logger.info("Technician %s saved (team=%s tier=%s active=%s).",
                    technician.technician_id, technician.team, technician.tier, technician.active)
        return technician

    def list_technicians(self) -> list[Technician]:
        techs = self._load_all(TECHNICIANS_SET, TECHNICIAN_PREFIX, Technician)
        return sorted(techs, key=lambda t: (t.order, t.technician_id))

    def find_technicians(self, team_refs, tier: Tier, active: bool = True) -> list[Technician]:
        return _select_technicians(self.list_technicians(), team_refs, tier, active)

    def get_team_admin(self, admin_id: str) -> Optional[TeamAdmin]:
        return self._load_one(f"{TEAM_ADMIN_PREFIX}{admin_id}", TeamAdmin)

    def save_team_admin(self, admin: TeamAdmin) -> TeamAdmin:
        self._store(TEAM_ADMINS_SET, TEAM_ADMIN_PREFIX, admin.admin_id, admin)
        return admin

    def find_team_admin(self, team_refs, active: bool = True) -> Optional[TeamAdmin]:
        admins = self._load_all(TEAM_ADMINS_SET, TEAM_ADMIN_PREFIX, TeamAdmin)
        return _select_team_admin(admins, team_refs, active)

    def get_category(self, name: str) -> Optional[CategoryItem]:
        return self._load_one(f"{CATEGORY_PREFIX}{name}", CategoryItem)

    def save_category(self, item: CategoryItem) -> CategoryItem:
        self._store(CATEGORIES_SET, CATEGORY_PREFIX, item.name, item)
        return item

    def list_category_items(self) -> list[CategoryItem]:
        return self._load_all(CATEGORIES_SET, CATEGORY_PREFIX, CategoryItem)

    def add_history(self, entry: IncidentHistory) -> None:
        self._redis().rpush(f"{INCIDENT_HISTORY_PREFIX}{entry.incident_number}", entry.model_dump_json())

    def list_history(self, incident_number: str) -> list[IncidentHistory]:
        raw = self._redis().lrange(f"{INCIDENT_HISTORY_PREFIX}{incident_number}", 0, -1)
        return [IncidentHistory.model_validate_json(r) for r in raw]
