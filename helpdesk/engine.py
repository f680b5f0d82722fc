"""
Wiring for the assignment engine: one datastore, one cursor store, the services on top of
them, and the notification sinks. The API and the worker each build one via get_engine().
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from helpdesk.activity import ActivitySink
from helpdesk.config import MAX_ACTIVE_INCIDENTS, STORE_BACKEND, WEBHOOK_URL
from helpdesk.dispatch import ArqDispatcher, Dispatcher, ThreadDispatcher
from helpdesk.models import NotificationSink
from helpdesk.services.candidates import CandidateSearch
from helpdesk.services.escalation import EscalationController
from helpdesk.services.hierarchy import CategoryHierarchyResolver
from helpdesk.services.history import HistoryRecorder
from helpdesk.services.notify import Notifier
from helpdesk.services.queries import IncidentQueries
from helpdesk.services.rotation import CursorStore, InMemoryCursorStore, RedisCursorStore, RotationSelector
from helpdesk.services.skills import SkillMatcher
from helpdesk.services.sweep import PendingSweepScheduler
from helpdesk.services.workload import WorkloadGate
from helpdesk.store import Datastore, InMemoryDatastore, RedisDatastore
from helpdesk.webhook import WebhookSink

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    store: Datastore
    cursors: CursorStore
    dispatcher: Dispatcher
    resolver: CategoryHierarchyResolver
    matcher: SkillMatcher
    gate: WorkloadGate
    selector: RotationSelector
    search: CandidateSearch
    history: HistoryRecorder
    notifier: Notifier
    scheduler: PendingSweepScheduler
    controller: EscalationController
    queries: IncidentQueries


def default_sinks(publish: bool = False) -> list[NotificationSink]:
    sinks: list[NotificationSink] = [ActivitySink(publish=publish)]
    if WEBHOOK_URL:
        sinks.append(WebhookSink(WEBHOOK_URL))
    return sinks


def build_engine(
    store: Optional[Datastore] = None,
    cursors: Optional[CursorStore] = None,
    sinks: Optional[Iterable[NotificationSink]] = None,
    dispatcher: Optional[Dispatcher] = None,
    ceiling: int = MAX_ACTIVE_INCIDENTS,
    backend: str = STORE_BACKEND,
    publish_events: bool = False,
) -> Engine:
    """Build every service. Missing collaborators come from `backend` ("memory" or "redis")."""
    if store is None:
        store = RedisDatastore() if backend == "redis" else InMemoryDatastore()
    if cursors is None:
        cursors = RedisCursorStore() if backend == "redis" else InMemoryCursorStore()
    if dispatcher is None:
        # With Redis, backfills can move to the arq worker once the API attaches a pool.
        dispatcher = ArqDispatcher() if backend == "redis" else ThreadDispatcher()
    sinks = default_sinks(publish_events) if sinks is None else list(sinks)

    resolver = CategoryHierarchyResolver(store)
    matcher = SkillMatcher(resolver)
    gate = WorkloadGate(store, ceiling)
    selector = RotationSelector(gate, cursors)
    search = CandidateSearch(store, matcher, selector)
    history = HistoryRecorder(store)
    notifier = Notifier(sinks, dispatcher, history.display_name)
    scheduler = PendingSweepScheduler(store, resolver, matcher, search, gate, history, notifier)
    controller = EscalationController(
        store, resolver, matcher, search, gate, history, notifier, dispatcher, scheduler=scheduler,
    )
    queries = IncidentQueries(store, resolver)
    logger.info("Engine built (store=%s, cursors=%s, ceiling=%d).",
                type(store).__name__, type(cursors).__name__, ceiling)
    return Engine(
        store=store,
        cursors=cursors,
        dispatcher=dispatcher,
        resolver=resolver,
        matcher=matcher,
        gate=gate,
        selector=selector,
        search=search,
        history=history,
        notifier=notifier,
        scheduler=scheduler,
        controller=controller,
        queries=queries,
    )


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def set_engine(engine: Optional[Engine]) -> None:
    """Replace (or with None, drop) the process-wide engine."""
    global _engine
    _engine = engine
