import pytest

from helpdesk.dispatch import InlineDispatcher
from helpdesk.engine import build_engine
from helpdesk.services.rotation import InMemoryCursorStore
from helpdesk.store import InMemoryDatastore
from tests.factories import RecordingSink, seed


@pytest.fixture
def store():
    s = InMemoryDatastore()
    seed(s)
    return s


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def dispatcher():
    return InlineDispatcher()


@pytest.fixture
def engine(store, sink, dispatcher):
    """Engine over the seeded in-memory store; side effects run inline."""
    return build_engine(
        store=store,
        cursors=InMemoryCursorStore(),
        sinks=[sink],
        dispatcher=dispatcher,
        ceiling=3,
    )
