"""
Tests for the Redis-backed datastore and cursor store.

Requires: Redis running (skipped otherwise). Uses a separate database that is flushed per test.
Run: pytest tests/test_store_redis.py -v
"""

import os
from datetime import date

import pytest
import redis

from helpdesk.dispatch import InlineDispatcher
from helpdesk.engine import build_engine
from helpdesk.models import IncidentHistory, IncidentStatus, Tier
from helpdesk.services.rotation import RedisCursorStore, RotationKey
from helpdesk.store import RedisDatastore
from tests.factories import RecordingSink, fill, new_incident, seed

TEST_REDIS_URL = os.environ.get("TEST_REDIS_URL", "redis://localhost:6379/15")


@pytest.fixture
def client():
    r = redis.from_url(TEST_REDIS_URL, decode_responses=True)
    try:
        r.ping()
    except (redis.ConnectionError, redis.TimeoutError):
        pytest.skip("Redis not available")
    r.flushdb()
    yield r
    r.flushdb()


@pytest.fixture
def redis_store(client):
    s = RedisDatastore(client=client)
    seed(s)
    return s


class TestRedisDatastore:
    def test_incident_round_trip(self, redis_store):
        inc = fill(redis_store, "net-t1-a", 1)[0]
        loaded = redis_store.get_incident(inc.incident_number)
        assert loaded == inc
        assert redis_store.get_incident("missing") is None

    def test_filters_and_active_count(self, redis_store):
        fill(redis_store, "net-t1-a", 2)
        fill(redis_store, "net-t1-b", 1, status=IncidentStatus.CLOSED)
        assert redis_store.count_active_incidents("net-t1-a") == 2
        assert redis_store.count_active_incidents("net-t1-b") == 0
        assert len(redis_store.list_incidents(status=IncidentStatus.CLOSED)) == 1
        assert len(redis_store.list_incidents(category=["WiFi Down", "VPN Drop"])) == 3

    def test_active_index_follows_status_and_handler(self, client, redis_store):
        inc = fill(redis_store, "net-t1-a", 3)[0]
        assert redis_store.count_active_incidents("net-t1-a") == 3

        redis_store.save_incident(inc.model_copy(update={"handler": "net-t1-b"}))
        assert redis_store.count_active_incidents("net-t1-a") == 2
        assert redis_store.count_active_incidents("net-t1-b") == 1

        redis_store.save_incident(inc.model_copy(update={"handler": "net-t1-b", "status": IncidentStatus.CLOSED}))
        assert redis_store.count_active_incidents("net-t1-b") == 0
        assert client.smembers("incidents:active:net-t1-a") == {"FILL-net-t1-a-1", "FILL-net-t1-a-2"}

    def test_active_count_does_not_load_documents(self, client, redis_store):
        fill(redis_store, "net-t1-a", 2)
        client.set("incident:FILL-net-t1-a-0", "not json")
        assert redis_store.count_active_incidents("net-t1-a") == 2

    def test_rebuild_active_index(self, client, redis_store):
        fill(redis_store, "net-t1-a", 2)
        fill(redis_store, "net-t1-b", 1, status=IncidentStatus.HOLD)
        client.delete("incidents:active:net-t1-a")
        client.sadd("incidents:active:ghost", "FILL-gone-0")

        assert redis_store.rebuild_active_index() == 3
        assert redis_store.count_active_incidents("net-t1-a") == 2
        assert redis_store.count_active_incidents("net-t1-b") == 1
        assert redis_store.count_active_incidents("ghost") == 0

    def test_daily_sequence(self, redis_store):
        day = date(2026, 10, 18)
        assert [redis_store.next_incident_sequence(day) for _ in range(3)] == [1, 2, 3]
        assert redis_store.next_incident_sequence(date(2026, 10, 19)) == 1

    def test_find_technicians(self, redis_store):
        found = redis_store.find_technicians(["Network"], Tier.TIER2)
        assert [t.technician_id for t in found] == ["net-t2-a", "net-t2-b"]

    def test_team_admin_lookup(self, redis_store):
        assert redis_store.find_team_admin(["Network"]).admin_id == "adm-net"
        assert redis_store.find_team_admin(["Applications"]) is None

    def test_history_is_append_only(self, redis_store):
        for comment in ("created", "escalated"):
            redis_store.add_history(IncidentHistory(
                incident_number="IN1", status=IncidentStatus.OPEN, comment=comment,
            ))
        assert [h.comment for h in redis_store.list_history("IN1")] == ["created", "escalated"]


class TestRedisCursorStore:
    def test_get_set(self, client):
        cursors = RedisCursorStore(client=client)
        key = RotationKey("team-net", Tier.TIER1, "Connectivity")
        assert cursors.get(key) == 0
        cursors.set(key, 2)
        assert cursors.get(key) == 2
        assert RedisCursorStore(client=client).get(key) == 2

    def test_engine_over_redis(self, client, redis_store):
        engine = build_engine(
            store=redis_store,
            cursors=RedisCursorStore(client=client),
            sinks=[RecordingSink()],
            dispatcher=InlineDispatcher(),
        )
        handlers = [engine.controller.create_incident(new_incident()).handler for _ in range(3)]
        assert handlers == ["net-t1-a", "net-t1-b", "net-t1-a"]
