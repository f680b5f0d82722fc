"""
Tests for incident creation and the update state machine (category change, Tier2,
team admin, manual assignment, close), with side effects run inline.
Run: pytest tests/test_escalation.py -v
"""

import re
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from helpdesk.errors import (
    CategoryNotFound,
    IncidentNotFound,
    NoCurrentHandler,
    TeamAdminNotFound,
    TechnicianAtCapacity,
    TechnicianNotFound,
    TechnicianNotSkilled,
    ValidationError,
)
from helpdesk.models import EventKind, IncidentPriority, IncidentStatus, IncidentUpdate
from helpdesk.services.escalation import (
    PENDING_REASON_CATEGORY,
    PENDING_REASON_CREATE,
    PENDING_REASON_TIER2,
    format_incident_number,
)
from tests.factories import fill, new_incident, set_active

NUMBER_RE = re.compile(r"^IN\d{4}\.\d{2}\.\d{2}\.\d{4}$")


class TestCreateIncident:
    def test_assigned_to_first_tier1_technician(self, engine):
        inc = engine.controller.create_incident(new_incident())
        assert NUMBER_RE.match(inc.incident_number)
        assert inc.incident_number.endswith(".0001")
        assert inc.handler == "net-t1-a"
        assert inc.status == IncidentStatus.OPEN
        assert inc.priority == IncidentPriority.MEDIUM
        assert engine.store.get_incident(inc.incident_number).handler == "net-t1-a"

    def test_round_robin_across_creations(self, engine):
        handlers = [engine.controller.create_incident(new_incident()).handler for _ in range(3)]
        assert handlers == ["net-t1-a", "net-t1-b", "net-t1-a"]

    def test_daily_sequence(self, engine):
        first = engine.controller.create_incident(new_incident())
        second = engine.controller.create_incident(new_incident())
        assert first.incident_number.endswith(".0001")
        assert second.incident_number.endswith(".0002")

    def test_format_incident_number(self):
        assert format_incident_number(date(2026, 3, 5), 12) == "IN2026.03.05.0012"

    def test_only_skilled_technicians_considered(self, engine):
        inc = engine.controller.create_incident(new_incident(category="Router Fault"))
        assert inc.handler == "net-t1-hw"

    def test_missing_required_field(self, engine):
        with pytest.raises(ValidationError):
            engine.controller.create_incident(new_incident(informant="   "))

    def test_unknown_category_rejected(self, engine):
        with pytest.raises(CategoryNotFound):
            engine.controller.create_incident(new_incident(category="Printer Jam"))
        assert engine.store.list_incidents() == []

    def test_pending_when_no_active_technician(self, engine, store):
        set_active(store, "net-t1-a", False)
        set_active(store, "net-t1-b", False)
        inc = engine.controller.create_incident(new_incident())
        assert inc.status == IncidentStatus.PENDING_ASSIGNMENT
        assert inc.handler is None
        entry = engine.queries.history(inc.incident_number)[0]
        assert entry.comment == PENDING_REASON_CREATE
        assert entry.assigned_to == "Pending Assignment"

    def test_pending_when_all_at_capacity(self, engine, store):
        fill(store, "net-t1-a", 3)
        fill(store, "net-t1-b", 3)
        inc = engine.controller.create_incident(new_incident())
        assert inc.status == IncidentStatus.PENDING_ASSIGNMENT
        assert inc.handler is None

    def test_history_entry(self, engine):
        inc = engine.controller.create_incident(new_incident(description="Laptop offline"))
        history = engine.queries.history(inc.incident_number)
        assert len(history) == 1
        assert history[0].status == IncidentStatus.OPEN
        assert history[0].assigned_to == "Tech net-t1-a"
        assert history[0].updated_by == "U100"
        assert history[0].comment == "Laptop offline"

    def test_created_notifications(self, engine, sink):
        inc = engine.controller.create_incident(new_incident())
        events = sink.of_kind(EventKind.CREATED)
        assert events[0].broadcast
        direct = {e.recipients[0]: e.message for e in events[1:]}
        assert direct["net-t1-a"] == f"You have been assigned incident {inc.incident_number}"
        assert direct["U100"] == f"Your incident {inc.incident_number} has been assigned to Tech net-t1-a"


class TestCapacity:
    def test_ceiling_never_exceeded(self, engine):
        created = [engine.controller.create_incident(new_incident()) for _ in range(10)]
        assigned = [i for i in created if i.handler]
        assert len(assigned) == 6
        assert sum(1 for i in created if i.status == IncidentStatus.PENDING_ASSIGNMENT) == 4
        assert engine.gate.workload("net-t1-a") == 3
        assert engine.gate.workload("net-t1-b") == 3

    def test_concurrent_creations_respect_ceiling(self, engine):
        with ThreadPoolExecutor(max_workers=8) as pool:
            created = list(pool.map(lambda _: engine.controller.create_incident(new_incident()), range(12)))
        assert sum(1 for i in created if i.handler) == 6
        assert engine.gate.workload("net-t1-a") == 3
        assert engine.gate.workload("net-t1-b") == 3
        assert len({i.incident_number for i in created}) == 12


class TestUpdateIncident:
    @pytest.fixture
    def incident(self, engine):
        return engine.controller.create_incident(new_incident())

    def test_empty_update_rejected(self, engine, incident):
        with pytest.raises(ValidationError):
            engine.controller.update_incident(incident.incident_number, IncidentUpdate())

    def test_unknown_incident(self, engine):
        with pytest.raises(IncidentNotFound):
            engine.controller.update_incident("IN2026.01.01.9999", IncidentUpdate(status=IncidentStatus.CLOSED))

    def test_plain_field_update(self, engine, incident, sink):
        updated = engine.controller.update_incident(
            incident.incident_number, IncidentUpdate(status=IncidentStatus.HOLD, description="Waiting on vendor"),
        )
        assert updated.status == IncidentStatus.HOLD
        assert updated.handler == "net-t1-a"
        assert engine.queries.history(incident.incident_number)[-1].comment == "Waiting on vendor"
        assert sink.of_kind(EventKind.UPDATED)[-1].incident.status == IncidentStatus.HOLD

    def test_category_change_reassigns_to_new_team(self, engine, incident, dispatcher):
        updated = engine.controller.update_incident(incident.incident_number, IncidentUpdate(category="Outlook Crash"))
        assert updated.category == "Outlook Crash"
        assert updated.handler == "app-t1"
        assert updated.status == IncidentStatus.OPEN
        assert "backfill-net-t1-a" in dispatcher.submitted
        assert "tier2-pending-sweep" in dispatcher.submitted

    def test_category_change_without_technician_goes_pending(self, engine, store, incident):
        set_active(store, "app-t1", False)
        updated = engine.controller.update_incident(incident.incident_number, IncidentUpdate(category="Outlook Crash"))
        assert updated.status == IncidentStatus.PENDING_ASSIGNMENT
        assert updated.handler is None
        assert engine.queries.history(incident.incident_number)[-1].comment == PENDING_REASON_CATEGORY

    def test_category_change_cancels_escalation(self, engine, incident):
        updated = engine.controller.update_incident(
            incident.incident_number,
            IncidentUpdate(category="Outlook Crash", assign_tier2=True, assign_team_admin=True),
        )
        assert updated.handler == "app-t1"

    def test_unknown_new_category(self, engine, incident):
        with pytest.raises(CategoryNotFound):
            engine.controller.update_incident(incident.incident_number, IncidentUpdate(category="Printer Jam"))
        assert engine.store.get_incident(incident.incident_number).category == "WiFi Down"

    def test_tier2_escalation(self, engine, incident, sink):
        updated = engine.controller.update_incident(incident.incident_number, IncidentUpdate(assign_tier2=True))
        assert updated.handler == "net-t2-a"
        assert updated.status == IncidentStatus.OPEN
        transferred = sink.of_kind(EventKind.TRANSFERRED)
        assert transferred[-1].recipients == ["net-t2-a"]

    def test_tier2_rotation_spans_sub_categories(self, engine):
        wifi = engine.controller.create_incident(new_incident())
        router = engine.controller.create_incident(new_incident(category="Router Fault"))
        first = engine.controller.update_incident(wifi.incident_number, IncidentUpdate(assign_tier2=True))
        second = engine.controller.update_incident(router.incident_number, IncidentUpdate(assign_tier2=True))
        assert [first.handler, second.handler] == ["net-t2-a", "net-t2-b"]

    def test_tier2_unavailable_goes_pending(self, engine, store, incident):
        set_active(store, "net-t2-a", False)
        set_active(store, "net-t2-b", False)
        updated = engine.controller.update_incident(incident.incident_number, IncidentUpdate(assign_tier2=True))
        assert updated.status == IncidentStatus.PENDING_TIER2_ASSIGNMENT
        assert updated.handler is None
        entry = engine.queries.history(incident.incident_number)[-1]
        assert entry.comment == PENDING_REASON_TIER2
        assert entry.assigned_to == "Pending Tier2 Assignment"

    def test_team_admin_escalation(self, engine, incident):
        updated = engine.controller.update_incident(incident.incident_number, IncidentUpdate(assign_team_admin=True))
        assert updated.handler == "adm-net"
        assert engine.queries.history(incident.incident_number)[-1].assigned_to == "Net Admin"

    def test_team_admin_has_no_ceiling(self, engine, store, incident):
        fill(store, "adm-net", 5)
        updated = engine.controller.update_incident(incident.incident_number, IncidentUpdate(assign_team_admin=True))
        assert updated.handler == "adm-net"

    def test_team_admin_needs_current_handler(self, engine, store):
        set_active(store, "net-t1-a", False)
        set_active(store, "net-t1-b", False)
        pending = engine.controller.create_incident(new_incident())
        with pytest.raises(NoCurrentHandler):
            engine.controller.update_incident(pending.incident_number, IncidentUpdate(assign_team_admin=True))

    def test_team_admin_missing_for_team(self, engine):
        inc = engine.controller.create_incident(new_incident(category="Outlook Crash"))
        with pytest.raises(TeamAdminNotFound):
            engine.controller.update_incident(inc.incident_number, IncidentUpdate(assign_team_admin=True))
        assert engine.store.get_incident(inc.incident_number).handler == "app-t1"

    def test_manual_assignment(self, engine, incident, dispatcher):
        updated = engine.controller.update_incident(incident.incident_number, IncidentUpdate(handler="net-t1-b"))
        assert updated.handler == "net-t1-b"
        assert "backfill-net-t1-a" in dispatcher.submitted

    def test_manual_assignment_to_inactive(self, engine, store, incident):
        set_active(store, "net-t1-b", False)
        with pytest.raises(TechnicianNotFound):
            engine.controller.update_incident(incident.incident_number, IncidentUpdate(handler="net-t1-b"))

    def test_manual_assignment_unskilled(self, engine, incident):
        history_before = len(engine.queries.history(incident.incident_number))
        with pytest.raises(TechnicianNotSkilled) as exc:
            engine.controller.update_incident(incident.incident_number, IncidentUpdate(handler="app-t1"))
        assert "Connectivity" in str(exc.value)
        assert "Network" in str(exc.value)
        stored = engine.store.get_incident(incident.incident_number)
        assert stored.handler == incident.handler == "net-t1-a"
        assert stored.status == incident.status == IncidentStatus.OPEN
        assert len(engine.queries.history(incident.incident_number)) == history_before

    def test_manual_assignment_at_capacity(self, engine, store, incident):
        fill(store, "net-t1-b", 3)
        with pytest.raises(TechnicianAtCapacity) as exc:
            engine.controller.update_incident(incident.incident_number, IncidentUpdate(handler="net-t1-b"))
        assert "(3/3 active incidents)" in str(exc.value)

    def test_setting_pending_status_clears_handler(self, engine, incident):
        updated = engine.controller.update_incident(
            incident.incident_number, IncidentUpdate(status=IncidentStatus.PENDING_ASSIGNMENT),
        )
        assert updated.status == IncidentStatus.PENDING_ASSIGNMENT
        assert updated.handler is None

    @pytest.mark.parametrize("handler", [None, ""])
    def test_clearing_handler_of_open_incident_is_rejected(self, engine, incident, handler):
        with pytest.raises(ValidationError, match="requires a handler"):
            engine.controller.update_incident(incident.incident_number, IncidentUpdate(handler=handler))
        stored = engine.store.get_incident(incident.incident_number)
        assert stored.handler == "net-t1-a"
        assert stored.status == IncidentStatus.OPEN

    def test_open_status_on_pending_incident_is_rejected(self, engine, store):
        set_active(store, "net-t1-a", False)
        set_active(store, "net-t1-b", False)
        pending = engine.controller.create_incident(new_incident())
        with pytest.raises(ValidationError, match="requires a handler"):
            engine.controller.update_incident(pending.incident_number, IncidentUpdate(status=IncidentStatus.OPEN))
        assert engine.store.get_incident(pending.incident_number).status == IncidentStatus.PENDING_ASSIGNMENT

        set_active(store, "net-t1-a", True)
        assert engine.scheduler.run_pending_sweep() == 1
        assert engine.store.get_incident(pending.incident_number).handler == "net-t1-a"

    def test_handler_on_pending_incident_opens_it(self, engine, store):
        set_active(store, "net-t1-a", False)
        set_active(store, "net-t1-b", False)
        pending = engine.controller.create_incident(new_incident())
        set_active(store, "net-t1-b", True)
        updated = engine.controller.update_incident(pending.incident_number, IncidentUpdate(handler="net-t1-b"))
        assert updated.handler == "net-t1-b"
        assert updated.status == IncidentStatus.OPEN

    def test_close(self, engine, incident, sink, dispatcher):
        updated = engine.controller.update_incident(incident.incident_number, IncidentUpdate(status=IncidentStatus.CLOSED))
        assert updated.status == IncidentStatus.CLOSED
        closed = sink.of_kind(EventKind.CLOSED)
        assert closed[0].message == f"Incident {incident.incident_number} has been closed by technician Tech net-t1-a"
        assert closed[1].recipients == ["U100"]
        assert "backfill-net-t1-a" in dispatcher.submitted
        assert "tier2-pending-sweep" in dispatcher.submitted

    def test_close_backfills_freed_technician(self, engine, store):
        fillers = fill(store, "net-t1-a", 3)
        fill(store, "net-t1-b", 3)
        pending = engine.controller.create_incident(new_incident())
        assert pending.status == IncidentStatus.PENDING_ASSIGNMENT

        engine.controller.update_incident(fillers[0].incident_number, IncidentUpdate(status=IncidentStatus.CLOSED))

        backfilled = engine.store.get_incident(pending.incident_number)
        assert backfilled.handler == "net-t1-a"
        assert backfilled.status == IncidentStatus.OPEN
        entry = engine.queries.history(pending.incident_number)[-1]
        assert entry.comment == "Automatic assignment after CLOSED"
        assert entry.updated_by == "System"

    def test_close_runs_tier2_pass(self, engine, store, incident):
        set_active(store, "net-t2-a", False)
        set_active(store, "net-t2-b", False)
        other = engine.controller.create_incident(new_incident())
        engine.controller.update_incident(incident.incident_number, IncidentUpdate(assign_tier2=True))
        set_active(store, "net-t2-a", True)

        engine.controller.update_incident(other.incident_number, IncidentUpdate(status=IncidentStatus.CLOSED))

        escalated = engine.store.get_incident(incident.incident_number)
        assert escalated.handler == "net-t2-a"
        assert escalated.status == IncidentStatus.OPEN
