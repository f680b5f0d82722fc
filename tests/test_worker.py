"""
Tests for the arq job functions (called directly with a ctx dict; no Redis or worker process).
Run: pytest tests/test_worker.py -v
"""

import asyncio

from helpdesk.models import IncidentStatus
from helpdesk.worker import WorkerSettings, backfill_technician, sweep_pending, sweep_seconds, sweep_tier2_pending
from tests.factories import new_incident, set_active


def test_sweep_seconds():
    assert sweep_seconds(30) == {0, 30}
    assert sweep_seconds(15) == {0, 15, 30, 45}
    assert sweep_seconds(300) == {0}


def test_settings_register_jobs():
    names = {f.__name__ for f in WorkerSettings.functions}
    assert names == {"sweep_pending", "backfill_technician", "sweep_tier2_pending"}
    assert len(WorkerSettings.cron_jobs) == 1


def test_sweep_job(engine, store):
    set_active(store, "net-t1-a", False)
    set_active(store, "net-t1-b", False)
    inc = engine.controller.create_incident(new_incident())
    set_active(store, "net-t1-a", True)

    assert asyncio.run(sweep_pending({"engine": engine})) == 1
    assert engine.store.get_incident(inc.incident_number).status == IncidentStatus.OPEN


def test_backfill_job(engine, store):
    set_active(store, "net-t1-a", False)
    set_active(store, "net-t1-b", False)
    inc = engine.controller.create_incident(new_incident())
    set_active(store, "net-t1-b", True)

    assert asyncio.run(backfill_technician({"engine": engine}, "net-t1-b", "TRANSFERRED")) == inc.incident_number
    assert asyncio.run(backfill_technician({"engine": engine}, "net-t1-b")) is None


def test_tier2_job_with_nothing_pending(engine):
    assert asyncio.run(sweep_tier2_pending({"engine": engine})) == 0
