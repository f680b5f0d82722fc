"""
ARQ background worker: runs the pending sweep on a fixed cadence and serves the backfill /
Tier2 sweep jobs the API enqueues after a close or transfer. Engine calls are blocking and
run in a thread.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Optional

from arq import cron, run_worker
from arq.connections import RedisSettings

from helpdesk.config import PENDING_SWEEP_INTERVAL_SECONDS, REDIS_CONN_TIMEOUT, REDIS_URL, STORE_BACKEND
from helpdesk.engine import build_engine

logger = logging.getLogger(__name__)


def sweep_seconds(interval: int) -> set[int]:
    """Seconds-of-minute on which the sweep cron fires; intervals of a minute or more fire at :00."""
    step = max(1, min(interval, 60))
    return set(range(0, 60, step))


async def startup(ctx: dict) -> None:
    if STORE_BACKEND != "redis":
        logger.warning("STORE_BACKEND=%s: the worker sweeps its own in-process store, not the API's.", STORE_BACKEND)
    # Events from the worker go over Redis pub/sub so the API's activity log sees them.
    ctx["engine"] = build_engine(publish_events=STORE_BACKEND == "redis")
    if STORE_BACKEND == "redis":
        # Workload counts come from incidents:active:{handler}; cover documents written before it existed.
        await asyncio.to_thread(ctx["engine"].store.rebuild_active_index)


async def sweep_pending(ctx: dict) -> int:
    """ARQ cron job: both pending passes, oldest first."""
    engine = ctx["engine"]
    assigned = await asyncio.to_thread(engine.scheduler.run_pending_sweep)
    logger.info("Pending sweep assigned %d incident(s).", assigned)
    return assigned


async def backfill_technician(ctx: dict, technician_id: str, action: str = "CLOSED") -> Optional[str]:
    """ARQ job: give a freed technician the oldest pending incident they can take."""
    engine = ctx["engine"]
    incident = await asyncio.to_thread(engine.scheduler.backfill_technician, technician_id, action)
    return incident.incident_number if incident else None


async def sweep_tier2_pending(ctx: dict) -> int:
    """ARQ job: Tier2 pending pass only."""
    engine = ctx["engine"]
    return await asyncio.to_thread(engine.scheduler.sweep_tier2_pending)


class WorkerSettings:
    functions = [sweep_pending, backfill_technician, sweep_tier2_pending]
    cron_jobs = [
        cron(sweep_pending, second=sweep_seconds(PENDING_SWEEP_INTERVAL_SECONDS), run_at_startup=True, unique=True),
    ]
    on_startup = startup
    redis_settings = replace(
        RedisSettings.from_dsn(REDIS_URL),
        conn_timeout=REDIS_CONN_TIMEOUT,
    )


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logger.info("Worker starting (Redis: %s).", REDIS_URL.split("@")[-1] if "@" in REDIS_URL else REDIS_URL)
    run_worker(WorkerSettings)
