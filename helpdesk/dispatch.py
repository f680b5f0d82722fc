"""
Fire-and-forget dispatch for side effects (notifications, backfill after close/transfer).

The caller never waits for and never sees the outcome of a submitted task; failures are logged.
With the Redis backend the API hands worker jobs (backfill, Tier2 pending pass) to the arq
queue instead of running them in-process.
"""

import asyncio
import logging
import threading
from functools import partial
from typing import Any, Callable, Iterable, Optional, Protocol

logger = logging.getLogger(__name__)

# Scheduler methods that the arq worker also registers as jobs under the same name.
WORKER_JOBS = ("backfill_technician", "sweep_tier2_pending")


class Dispatcher(Protocol):
    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None: ...


def _run_logged(name: str, fn: Callable[..., Any], args, kwargs) -> None:
    try:
        fn(*args, **kwargs)
    except Exception as e:
        logger.exception("Background task %s failed: %s", name, e)


class ThreadDispatcher:
    """Run each task on its own daemon thread."""

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        t = threading.Thread(target=_run_logged, args=(name, fn, args, kwargs), name=name, daemon=True)
        t.start()


class InlineDispatcher:
    """Run each task immediately on the calling thread, still swallowing and logging errors (tests)."""

    def __init__(self) -> None:
        self.submitted: list[str] = []

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self.submitted.append(name)
        _run_logged(name, fn, args, kwargs)


def _log_enqueue(name: str, job: str, future) -> None:
    e = future.exception()
    if e is not None:
        logger.error("Could not enqueue %s (%s): %s", job, name, e)
    elif future.result() is None:
        logger.debug("Job %s (%s) was already queued.", job, name)


class ArqDispatcher:
    """
    Enqueue worker jobs on an arq pool; everything else goes to `fallback`.

    The pool lives on the API's event loop and is attached from the FastAPI lifespan.
    Until then (or after detach) every task runs through the fallback. Submissions come
    from sync endpoint threads, so the enqueue is scheduled onto the pool's loop.
    """

    def __init__(self, jobs: Iterable[str] = WORKER_JOBS, fallback: Optional[Dispatcher] = None) -> None:
        self.jobs = set(jobs)
        self.fallback = fallback or ThreadDispatcher()
        self._pool = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def attached(self) -> bool:
        return self._pool is not None

    def attach(self, pool, loop: asyncio.AbstractEventLoop) -> None:
        self._pool, self._loop = pool, loop
        logger.info("Worker jobs (%s) now go to the arq queue.", ", ".join(sorted(self.jobs)))

    def detach(self) -> None:
        self._pool, self._loop = None, None

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        job = getattr(fn, "__name__", "")
        pool, loop = self._pool, self._loop
        if pool is None or job not in self.jobs:
            self.fallback.submit(name, fn, *args, **kwargs)
            return
        future = asyncio.run_coroutine_threadsafe(pool.enqueue_job(job, *args, **kwargs), loop)
        future.add_done_callback(partial(_log_enqueue, name, job))
