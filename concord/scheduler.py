"""Interval scheduling for cache sweeps, queue draining and cleanup.

Periodic housekeeping is registered on a ``Scheduler`` rather than on
wall-clock timers so tests can drive it deterministically with
``ManualScheduler.advance``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Protocol, Union
import asyncio
import inspect
import itertools
import logging
import time

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[None, Awaitable[None]]]


@dataclass
class ScheduledJob:
    job_id: int
    name: str
    interval: float
    callback: Callback
    next_run: float = 0.0
    runs: int = 0
    failures: int = 0


class Scheduler(Protocol):
    def every(self, interval: float, callback: Callback, name: str = "") -> ScheduledJob:
        ...

    def cancel(self, job: ScheduledJob) -> None:
        ...

    async def stop(self) -> None:
        ...

    def now(self) -> float:
        ...


async def _invoke(job: ScheduledJob) -> None:
    try:
        outcome = job.callback()
        if inspect.isawaitable(outcome):
            await outcome
        job.runs += 1
    except asyncio.CancelledError:
        raise
    except Exception:
        job.failures += 1
        logger.exception("Scheduled job %s failed", job.name or job.job_id)


class AsyncioScheduler:
    """Runs each job in its own asyncio task, sleeping ``interval`` between runs."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._tasks: Dict[int, asyncio.Task] = {}
        self._jobs: Dict[int, ScheduledJob] = {}

    def now(self) -> float:
        return time.monotonic()

    def every(self, interval: float, callback: Callback, name: str = "") -> ScheduledJob:
        if interval <= 0:
            raise ValueError("interval must be positive")
        job = ScheduledJob(job_id=next(self._ids), name=name, interval=interval, callback=callback)
        self._jobs[job.job_id] = job
        self._tasks[job.job_id] = asyncio.get_running_loop().create_task(self._loop(job))
        logger.debug("Scheduled %s every %.2fs", name or job.job_id, interval)
        return job

    async def _loop(self, job: ScheduledJob) -> None:
        while True:
            await asyncio.sleep(job.interval)
            await _invoke(job)

    def cancel(self, job: ScheduledJob) -> None:
        self._jobs.pop(job.job_id, None)
        task = self._tasks.pop(job.job_id, None)
        if task is not None:
            task.cancel()

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        self._jobs.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs.values())


class ManualScheduler:
    """Deterministic scheduler: jobs only fire when ``advance`` is awaited."""

    def __init__(self, start: float = 0.0) -> None:
        self._ids = itertools.count(1)
        self._jobs: Dict[int, ScheduledJob] = {}
        self._now = start

    def now(self) -> float:
        return self._now

    def every(self, interval: float, callback: Callback, name: str = "") -> ScheduledJob:
        if interval <= 0:
            raise ValueError("interval must be positive")
        job = ScheduledJob(
            job_id=next(self._ids),
            name=name,
            interval=interval,
            callback=callback,
            next_run=self._now + interval,
        )
        self._jobs[job.job_id] = job
        return job

    def cancel(self, job: ScheduledJob) -> None:
        self._jobs.pop(job.job_id, None)

    async def stop(self) -> None:
        self._jobs.clear()

    async def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due jobs in time order. Returns jobs fired."""
        target = self._now + seconds
        fired = 0
        while True:
            due: Optional[ScheduledJob] = None
            for job in self._jobs.values():
                if job.next_run <= target and (due is None or job.next_run < due.next_run):
                    due = job
            if due is None:
                break
            self._now = due.next_run
            due.next_run += due.interval
            await _invoke(due)
            fired += 1
        self._now = target
        return fired

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs.values())
