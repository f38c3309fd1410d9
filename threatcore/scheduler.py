"""Periodic cycle scheduling for the analytics engines."""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .state import ensure_aware, utcnow

logger = logging.getLogger(__name__)

CycleCallback = Callable[[datetime], object]


@dataclass
class PeriodicJob:
    """A named callback run every ``interval`` seconds."""

    name: str
    interval: float
    callback: CycleCallback
    next_run: Optional[datetime] = None
    runs: int = 0
    failures: int = 0

    def run(self, now: datetime) -> bool:
        """Invoke the callback once; failures are logged, never raised."""

        self.runs += 1
        try:
            self.callback(now)
        except Exception:
            self.failures += 1
            logger.exception("Cycle %s failed", self.name)
            return False
        return True

    async def run_async(self, now: datetime) -> bool:
        """Like :meth:`run`, awaiting callbacks that return an awaitable."""

        self.runs += 1
        try:
            result = self.callback(now)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self.failures += 1
            logger.exception("Cycle %s failed", self.name)
            return False
        return True


class CycleScheduler:
    """Runs registered jobs one at a time, either on asyncio or from a test clock."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._jobs: List[PeriodicJob] = []
        self._stop = asyncio.Event()

    @property
    def jobs(self) -> List[PeriodicJob]:
        return list(self._jobs)

    def every(self, name: str, interval: float, callback: CycleCallback) -> PeriodicJob:
        if interval <= 0:
            raise ValueError(f"Interval for {name} must be positive")
        job = PeriodicJob(name=name, interval=float(interval), callback=callback)
        self._jobs.append(job)
        return job

    def run_due(self, now: datetime) -> List[str]:
        """Run every job due at ``now`` and return their names.

        A job that has never run is due immediately; afterwards it is due
        ``interval`` seconds after its previous scheduled slot.
        """

        now = ensure_aware(now)
        ran: List[str] = []
        for job in self._jobs:
            if job.next_run is not None and job.next_run > now:
                continue
            job.run(now)
            step = timedelta(seconds=job.interval)
            job.next_run = (job.next_run or now) + step
            if job.next_run <= now:
                # Skip missed slots instead of replaying them back to back.
                job.next_run = now + step
            ran.append(job.name)
        return ran

    async def run(self) -> None:
        """Run all jobs until :meth:`stop` is called."""

        self._stop.clear()
        tasks = [asyncio.create_task(self._run_job(job), name=job.name) for job in self._jobs]
        logger.info("Scheduler started with %s jobs", len(tasks))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def _run_job(self, job: PeriodicJob) -> None:
        while not self._stop.is_set():
            await job.run_async(self._clock())
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=job.interval)
            except asyncio.TimeoutError:
                continue


__all__ = ["CycleScheduler", "PeriodicJob"]
