"""
Lightweight interval scheduler for the orchestrator ticks.

One loop per job: run once immediately, then every `interval_seconds`.
If the previous run of a job is still going when the next one is due,
the new run is skipped rather than queued.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class IntervalJob:
    name: str
    interval_seconds: float
    callback: Callable[[], Awaitable[Any]]
    in_flight: Optional[asyncio.Task] = None
    runs: int = 0
    skipped: int = 0
    failures: int = 0

    @property
    def is_running(self) -> bool:
        return self.in_flight is not None and not self.in_flight.done()


class IntervalScheduler:
    """asyncio scheduler; one task per job."""

    def __init__(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.jobs: List[IntervalJob] = []
        self._loops: List[asyncio.Task] = []
        self._running = False
        self._sleep = sleep

    @property
    def running(self) -> bool:
        return self._running

    def schedule_every(
        self,
        interval_seconds: float,
        callback: Callable[[], Awaitable[Any]],
        name: str = "job",
    ) -> IntervalJob:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        job = IntervalJob(name=name, interval_seconds=interval_seconds, callback=callback)
        self.jobs.append(job)
        return job

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for job in self.jobs:
            self._loops.append(asyncio.create_task(self._loop(job), name=f"scheduler:{job.name}"))
        logger.info(f"Scheduler started with {len(self.jobs)} jobs")

    async def _loop(self, job: IntervalJob) -> None:
        while self._running:
            if job.is_running:
                job.skipped += 1
                logger.warning(f"'{job.name}' still running; skipping this interval")
            else:
                job.in_flight = asyncio.create_task(self._run_job(job), name=f"job:{job.name}")
            await self._sleep(job.interval_seconds)

    async def _run_job(self, job: IntervalJob) -> None:
        try:
            logger.debug(f"Running scheduled job: {job.name}")
            result = await job.callback()
            job.runs += 1
            if result is not None:
                logger.info(f"'{job.name}' finished: {getattr(result, 'status', result)}")
        except Exception:
            job.failures += 1
            logger.exception(f"Scheduled job '{job.name}' failed")

    async def stop(self) -> None:
        """Stop scheduling and wait for in-flight runs to finish."""
        self._running = False
        for loop in self._loops:
            loop.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()

        in_flight = [job.in_flight for job in self.jobs if job.is_running]
        if in_flight:
            logger.info(f"Waiting for {len(in_flight)} running job(s) to finish")
            await asyncio.gather(*in_flight, return_exceptions=True)
        logger.info("Scheduler stopped")
