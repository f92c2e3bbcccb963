"""
Worker loop: dispatches claimed jobs to their registered handlers.

Each registered job type gets its own asyncio task (or ``concurrency``
tasks), so a slow network call in one type never stalls another, while
jobs of the same type run one at a time by default.
"""

from typing import Optional
import asyncio

import structlog

from ..models import Job, JobState, JobType
from ..resilience.health import HealthMonitor
from .queue import JobContext, JobQueue

logger = structlog.get_logger()


class Worker:
    """Runs handlers for every job type registered on a queue."""

    def __init__(
        self,
        queue: JobQueue,
        poll_interval: float = 5.0,
        health: Optional[HealthMonitor] = None,
    ):
        self.queue = queue
        self.poll_interval = poll_interval
        self.health = health or HealthMonitor()
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def run_job(self, job: Job) -> JobState:
        """Invoke the handler for one claimed job and settle its outcome."""
        handler = self.queue.handler_for(job.type)
        ctx = JobContext(self.queue, job)
        log = logger.bind(job_id=job.id, job_type=job.type.value)

        try:
            await handler(job, ctx)
        except Exception as e:
            if ctx.resolved:
                log.exception("handler_raised_after_resolution", error=str(e))
            else:
                log.warning("handler_raised", error=str(e), error_type=type(e).__name__)
                await ctx.fail(e)

        if not ctx.resolved:
            await ctx.done()

        if ctx.outcome == JobState.COMPLETED:
            self.health.record_success(job.type.value)
        else:
            self.health.record_failure(job.type.value, error=ctx.job.last_error or "unknown")
        return ctx.outcome

    async def process_next(self, job_type: JobType) -> Optional[JobState]:
        """Claim and run one job. Returns None when nothing is eligible."""
        job = await self.queue.claim(job_type)
        if job is None:
            return None
        return await self.run_job(job)

    async def run_until_idle(self) -> int:
        """Run eligible jobs of every type until none are left. Returns count."""
        processed = 0
        while True:
            progressed = False
            for job_type in list(self.queue.handlers):
                if await self.process_next(job_type) is not None:
                    processed += 1
                    progressed = True
            if not progressed:
                return processed

    async def run(self) -> None:
        """Run until ``stop()`` is called."""
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._loop(job_type), name=f"worker:{job_type.value}:{slot}")
            for job_type, slots in self.queue.concurrency.items()
            for slot in range(slots)
        ]
        logger.info(
            "worker_started",
            job_types=[t.value for t in self.queue.handlers],
            tasks=len(self._tasks),
        )
        try:
            await asyncio.gather(*self._tasks)
        finally:
            logger.info("worker_stopped", health=self.health.get_status()["summary"])

    def stop(self) -> None:
        self._stopping.set()
        for job_type in self.queue.handlers:
            self.queue.wakeup(job_type).set()

    async def _loop(self, job_type: JobType) -> None:
        wakeup = self.queue.wakeup(job_type)
        while not self._stopping.is_set():
            wakeup.clear()
            try:
                state = await self.process_next(job_type)
            except Exception as e:
                # Store trouble; keep the loop alive and try again later
                logger.exception("worker_iteration_failed", job_type=job_type.value, error=str(e))
                state = None

            if state is None and not self._stopping.is_set():
                await self._idle(job_type, wakeup)

    async def _idle(self, job_type: JobType, wakeup: asyncio.Event) -> None:
        """Sleep until a job is enqueued, a retry comes due, or the poll interval ends."""
        timeout = self.poll_interval
        next_at = await self.queue.store.next_eligible_at(job_type)
        if next_at is not None:
            until_due = (next_at - self.queue.clock()).total_seconds()
            timeout = min(timeout, max(until_due, 0.05))

        try:
            await asyncio.wait_for(wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
