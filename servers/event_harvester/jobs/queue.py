"""
Job queue: typed jobs with priority and retry/backoff.

Handlers are bound per job type and receive the job plus a JobContext
used to report the outcome:

    async def handle(job: Job, ctx: JobContext) -> None:
        ...
        await ctx.done()

A failure (explicit ``ctx.fail`` or an uncaught exception) sends the job
back to ``pending`` after the retry wait, until its retries are used up;
it then becomes ``failed`` and stays there.
"""

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union
import asyncio

import structlog

from ..models import Job, JobFailure, JobState, JobType, Priority, RetryPolicy, utcnow
from .store import JobStore

logger = structlog.get_logger()

Handler = Callable[[Job, "JobContext"], Awaitable[Any]]
Clock = Callable[[], datetime]


class HandlerAlreadyRegisteredError(Exception):
    """Raised when a second handler is bound to a job type."""

    def __init__(self, job_type: JobType):
        super().__init__(f"A handler is already registered for '{job_type.value}'")
        self.job_type = job_type


class UnknownJobTypeError(Exception):
    """Raised when work is requested for a type with no handler."""

    def __init__(self, job_type: JobType):
        super().__init__(f"No handler registered for '{job_type.value}'")
        self.job_type = job_type


class JobContext:
    """Completion callbacks handed to a running job's handler."""

    def __init__(self, queue: "JobQueue", job: Job):
        self.queue = queue
        self.job = job
        self.outcome: Optional[JobState] = None

    @property
    def resolved(self) -> bool:
        return self.outcome is not None

    async def done(self) -> None:
        """Mark the job completed."""
        if self._already_resolved("done"):
            return
        self.job = await self.queue.complete(self.job)
        self.outcome = self.job.state

    async def fail(self, reason: Union[str, BaseException]) -> None:
        """Mark the job failed; it is retried while its policy allows."""
        if self._already_resolved("fail"):
            return
        self.job = await self.queue.fail(self.job, reason)
        self.outcome = self.job.state

    def _already_resolved(self, action: str) -> bool:
        if self.outcome is None:
            return False
        logger.warning(
            "job_already_resolved",
            job_id=self.job.id,
            job_type=self.job.type.value,
            action=action,
            outcome=self.outcome.value,
        )
        return True


class JobQueue:
    """Front door to the job store: enqueue, claim and resolve jobs."""

    def __init__(self, store: JobStore, clock: Clock = utcnow):
        self.store = store
        self.clock = clock
        self.handlers: dict[JobType, Handler] = {}
        self.concurrency: dict[JobType, int] = {}
        self._wakeups: dict[JobType, asyncio.Event] = {}

    def register_handler(self, job_type: JobType, handler: Handler, concurrency: int = 1) -> None:
        """Bind ``handler`` to ``job_type``. At most one handler per type."""
        job_type = JobType(job_type)
        if job_type in self.handlers:
            raise HandlerAlreadyRegisteredError(job_type)
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.handlers[job_type] = handler
        self.concurrency[job_type] = concurrency
        logger.debug("handler_registered", job_type=job_type.value, concurrency=concurrency)

    def handler_for(self, job_type: JobType) -> Handler:
        try:
            return self.handlers[job_type]
        except KeyError:
            raise UnknownJobTypeError(job_type) from None

    def wakeup(self, job_type: JobType) -> asyncio.Event:
        """Event set whenever a job of ``job_type`` is enqueued."""
        if job_type not in self._wakeups:
            self._wakeups[job_type] = asyncio.Event()
        return self._wakeups[job_type]

    async def enqueue(
        self,
        job_type: Union[JobType, str],
        payload: Optional[dict[str, Any]] = None,
        priority: Union[Priority, str, int] = Priority.NORMAL,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Job:
        """Persist a new pending job. Duplicates are allowed."""
        now = self.clock()
        job = Job(
            type=JobType(job_type),
            payload=dict(payload or {}),
            priority=Priority.parse(priority),
            retry_policy=retry_policy or RetryPolicy(),
            created_at=now,
            updated_at=now,
        )
        await self.store.add(job)
        logger.info(
            "job_enqueued",
            job_id=job.id,
            job_type=job.type.value,
            priority=job.priority.name.lower(),
            payload=job.payload,
        )
        self.wakeup(job.type).set()
        return job

    async def claim(self, job_type: JobType) -> Optional[Job]:
        """Claim the next eligible job of ``job_type``, if any."""
        return await self.store.claim_next(JobType(job_type), self.clock())

    async def complete(self, job: Job) -> Job:
        job.state = JobState.COMPLETED
        job.not_before = None
        job.updated_at = self.clock()
        await self.store.save(job)
        logger.info("job_completed", job_id=job.id, job_type=job.type.value)
        return job

    async def fail(self, job: Job, reason: Union[str, BaseException]) -> Job:
        """Record a failure and either schedule a retry or fail terminally."""
        now = self.clock()
        message = _describe(reason)
        job.failures.append(JobFailure(at=now, reason=message))
        job.updated_at = now

        if job.retried < job.retry_policy.max_retries:
            job.retried += 1
            job.state = JobState.PENDING
            job.not_before = now + job.retry_policy.wait
            await self.store.save(job)
            logger.warning(
                "job_retry_scheduled",
                job_id=job.id,
                job_type=job.type.value,
                retry=job.retried,
                max_retries=job.retry_policy.max_retries,
                not_before=job.not_before.isoformat(),
                error=message,
            )
        else:
            job.state = JobState.FAILED
            job.not_before = None
            await self.store.save(job)
            logger.error(
                "job_failed_terminal",
                job_id=job.id,
                job_type=job.type.value,
                payload=job.payload,
                attempts=len(job.failures),
                error=message,
            )
        return job

    async def failed_jobs(self, limit: int = 100) -> list[Job]:
        """Jobs that exhausted their retries, newest first."""
        return await self.store.list_jobs(state=JobState.FAILED, limit=limit)

    async def recover(self) -> int:
        """Requeue jobs left running by a previous process."""
        count = await self.store.requeue_running()
        if count:
            logger.warning("stale_running_jobs_requeued", count=count)
        return count

    async def purge_finished(self, retention: timedelta) -> int:
        """Remove completed and failed jobs last touched more than ``retention`` ago."""
        cutoff = self.clock() - retention
        count = await self.store.purge_finished(cutoff)
        logger.info("finished_jobs_purged", count=count, cutoff=cutoff.isoformat())
        return count


def _describe(reason: Union[str, BaseException]) -> str:
    if isinstance(reason, BaseException):
        text = str(reason)
        return f"{type(reason).__name__}: {text}" if text else type(reason).__name__
    return str(reason)
