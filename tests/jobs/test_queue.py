"""Tests for JobQueue: enqueue, claim order, retry and resolution."""

from datetime import timedelta

import pytest

from servers.event_harvester.jobs import (
    HandlerAlreadyRegisteredError,
    JobContext,
    UnknownJobTypeError,
)
from servers.event_harvester.models import JobState, JobType, Priority, RetryPolicy


async def noop(job, ctx):
    await ctx.done()


class TestEnqueue:
    """Tests for JobQueue.enqueue."""

    @pytest.mark.asyncio
    async def test_defaults(self, queue, job_store):
        job = await queue.enqueue(JobType.FETCH_CITY, {"city": "Austin", "page": 0})

        stored = await job_store.get(job.id)
        assert stored.state == JobState.PENDING
        assert stored.priority == Priority.NORMAL
        assert stored.retry_policy.max_retries == 5
        assert stored.retry_policy.wait == timedelta(minutes=15)
        assert stored.payload == {"city": "Austin", "page": 0}

    @pytest.mark.asyncio
    async def test_accepts_wire_names(self, queue):
        job = await queue.enqueue("fetchCity", {"city": "Austin"}, priority="high")
        assert job.type == JobType.FETCH_CITY
        assert job.priority == Priority.HIGH

    @pytest.mark.asyncio
    async def test_duplicates_allowed(self, queue, job_store):
        await queue.enqueue(JobType.FETCH_CITY, {"city": "Austin", "page": 0})
        await queue.enqueue(JobType.FETCH_CITY, {"city": "Austin", "page": 0})

        assert len(await job_store.list_jobs()) == 2

    @pytest.mark.asyncio
    async def test_sets_wakeup(self, queue):
        event = queue.wakeup(JobType.REFRESH)
        assert not event.is_set()

        await queue.enqueue(JobType.REFRESH)

        assert event.is_set()


class TestRegisterHandler:
    """Tests for handler registration."""

    def test_one_handler_per_type(self, queue):
        queue.register_handler(JobType.REFRESH, noop)

        with pytest.raises(HandlerAlreadyRegisteredError):
            queue.register_handler(JobType.REFRESH, noop)

    def test_unknown_type(self, queue):
        with pytest.raises(UnknownJobTypeError):
            queue.handler_for(JobType.FETCH_CITY)

    def test_concurrency_must_be_positive(self, queue):
        with pytest.raises(ValueError):
            queue.register_handler(JobType.REFRESH, noop, concurrency=0)


class TestClaimOrder:
    """Priority first, then oldest first."""

    @pytest.mark.asyncio
    async def test_priority_then_age(self, queue, clock):
        low = await queue.enqueue(JobType.FETCH_CITY, {"city": "A"}, priority=Priority.LOW)
        clock.advance(seconds=1)
        normal_old = await queue.enqueue(JobType.FETCH_CITY, {"city": "B"})
        clock.advance(seconds=1)
        normal_new = await queue.enqueue(JobType.FETCH_CITY, {"city": "C"})
        clock.advance(seconds=1)
        high = await queue.enqueue(JobType.FETCH_CITY, {"city": "D"}, priority=Priority.HIGH)

        order = []
        while (job := await queue.claim(JobType.FETCH_CITY)) is not None:
            order.append(job.id)

        assert order == [high.id, normal_old.id, normal_new.id, low.id]

    @pytest.mark.asyncio
    async def test_claim_marks_running(self, queue, job_store):
        job = await queue.enqueue(JobType.REFRESH)

        claimed = await queue.claim(JobType.REFRESH)

        assert claimed.id == job.id
        assert claimed.state == JobState.RUNNING
        assert (await job_store.get(job.id)).state == JobState.RUNNING
        assert await queue.claim(JobType.REFRESH) is None

    @pytest.mark.asyncio
    async def test_claim_by_type(self, queue):
        await queue.enqueue(JobType.REFRESH)
        assert await queue.claim(JobType.FETCH_CITY) is None


class TestRetry:
    """Failure handling and retry scheduling."""

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, queue, clock):
        job = await queue.enqueue(JobType.FETCH_CITY, {"city": "Austin"})
        claimed = await queue.claim(JobType.FETCH_CITY)

        failed = await queue.fail(claimed, "HTTP 503")

        assert failed.state == JobState.PENDING
        assert failed.retried == 1
        assert failed.not_before == clock() + timedelta(minutes=15)
        assert failed.last_error == "HTTP 503"

        # Not claimable before the wait has passed
        clock.advance(minutes=14, seconds=59)
        assert await queue.claim(JobType.FETCH_CITY) is None
        clock.advance(seconds=1)
        assert (await queue.claim(JobType.FETCH_CITY)).id == job.id

    @pytest.mark.asyncio
    async def test_sixth_failure_is_terminal(self, queue, clock):
        """Five retries are granted; the sixth failure is final."""
        job = await queue.enqueue(JobType.FETCH_CITY, {"city": "Austin"})

        for attempt in range(1, 6):
            claimed = await queue.claim(JobType.FETCH_CITY)
            result = await queue.fail(claimed, f"attempt {attempt}")
            assert result.state == JobState.PENDING
            assert result.retried == attempt
            clock.advance(minutes=15)

        claimed = await queue.claim(JobType.FETCH_CITY)
        result = await queue.fail(claimed, "attempt 6")

        assert result.state == JobState.FAILED
        assert result.not_before is None
        assert [f.reason for f in result.failures] == [f"attempt {n}" for n in range(1, 7)]

        clock.advance(days=1)
        assert await queue.claim(JobType.FETCH_CITY) is None
        assert [j.id for j in await queue.failed_jobs()] == [job.id]

    @pytest.mark.asyncio
    async def test_zero_retries(self, queue):
        await queue.enqueue(JobType.REFRESH, retry_policy=RetryPolicy(max_retries=0))
        claimed = await queue.claim(JobType.REFRESH)

        result = await queue.fail(claimed, "nope")

        assert result.state == JobState.FAILED

    @pytest.mark.asyncio
    async def test_exception_reason(self, queue):
        await queue.enqueue(JobType.REFRESH)
        claimed = await queue.claim(JobType.REFRESH)

        result = await queue.fail(claimed, TimeoutError("upstream slow"))

        assert result.last_error == "TimeoutError: upstream slow"

    @pytest.mark.asyncio
    async def test_recover_requeues_running(self, queue, job_store):
        job = await queue.enqueue(JobType.REFRESH)
        await queue.claim(JobType.REFRESH)

        assert await queue.recover() == 1
        assert (await job_store.get(job.id)).state == JobState.PENDING

    @pytest.mark.asyncio
    async def test_purge_finished_keeps_active_jobs(self, queue, job_store, clock):
        job = await queue.enqueue(JobType.REFRESH, retry_policy=RetryPolicy(max_retries=0))
        await queue.fail(await queue.claim(JobType.REFRESH), "gone")
        pending = await queue.enqueue(JobType.REFRESH)
        clock.advance(days=2)

        assert await queue.purge_finished(timedelta(days=1)) == 1
        assert await job_store.get(job.id) is None
        assert await job_store.get(pending.id) is not None


class TestJobContext:
    """Resolution callbacks."""

    @pytest.mark.asyncio
    async def test_done(self, queue, job_store):
        await queue.enqueue(JobType.REFRESH)
        job = await queue.claim(JobType.REFRESH)
        ctx = JobContext(queue, job)

        await ctx.done()

        assert ctx.resolved
        assert ctx.outcome == JobState.COMPLETED
        assert (await job_store.get(job.id)).state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_second_resolution_ignored(self, queue, job_store):
        await queue.enqueue(JobType.REFRESH)
        job = await queue.claim(JobType.REFRESH)
        ctx = JobContext(queue, job)

        await ctx.done()
        await ctx.fail("too late")
        await ctx.done()

        stored = await job_store.get(job.id)
        assert stored.state == JobState.COMPLETED
        assert stored.failures == []
        assert ctx.outcome == JobState.COMPLETED
