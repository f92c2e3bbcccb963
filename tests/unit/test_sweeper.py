"""Tests for the refresh handler (expiry sweep + taxonomy refresh)."""

from datetime import timedelta

import httpx
import pytest

from servers.event_harvester.jobs import JobContext
from servers.event_harvester.models import JobState, JobType
from servers.event_harvester.sweeper import ExpirySweeper


def taxonomy(categories=None, status_code=200):
    """Categories endpoint handler."""

    def handler(request: httpx.Request) -> httpx.Response:
        if status_code != 200:
            return httpx.Response(status_code, text="unavailable")
        return httpx.Response(200, json={"category": categories or []})

    return handler


class TestExpirySweeper:
    """Tests for ExpirySweeper."""

    @pytest.fixture
    def run_sweep(self, queue, sink, event_store, make_client, clock):
        async def run(handler):
            sweeper = ExpirySweeper(make_client(handler), sink, event_store, clock=clock)
            await queue.enqueue(JobType.REFRESH)
            job = await queue.claim(JobType.REFRESH)
            ctx = JobContext(queue, job)
            report = await sweeper(job, ctx)
            return report, ctx

        return run

    @pytest.mark.asyncio
    async def test_removes_only_expired_events(self, run_sweep, event_store, clock):
        now = clock()
        event_store.put_event({"_id": "old", "expires": (now - timedelta(hours=1)).isoformat()})
        event_store.put_event({"_id": "new", "expires": (now + timedelta(hours=1)).isoformat()})

        report, ctx = await run_sweep(taxonomy())

        assert set(event_store.events) == {"new"}
        assert report.events_removed == 1
        assert ctx.outcome == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_publishes_taxonomy(self, run_sweep, event_store):
        categories = [{"id": "music", "name": "Concerts"}, {"id": "food", "name": "Food"}]

        report, _ = await run_sweep(taxonomy(categories))

        assert set(event_store.categories) == {"music", "food"}
        assert report.categories_published == 2
        assert report.taxonomy_refreshed is True
        assert report.clean is True

    @pytest.mark.asyncio
    async def test_taxonomy_failure_still_completes(self, run_sweep, event_store, clock):
        now = clock()
        event_store.put_event({"_id": "old", "expires": (now - timedelta(days=1)).isoformat()})
        event_store.categories["stale"] = {
            "_id": "stale",
            "name": "Stale",
            "expires": (now - timedelta(days=1)).isoformat(),
        }

        report, ctx = await run_sweep(taxonomy(status_code=500))

        assert report.taxonomy_refreshed is False
        assert report.events_removed == 1
        assert report.categories_removed == 1
        assert event_store.categories == {}
        assert ctx.outcome == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_event_removal_failure_continues(self, run_sweep, event_store, clock):
        now = clock()
        for event_id in ("a", "b", "c"):
            event_store.put_event({"_id": event_id, "expires": (now - timedelta(hours=2)).isoformat()})

        original_remove = event_store.remove_event

        async def flaky_remove(event_id):
            if event_id == "b":
                raise ConnectionError("remove failed")
            await original_remove(event_id)

        event_store.remove_event = flaky_remove

        report, ctx = await run_sweep(taxonomy())

        assert set(event_store.events) == {"b"}
        assert report.events_removed == 2
        assert report.event_removal_failures == 1
        assert report.clean is False
        assert ctx.outcome == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_malformed_category_skipped(self, run_sweep, event_store):
        categories = [{"id": "nameless"}, {"id": "music", "name": "Concerts"}]

        report, _ = await run_sweep(taxonomy(categories))

        assert set(event_store.categories) == {"music"}
        assert report.categories_published == 1

    @pytest.mark.asyncio
    async def test_fresh_categories_not_removed(self, run_sweep, event_store, clock):
        event_store.categories["music"] = {
            "_id": "music",
            "name": "Concerts",
            "expires": (clock() + timedelta(days=7)).isoformat(),
        }

        report, _ = await run_sweep(taxonomy())

        assert "music" in event_store.categories
        assert report.categories_removed == 0

    @pytest.mark.asyncio
    async def test_purges_finished_jobs_past_retention(
        self, queue, job_store, sink, event_store, make_client, clock
    ):
        old = await queue.enqueue(JobType.FETCH_CITY, {"city": "Austin", "page": 0})
        await queue.complete(await queue.claim(JobType.FETCH_CITY))
        clock.advance(days=8)
        recent = await queue.enqueue(JobType.FETCH_CITY, {"city": "Boston", "page": 0})
        await queue.complete(await queue.claim(JobType.FETCH_CITY))
        waiting = await queue.enqueue(JobType.FETCH_CITY, {"city": "Chicago", "page": 0})

        sweeper = ExpirySweeper(
            make_client(taxonomy()),
            sink,
            event_store,
            clock=clock,
            queue=queue,
            job_retention=timedelta(days=7),
        )
        await queue.enqueue(JobType.REFRESH)
        job = await queue.claim(JobType.REFRESH)
        report = await sweeper(job, JobContext(queue, job))

        assert report.jobs_purged == 1
        assert await job_store.get(old.id) is None
        assert await job_store.get(recent.id) is not None
        assert await job_store.get(waiting.id) is not None
        assert (await job_store.get(job.id)).state == JobState.COMPLETED
