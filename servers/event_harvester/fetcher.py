"""
Pagination fetcher: handler for ``fetchCity`` jobs.

Each job fetches one page of a city's events, publishes what survives
normalization, and enqueues the job for the next page when there is one.
There is no separate pagination driver: the chain of jobs is the crawl,
so a city's pages are always fetched in order, one at a time.
"""

from datetime import datetime
from typing import Any, Optional

import structlog

from .jobs.queue import JobContext, JobQueue
from .models import FetchStats, Job, JobType, Priority, RetryPolicy
from .normalizer import normalize_event
from .sink import RemoteSink
from .sources.eventful import EventfulClient, UpstreamError

logger = structlog.get_logger()


DEFAULT_MAX_PAGES_PER_CITY = 50

# Continuations: 5 retries, 15 minutes apart
CONTINUATION_PRIORITY = Priority.NORMAL
CONTINUATION_RETRY = RetryPolicy(max_retries=5, wait_seconds=15 * 60)


def next_page_job(
    city: str,
    page: int,
    page_count: int,
    max_pages: int = DEFAULT_MAX_PAGES_PER_CITY,
) -> Optional[dict[str, Any]]:
    """
    Decide whether a page has a successor.

    Args:
        city: City being crawled
        page: Page just fetched (0-based)
        page_count: Number of pages upstream reports
        max_pages: Cap on pages fetched per city

    Returns:
        Payload of the next ``fetchCity`` job, or None at the end of the crawl
    """
    available = min(page_count, max_pages)
    if available > page + 1:
        return {"city": city, "page": page + 1}
    return None


class CityFetcher:
    """Fetches one page per job and chains the next page."""

    def __init__(
        self,
        client: EventfulClient,
        sink: RemoteSink,
        queue: JobQueue,
        max_pages_per_city: int = DEFAULT_MAX_PAGES_PER_CITY,
    ):
        self.client = client
        self.sink = sink
        self.queue = queue
        self.max_pages_per_city = max_pages_per_city

    async def __call__(self, job: Job, ctx: JobContext) -> Optional[FetchStats]:
        city = job.payload.get("city")
        if not isinstance(city, str) or not city.strip():
            logger.warning("fetch_city_without_city", job_id=job.id, payload=job.payload)
            await ctx.done()
            return None

        city = city.strip()
        try:
            page = max(int(job.payload.get("page") or 0), 0)
        except (TypeError, ValueError):
            logger.warning("fetch_city_bad_page", job_id=job.id, payload=job.payload)
            await ctx.done()
            return None
        log = logger.bind(job_id=job.id, city=city, page=page)
        log.info("fetch_city_started")
        started = datetime.now()

        try:
            result = await self.client.search_events(city, page)
        except UpstreamError as e:
            log.warning("page_fetch_failed", error=str(e), status_code=e.status_code)
            await ctx.fail(e)
            return None

        stats = FetchStats(city=city, page=page, received=len(result.events))
        log.info("page_fetched", events=stats.received, page_count=result.page_count)

        for raw in result.events:
            event = normalize_event(raw)
            if event is None:
                stats.rejected += 1
                continue
            existing = await self.sink.lookup(event.external_id)
            await self.sink.publish(event, existing, city)
            stats.published += 1

        # Enqueue only once the page is fully handled, so a retried page
        # never leaves a second successor behind.
        continuation = next_page_job(city, page, result.page_count, self.max_pages_per_city)
        if continuation:
            await self.queue.enqueue(
                JobType.FETCH_CITY,
                continuation,
                priority=CONTINUATION_PRIORITY,
                retry_policy=CONTINUATION_RETRY,
            )
            stats.continued = True
            log.info("continuation_enqueued", next_page=continuation["page"])
        else:
            log.info("crawl_complete", pages=min(result.page_count, self.max_pages_per_city))

        stats.duration_ms = int((datetime.now() - started).total_seconds() * 1000)
        await ctx.done()

        log.info(
            "fetch_city_finished",
            published=stats.published,
            rejected=stats.rejected,
            continued=stats.continued,
            duration_ms=stats.duration_ms,
        )
        return stats
