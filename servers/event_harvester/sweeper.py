"""
Expiry sweeper: handler for ``refresh`` jobs.

A sweep runs best-effort steps and always completes its job:
1. Remove events whose ``expires`` has passed, one by one
2. Fetch the category taxonomy from Eventful
3. Publish every category (creates new ones, refreshes existing ones)
4. Remove categories whose ``expires`` has passed
5. Purge finished jobs older than the retention period (when a queue is given)

A failure in one step (or on one record) is logged and the sweep moves on.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog
from pydantic import ValidationError

from .jobs.queue import JobContext, JobQueue
from .models import Category, Job, SweepReport, utcnow
from .resilience.fallback import with_default
from .sink import RemoteSink
from .sources.eventful import EventfulClient
from .store.base import EventStore, document_id

logger = structlog.get_logger()


class ExpirySweeper:
    """Purges expired records and refreshes the taxonomy."""

    def __init__(
        self,
        client: EventfulClient,
        sink: RemoteSink,
        store: EventStore,
        clock: Callable[[], datetime] = utcnow,
        queue: Optional[JobQueue] = None,
        job_retention: timedelta = timedelta(days=7),
    ):
        self.client = client
        self.sink = sink
        self.store = store
        self.clock = clock
        self.queue = queue
        self.job_retention = job_retention

    async def __call__(self, job: Job, ctx: JobContext) -> SweepReport:
        now = self.clock()
        report = SweepReport(started_at=now)
        logger.info("sweep_started", job_id=job.id, now=now.isoformat())

        await self.remove_expired_events(now, report)
        await self.refresh_taxonomy(report)
        await self.remove_expired_categories(now, report)
        await self.purge_finished_jobs(report)

        await ctx.done()
        logger.info("sweep_finished", job_id=job.id, **report.model_dump(exclude={"started_at"}))
        return report

    async def remove_expired_events(self, now: datetime, report: SweepReport) -> None:
        try:
            expired = await self.store.find_expired_events(now)
        except Exception as e:
            logger.error("sweep_event_query_failed", error=str(e))
            report.event_removal_failures += 1
            return

        for event in expired:
            event_id = document_id(event)
            if event_id is None:
                continue
            try:
                await self.store.remove_event(event_id)
                report.events_removed += 1
                logger.debug("expired_event_removed", event_id=event_id)
            except Exception as e:
                report.event_removal_failures += 1
                logger.warning("sweep_event_remove_failed", event_id=event_id, error=str(e))

    async def purge_finished_jobs(self, report: SweepReport) -> None:
        if self.queue is None:
            return
        try:
            report.jobs_purged = await self.queue.purge_finished(self.job_retention)
        except Exception as e:
            logger.warning("job_purge_failed", error=str(e))

    async def refresh_taxonomy(self, report: SweepReport) -> None:
        categories: Optional[list[dict[str, Any]]] = await with_default(
            self.client.list_categories, None
        )
        if categories is None:
            logger.warning("taxonomy_refresh_failed")
            return

        report.taxonomy_refreshed = True
        for raw in categories:
            try:
                category = Category.model_validate(raw)
            except ValidationError as e:
                logger.warning("category_malformed", category=raw, error=str(e))
                continue

            try:
                await self.sink.publish_category(category)
                report.categories_published += 1
            except Exception as e:
                logger.warning("category_publish_failed", category_id=category.id, error=str(e))

    async def remove_expired_categories(self, now: datetime, report: SweepReport) -> None:
        try:
            expired = await self.store.find_expired_categories(now)
        except Exception as e:
            logger.error("sweep_category_query_failed", error=str(e))
            return

        for category in expired:
            category_id = document_id(category)
            if category_id is None:
                continue
            try:
                await self.store.remove_category(category_id)
                report.categories_removed += 1
            except Exception as e:
                logger.warning("sweep_category_remove_failed", category_id=category_id, error=str(e))
