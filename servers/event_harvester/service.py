"""
Harvester service: wiring and startup sequence.

Startup is an ordered state machine; each phase must succeed before the
next one begins and no job is claimed before ``running``:

    stopped -> connected -> authenticated -> subscribed -> running

Seeding, refresh scheduling and status queries only touch the job store
and never open the remote connection.
"""

from datetime import timedelta
from enum import Enum
from typing import Iterable, Optional, Union
import asyncio
import signal

import httpx
import structlog

from .config.settings import Settings
from .connection import RemoteConnection, RemoteStoreError
from .fetcher import CityFetcher
from .jobs import JobQueue, JobStore, SQLiteJobStore, Worker
from .models import Job, JobType, Priority
from .resilience.health import HealthMonitor
from .sink import RemoteSink
from .sources.eventful import EventfulClient
from .store.remote import CATEGORIES, EVENTS, RemoteEventStore
from .sweeper import ExpirySweeper

logger = structlog.get_logger()


SUBSCRIPTIONS = (EVENTS, CATEGORIES)


class StartupPhase(str, Enum):
    STOPPED = "stopped"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"
    RUNNING = "running"


PHASE_ORDER = list(StartupPhase)


class StartupError(Exception):
    """Raised when a startup phase cannot be reached."""

    def __init__(self, phase: StartupPhase, message: str):
        super().__init__(f"Startup failed entering '{phase.value}': {message}")
        self.phase = phase


class Harvester:
    """Owns the queue, the worker and the remote session of one process."""

    def __init__(
        self,
        settings: Settings,
        job_store: Optional[JobStore] = None,
        upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
        remote_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.phase = StartupPhase.STOPPED
        self.health = HealthMonitor(failure_threshold=settings.health_failure_threshold)

        self.client = EventfulClient(
            api_key=settings.eventful_api_key,
            base_url=settings.eventful_base_url,
            timeout=settings.request_timeout_seconds,
            radius_miles=settings.search_radius_miles,
            transport=upstream_transport,
        )
        self.connection = RemoteConnection(
            url=settings.remote_url or "",
            email=settings.admin_email or "",
            password=settings.admin_password or "",
            timeout=settings.request_timeout_seconds,
            transport=remote_transport,
        )
        self.connection.on_reconnect(self._on_reconnect)

        self.event_store = RemoteEventStore(self.connection)
        self.sink = RemoteSink(self.event_store)
        self.queue = JobQueue(job_store or SQLiteJobStore(settings.job_db_path))
        self.worker = Worker(
            self.queue,
            poll_interval=settings.poll_interval_seconds,
            health=self.health,
        )

    async def start(self) -> None:
        """Walk the startup phases up to ``running``."""
        if self.phase == StartupPhase.RUNNING:
            return
        self.phase = StartupPhase.STOPPED

        try:
            await self.connection.connect()
        except RemoteStoreError as e:
            raise StartupError(StartupPhase.CONNECTED, str(e)) from e
        self._advance(StartupPhase.CONNECTED)

        try:
            await self.connection.authenticate()
        except RemoteStoreError as e:
            raise StartupError(StartupPhase.AUTHENTICATED, str(e)) from e
        self._advance(StartupPhase.AUTHENTICATED)

        try:
            for name in SUBSCRIPTIONS:
                await self.connection.subscribe(name)
        except RemoteStoreError as e:
            raise StartupError(StartupPhase.SUBSCRIBED, str(e)) from e
        self._advance(StartupPhase.SUBSCRIBED)

        await self.queue.recover()
        self._register_handlers()
        self._advance(StartupPhase.RUNNING)

    def _advance(self, phase: StartupPhase) -> None:
        expected = PHASE_ORDER[PHASE_ORDER.index(self.phase) + 1]
        if phase != expected:
            raise StartupError(phase, f"current phase is '{self.phase.value}'")
        self.phase = phase
        logger.info("startup_phase", phase=phase.value)

    def _register_handlers(self) -> None:
        if self.queue.handlers:
            return
        self.queue.register_handler(
            JobType.FETCH_CITY,
            CityFetcher(
                self.client,
                self.sink,
                self.queue,
                max_pages_per_city=self.settings.max_pages_per_city,
            ),
            concurrency=self.settings.fetch_concurrency,
        )
        self.queue.register_handler(
            JobType.REFRESH,
            ExpirySweeper(
                self.client,
                self.sink,
                self.event_store,
                queue=self.queue,
                job_retention=timedelta(days=self.settings.job_retention_days),
            ),
        )

    async def _on_reconnect(self, connection: RemoteConnection) -> None:
        self.health.record_success("remote")
        logger.info("remote_session_restored", subscriptions=connection.subscriptions)

    async def run_once(self) -> int:
        """Start, drain every eligible job, and return how many ran."""
        await self.start()
        processed = await self.worker.run_until_idle()
        logger.info("run_once_finished", processed=processed)
        return processed

    async def run_forever(self) -> None:
        """Start and process jobs until SIGINT/SIGTERM."""
        await self.start()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.worker.stop)
            except NotImplementedError:
                pass
        await self.worker.run()

    async def seed(
        self,
        cities: Iterable[str],
        priority: Union[Priority, str, int] = Priority.NORMAL,
    ) -> list[Job]:
        """Enqueue a first-page ``fetchCity`` job per city."""
        jobs = []
        for city in cities:
            city = city.strip()
            if not city:
                continue
            jobs.append(
                await self.queue.enqueue(
                    JobType.FETCH_CITY, {"city": city, "page": 0}, priority=priority
                )
            )
        return jobs

    async def schedule_refresh(
        self,
        priority: Union[Priority, str, int] = Priority.NORMAL,
    ) -> Job:
        return await self.queue.enqueue(JobType.REFRESH, {}, priority=priority)

    async def purge_jobs(self, older_than_days: Optional[float] = None) -> int:
        """Drop finished jobs; defaults to the configured retention."""
        if older_than_days is None:
            older_than_days = self.settings.job_retention_days
        return await self.queue.purge_finished(timedelta(days=older_than_days))

    async def status(self) -> dict:
        return {
            "phase": self.phase.value,
            "jobs": await self.queue.store.counts(),
            "health": self.health.get_status(),
        }

    async def close(self) -> None:
        await self.connection.close()
        await self.queue.store.close()
        self.phase = StartupPhase.STOPPED
