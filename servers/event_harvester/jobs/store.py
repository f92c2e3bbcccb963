"""
Job persistence.

The job store is the single source of truth for queued work. Two
implementations share one interface:
- SQLiteJobStore: durable, survives restarts, used in production
- MemoryJobStore: process-local, used by tests and dry runs

Claiming is atomic: a claimed job is moved to ``running`` in the same
step that selects it, so two loops never receive the same job.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
import itertools
import sqlite3

import structlog

from ..models import Job, JobState, JobType, utcnow

logger = structlog.get_logger()


class JobStore(ABC):
    """Interface for job storage."""

    @abstractmethod
    async def add(self, job: Job) -> Job:
        """Persist a new job."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""

    @abstractmethod
    async def save(self, job: Job) -> None:
        """Persist changes to an existing job."""

    @abstractmethod
    async def claim_next(self, job_type: JobType, now: datetime) -> Optional[Job]:
        """Atomically claim the next eligible pending job of ``job_type``.

        Eligible jobs are ordered by priority (highest first), then by
        creation time (oldest first). The returned job is already ``running``.
        """

    @abstractmethod
    async def next_eligible_at(self, job_type: JobType) -> Optional[datetime]:
        """Earliest time a pending job of ``job_type`` becomes eligible."""

    @abstractmethod
    async def list_jobs(
        self,
        state: Optional[JobState] = None,
        job_type: Optional[JobType] = None,
        limit: int = 100,
    ) -> list[Job]:
        """List jobs, newest first, with optional filters."""

    @abstractmethod
    async def counts(self) -> dict[str, int]:
        """Number of jobs in each state."""

    @abstractmethod
    async def requeue_running(self) -> int:
        """Return jobs stranded in ``running`` to ``pending``. Returns count."""

    @abstractmethod
    async def purge_finished(self, older_than: datetime) -> int:
        """Delete completed/failed jobs last updated before ``older_than``."""

    async def close(self) -> None:
        """Release resources held by the store."""


class MemoryJobStore(JobStore):
    """In-process job store."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._order: dict[str, int] = {}
        self._seq = itertools.count()

    async def add(self, job: Job) -> Job:
        self._jobs[job.id] = job.model_copy(deep=True)
        self._order[job.id] = next(self._seq)
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def save(self, job: Job) -> None:
        if job.id not in self._jobs:
            raise KeyError(f"Unknown job: {job.id}")
        self._jobs[job.id] = job.model_copy(deep=True)

    async def claim_next(self, job_type: JobType, now: datetime) -> Optional[Job]:
        candidates = [
            job for job in self._jobs.values()
            if job.type == job_type and job.is_eligible(now)
        ]
        if not candidates:
            return None

        job = min(
            candidates,
            key=lambda j: (-int(j.priority), j.created_at, self._order[j.id]),
        )
        job.state = JobState.RUNNING
        job.updated_at = now
        return job.model_copy(deep=True)

    async def next_eligible_at(self, job_type: JobType) -> Optional[datetime]:
        times = [
            job.not_before or job.created_at
            for job in self._jobs.values()
            if job.type == job_type and job.state == JobState.PENDING
        ]
        return min(times) if times else None

    async def list_jobs(
        self,
        state: Optional[JobState] = None,
        job_type: Optional[JobType] = None,
        limit: int = 100,
    ) -> list[Job]:
        jobs = [
            job for job in self._jobs.values()
            if (state is None or job.state == state)
            and (job_type is None or job.type == job_type)
        ]
        jobs.sort(key=lambda j: self._order[j.id], reverse=True)
        if limit >= 0:
            jobs = jobs[:limit]
        return [job.model_copy(deep=True) for job in jobs]

    async def counts(self) -> dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state.value] += 1
        return counts

    async def requeue_running(self) -> int:
        count = 0
        for job in self._jobs.values():
            if job.state == JobState.RUNNING:
                job.state = JobState.PENDING
                job.updated_at = utcnow()
                count += 1
        return count

    async def purge_finished(self, older_than: datetime) -> int:
        finished = {JobState.COMPLETED, JobState.FAILED}
        doomed = [
            job_id for job_id, job in self._jobs.items()
            if job.state in finished and job.updated_at < older_than
        ]
        for job_id in doomed:
            del self._jobs[job_id]
            del self._order[job_id]
        return len(doomed)


SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    type TEXT NOT NULL,
    state TEXT NOT NULL,
    priority INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    not_before TEXT,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(type, state, priority, created_at);
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so that text comparison matches time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%f").replace(tzinfo=timezone.utc)


class SQLiteJobStore(JobStore):
    """Durable job store backed by a SQLite file.

    Indexed columns mirror the fields used for claiming; the full job is
    kept as JSON in ``data``.
    """

    def __init__(self, path: str | Path = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self.path, isolation_level=None, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        logger.debug("job_store_opened", path=self.path)

    def _row_values(self, job: Job) -> tuple:
        return (
            job.type.value,
            job.state.value,
            int(job.priority),
            _ts(job.created_at),
            _ts(job.updated_at),
            _ts(job.not_before),
            job.model_dump_json(),
        )

    async def add(self, job: Job) -> Job:
        self._conn.execute(
            "INSERT INTO jobs (type, state, priority, created_at, updated_at, not_before, data, id) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (*self._row_values(job), job.id),
        )
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        row = self._conn.execute("SELECT data FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return Job.model_validate_json(row["data"]) if row else None

    async def save(self, job: Job) -> None:
        cursor = self._conn.execute(
            "UPDATE jobs SET type = ?, state = ?, priority = ?, created_at = ?, "
            "updated_at = ?, not_before = ?, data = ? WHERE id = ?",
            (*self._row_values(job), job.id),
        )
        if cursor.rowcount == 0:
            raise KeyError(f"Unknown job: {job.id}")

    async def claim_next(self, job_type: JobType, now: datetime) -> Optional[Job]:
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            row = self._conn.execute(
                "SELECT data FROM jobs "
                "WHERE type = ? AND state = ? AND (not_before IS NULL OR not_before <= ?) "
                "ORDER BY priority DESC, created_at ASC, seq ASC LIMIT 1",
                (job_type.value, JobState.PENDING.value, _ts(now)),
            ).fetchone()
            if row is None:
                self._conn.execute("COMMIT")
                return None

            job = Job.model_validate_json(row["data"])
            job.state = JobState.RUNNING
            job.updated_at = now
            await self.save(job)
            self._conn.execute("COMMIT")
            return job
        except Exception:
            self._conn.execute("ROLLBACK")
            raise

    async def next_eligible_at(self, job_type: JobType) -> Optional[datetime]:
        row = self._conn.execute(
            "SELECT MIN(COALESCE(not_before, created_at)) AS at FROM jobs "
            "WHERE type = ? AND state = ?",
            (job_type.value, JobState.PENDING.value),
        ).fetchone()
        return _parse_ts(row["at"]) if row else None

    async def list_jobs(
        self,
        state: Optional[JobState] = None,
        job_type: Optional[JobType] = None,
        limit: int = 100,
    ) -> list[Job]:
        query = "SELECT data FROM jobs WHERE 1 = 1"
        params: list = []
        if state is not None:
            query += " AND state = ?"
            params.append(state.value)
        if job_type is not None:
            query += " AND type = ?"
            params.append(job_type.value)
        query += " ORDER BY seq DESC LIMIT ?"
        params.append(limit)

        rows = self._conn.execute(query, params).fetchall()
        return [Job.model_validate_json(row["data"]) for row in rows]

    async def counts(self) -> dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        for row in self._conn.execute("SELECT state, COUNT(*) AS n FROM jobs GROUP BY state"):
            counts[row["state"]] = row["n"]
        return counts

    async def requeue_running(self) -> int:
        running = await self.list_jobs(state=JobState.RUNNING, limit=-1)
        for job in running:
            job.state = JobState.PENDING
            job.updated_at = utcnow()
            await self.save(job)
        return len(running)

    async def purge_finished(self, older_than: datetime) -> int:
        cursor = self._conn.execute(
            "DELETE FROM jobs WHERE state IN (?, ?) AND updated_at < ?",
            (JobState.COMPLETED.value, JobState.FAILED.value, _ts(older_than)),
        )
        return cursor.rowcount

    async def close(self) -> None:
        self._conn.close()
