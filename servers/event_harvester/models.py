"""
Pydantic models for the harvester's data structures.

These models define the core data types used throughout the pipeline:
- Job: Unit of work in the queue, with priority and retry policy
- NormalizedEvent: Sanitized event ready to be published
- Category: Taxonomy entry refreshed from upstream
- FetchStats / SweepReport: Summaries of a handler run
"""

from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, computed_field


def utcnow() -> datetime:
    """Timezone-aware current time used for job bookkeeping."""
    return datetime.now(timezone.utc)


class JobType(str, Enum):
    """Job types understood by the worker."""

    FETCH_CITY = "fetchCity"
    REFRESH = "refresh"


class JobState(str, Enum):
    """Lifecycle states of a job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"  # Terminal, retries exhausted


class Priority(IntEnum):
    """Job priority. Higher values are claimed first."""

    LOW = -10
    NORMAL = 0
    MEDIUM = 5
    HIGH = 10
    CRITICAL = 15

    @classmethod
    def parse(cls, value: "str | int | Priority") -> "Priority":
        """Accept a member, its integer value or its name (case-insensitive)."""
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown priority: {value}") from None
        return cls(value)


DEFAULT_RETRIES = 5
DEFAULT_RETRY_WAIT = timedelta(minutes=15)


class RetryPolicy(BaseModel):
    """How many times a failed job is retried and how long to wait between attempts."""

    max_retries: int = Field(default=DEFAULT_RETRIES, ge=0)
    wait_seconds: float = Field(default=DEFAULT_RETRY_WAIT.total_seconds(), ge=0)

    @property
    def wait(self) -> timedelta:
        return timedelta(seconds=self.wait_seconds)


class JobFailure(BaseModel):
    """One entry of a job's failure log."""

    at: datetime
    reason: str


class Job(BaseModel):
    """A queued unit of work."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    state: JobState = JobState.PENDING

    # Retry bookkeeping
    retried: int = 0
    not_before: Optional[datetime] = None  # Not eligible before this time
    failures: list[JobFailure] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_eligible(self, now: datetime) -> bool:
        """Whether a pending job may be claimed at ``now``."""
        if self.state != JobState.PENDING:
            return False
        return self.not_before is None or self.not_before <= now

    @property
    def retries_left(self) -> int:
        return max(self.retry_policy.max_retries - self.retried, 0)

    @property
    def last_error(self) -> Optional[str]:
        return self.failures[-1].reason if self.failures else None


class EventCategory(BaseModel):
    """Category attached to an event listing."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    name: str


class NormalizedEvent(BaseModel):
    """An upstream event listing that passed normalization.

    Upstream fields without a normalized counterpart (price, tickets,
    popularity, image sizes, ...) are kept as extra fields and published
    unchanged.
    """

    model_config = ConfigDict(extra="allow")

    external_id: str
    title: Optional[str] = None
    url: Optional[str] = None

    # Location
    venue_name: Optional[str] = None
    venue_address: Optional[str] = None
    city_name: Optional[str] = None
    region_name: Optional[str] = None
    country_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    # Content
    description: Optional[str] = None
    links: list[str] = Field(default_factory=list)
    categories: list[EventCategory] = Field(default_factory=list)
    image_url: Optional[str] = None

    # Timing
    start_time: datetime
    stop_time: Optional[datetime] = None
    all_day: bool = False

    language: str

    def to_document(self) -> dict[str, Any]:
        """Render the JSON-ready document sent to the store."""
        document = self.model_dump(mode="json")
        document["id"] = document.pop("external_id")
        return document


class Category(BaseModel):
    """Taxonomy entry as listed by the upstream categories endpoint."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    name: str
    expires: Optional[datetime] = None


class FetchStats(BaseModel):
    """Statistics from one page fetch."""

    city: str
    page: int
    received: int = 0
    published: int = 0
    rejected: int = 0
    continued: bool = False
    duration_ms: Optional[int] = None


class SweepReport(BaseModel):
    """Result of one expiry sweep."""

    events_removed: int = 0
    event_removal_failures: int = 0
    categories_published: int = 0
    categories_removed: int = 0
    jobs_purged: int = 0
    taxonomy_refreshed: bool = False
    started_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def clean(self) -> bool:
        """True when every step of the sweep went through without a failure."""
        return self.taxonomy_refreshed and self.event_removal_failures == 0
