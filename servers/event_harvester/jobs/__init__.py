"""Durable job queue and worker loop."""

from .queue import HandlerAlreadyRegisteredError, JobContext, JobQueue, UnknownJobTypeError
from .store import JobStore, MemoryJobStore, SQLiteJobStore
from .worker import Worker

__all__ = [
    "JobQueue",
    "JobContext",
    "HandlerAlreadyRegisteredError",
    "UnknownJobTypeError",
    "JobStore",
    "MemoryJobStore",
    "SQLiteJobStore",
    "Worker",
]
