"""Shared event/category store: interface and implementations."""

from .base import EventStore, document_id
from .memory import MemoryEventStore
from .remote import RemoteEventStore

__all__ = [
    "EventStore",
    "MemoryEventStore",
    "RemoteEventStore",
    "document_id",
]
