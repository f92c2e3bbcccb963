"""Interface of the shared event/category store."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional


class EventStore(ABC):
    """Operations the pipeline issues against the shared store.

    The store owns persistence, expiry timestamps and merge policy; the
    pipeline only finds, publishes and removes documents. Documents carry
    their store identifier in ``_id``.
    """

    @abstractmethod
    async def find_event(self, event_id: str) -> Optional[dict[str, Any]]:
        """Stored event with this external id, or None."""

    @abstractmethod
    async def add_event(
        self,
        document: dict[str, Any],
        existing: Optional[dict[str, Any]],
        city: str,
    ) -> None:
        """Publish an event. ``existing`` is the prior lookup result, passed through."""

    @abstractmethod
    async def find_expired_events(self, now: datetime) -> list[dict[str, Any]]:
        """Events whose ``expires`` is strictly before ``now``."""

    @abstractmethod
    async def remove_event(self, event_id: str) -> None:
        """Delete one event."""

    @abstractmethod
    async def add_category(self, category: dict[str, Any]) -> None:
        """Create or refresh one taxonomy entry."""

    @abstractmethod
    async def find_expired_categories(self, now: datetime) -> list[dict[str, Any]]:
        """Categories whose ``expires`` is strictly before ``now``."""

    @abstractmethod
    async def remove_category(self, category_id: str) -> None:
        """Delete one category."""


def document_id(document: dict[str, Any]) -> Optional[str]:
    """Identifier of a stored document."""
    value = document.get("_id", document.get("id"))
    return str(value) if value is not None else None
