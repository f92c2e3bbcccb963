"""Event store backed by the shared remote store."""

from datetime import datetime, timezone
from typing import Any, Optional

from ..connection import RemoteConnection
from .base import EventStore

EVENTS = "events"
CATEGORIES = "categories"


class RemoteEventStore(EventStore):
    """Issues find/remove requests and publish method calls over a RemoteConnection."""

    def __init__(self, connection: RemoteConnection):
        self.connection = connection

    async def find_event(self, event_id: str) -> Optional[dict[str, Any]]:
        return await self.connection.find_one(EVENTS, str(event_id))

    async def add_event(
        self,
        document: dict[str, Any],
        existing: Optional[dict[str, Any]],
        city: str,
    ) -> None:
        await self.connection.call("addEvent", document, existing, city)

    async def find_expired_events(self, now: datetime) -> list[dict[str, Any]]:
        return await self.connection.find(EVENTS, _expired_before(now))

    async def remove_event(self, event_id: str) -> None:
        await self.connection.remove(EVENTS, str(event_id))

    async def add_category(self, category: dict[str, Any]) -> None:
        await self.connection.call("addCategory", category)

    async def find_expired_categories(self, now: datetime) -> list[dict[str, Any]]:
        return await self.connection.find(CATEGORIES, _expired_before(now))

    async def remove_category(self, category_id: str) -> None:
        await self.connection.remove(CATEGORIES, str(category_id))


def _expired_before(now: datetime) -> dict[str, Any]:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return {"expires": {"$lt": now.isoformat()}}
