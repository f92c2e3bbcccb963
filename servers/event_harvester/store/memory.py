"""In-process event store for tests and dry runs."""

from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as date_parser

from .base import EventStore, document_id


class MemoryEventStore(EventStore):
    """Dict-backed store that upserts by id and keeps a publish log.

    ``published`` records every add_event call as (document, existing, city)
    so callers can check exactly what was sent.
    """

    def __init__(self):
        self.events: dict[str, dict[str, Any]] = {}
        self.categories: dict[str, dict[str, Any]] = {}
        self.published: list[tuple[dict[str, Any], Optional[dict[str, Any]], str]] = []

    async def find_event(self, event_id: str) -> Optional[dict[str, Any]]:
        event = self.events.get(str(event_id))
        return dict(event) if event else None

    async def add_event(
        self,
        document: dict[str, Any],
        existing: Optional[dict[str, Any]],
        city: str,
    ) -> None:
        self.published.append((dict(document), existing, city))
        stored = {**(self.events.get(str(document["id"])) or {}), **document}
        stored["_id"] = str(document["id"])
        stored["city"] = city
        stored.setdefault("expires", document.get("stop_time") or document.get("start_time"))
        self.events[stored["_id"]] = stored

    async def find_expired_events(self, now: datetime) -> list[dict[str, Any]]:
        return [dict(e) for e in self.events.values() if _expired(e, now)]

    async def remove_event(self, event_id: str) -> None:
        self.events.pop(str(event_id), None)

    async def add_category(self, category: dict[str, Any]) -> None:
        key = str(category.get("id") or category["name"])
        self.categories[key] = {**category, "_id": key}

    async def find_expired_categories(self, now: datetime) -> list[dict[str, Any]]:
        return [dict(c) for c in self.categories.values() if _expired(c, now)]

    async def remove_category(self, category_id: str) -> None:
        self.categories.pop(str(category_id), None)

    def put_event(self, document: dict[str, Any]) -> None:
        """Seed a stored event directly (no publish log entry)."""
        self.events[document_id(document)] = {**document, "_id": document_id(document)}


def _expired(document: dict[str, Any], now: datetime) -> bool:
    expires = document.get("expires")
    if expires is None:
        return False
    if isinstance(expires, str):
        try:
            expires = date_parser.parse(expires)
        except (ValueError, OverflowError):
            return False
    return _aware(expires) < _aware(now)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
