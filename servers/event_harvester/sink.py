"""
Publishing of normalized events and taxonomy entries.

The sink decides what is sent, not whether the store already has it: an
event is always published together with the result of looking it up, and
the store's addEvent handler applies its own merge policy.
"""

from typing import Any, Optional

import structlog

from .models import Category, NormalizedEvent
from .store.base import EventStore

logger = structlog.get_logger()


class RemoteSink:
    """Publishes to an EventStore."""

    def __init__(self, store: EventStore):
        self.store = store

    async def lookup(self, external_id: str) -> Optional[dict[str, Any]]:
        """Existing stored record for an external id, if any."""
        return await self.store.find_event(external_id)

    async def publish(
        self,
        event: NormalizedEvent,
        existing: Optional[dict[str, Any]],
        city: str,
    ) -> None:
        """Publish one event. Never skipped because ``existing`` is set."""
        await self.store.add_event(event.to_document(), existing, city)
        logger.debug(
            "event_published",
            event_id=event.external_id,
            city=city,
            existing=existing is not None,
        )

    async def publish_category(self, category: Category) -> None:
        await self.store.add_category(category.model_dump(mode="json", exclude_none=True))
        logger.debug("category_published", category_id=category.id, name=category.name)
