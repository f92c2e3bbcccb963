"""
Eventful API client.

Two endpoints are used:
- events/search: one page of events for a city, most popular first
- categories/list: the full category taxonomy, subcategories included

Eventful's JSON is loose: ``events`` is null when a page is empty, a list
with one element comes back as a bare object, and counts are strings.
This module smooths all of that out so callers always see lists and ints.
"""

from datetime import date, timedelta
from typing import Any, Optional

import httpx
import structlog

logger = structlog.get_logger()


EVENTFUL_BASE = "http://api.eventful.com"
SEARCH_PATH = "/json/events/search"
CATEGORIES_PATH = "/json/categories/list"

PAGE_SIZE = 50
WINDOW_DAYS = 30
DEFAULT_RADIUS_MILES = 20
DEFAULT_TIMEOUT_SECONDS = 30.0

SEARCH_INCLUDE = "price,categories,tickets,popularity,subcategories,mature"
SEARCH_IMAGE_SIZES = (
    "medium,block,large,edpborder250,dropshadow250,dropshadow170,block178,thumb,small"
)


class UpstreamError(Exception):
    """Raised when Eventful cannot be reached or answers with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SearchPage:
    """One parsed page of search results."""

    def __init__(self, page_count: int, events: list[dict[str, Any]], total_items: int = 0):
        self.page_count = page_count
        self.events = events
        self.total_items = total_items

    def __repr__(self) -> str:
        return f"SearchPage(page_count={self.page_count}, events={len(self.events)})"


def format_date_window(today: date, days: int = WINDOW_DAYS) -> str:
    """Date range parameter covering ``days`` from ``today``: YYYYMMDD-YYYYMMDD."""
    end = today + timedelta(days=days)
    return f"{today:%Y%m%d}-{end:%Y%m%d}"


class EventfulClient:
    """Async client for the Eventful JSON API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = EVENTFUL_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        radius_miles: int = DEFAULT_RADIUS_MILES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            api_key: Eventful application key
            base_url: API root, overridable for tests and proxies
            timeout: Per-request timeout in seconds
            radius_miles: Search radius around the city
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.radius_miles = radius_miles
        self._transport = transport

    def search_params(self, city: str, page: int, today: Optional[date] = None) -> dict[str, Any]:
        """Query parameters for one search page."""
        return {
            "app_key": self.api_key,
            "page_size": PAGE_SIZE,
            "date": format_date_window(today or date.today()),
            "where": city,
            "within": str(self.radius_miles),
            "units": "miles",
            "sort_order": "popularity",
            "page_number": page,
            "include": SEARCH_INCLUDE,
            "image_sizes": SEARCH_IMAGE_SIZES,
            "mature": "normal",
            "languages": "1",
        }

    async def search_events(self, city: str, page: int, today: Optional[date] = None) -> SearchPage:
        """
        Fetch one page of events for ``city``.

        Raises:
            UpstreamError: On transport failure, timeout or non-success status
        """
        data = await self._get(SEARCH_PATH, self.search_params(city, page, today))

        events_block = data.get("events") or {}
        events = _as_list(events_block.get("event") if isinstance(events_block, dict) else None)

        return SearchPage(
            page_count=_as_int(data.get("page_count")),
            events=[e for e in events if isinstance(e, dict)],
            total_items=_as_int(data.get("total_items")),
        )

    async def list_categories(self) -> list[dict[str, Any]]:
        """
        Fetch the full category taxonomy.

        Raises:
            UpstreamError: On transport failure, timeout or non-success status
        """
        data = await self._get(
            CATEGORIES_PATH,
            {"app_key": self.api_key, "subcategories": 1},
        )
        return [c for c in _as_list(data.get("category")) if isinstance(c, dict)]

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                f"HTTP {e.response.status_code} from {path}: {e.response.text[:200]}",
                status_code=e.response.status_code,
            ) from e
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Timed out after {self.timeout}s calling {path}") from e
        except httpx.RequestError as e:
            raise UpstreamError(f"Request to {path} failed: {e}") from e
        except ValueError as e:
            raise UpstreamError(f"Invalid JSON from {path}: {e}") from e

        if not isinstance(data, dict):
            raise UpstreamError(f"Unexpected response shape from {path}")

        # Eventful reports some failures with a 200 and an error body
        if "error" in data and "status" in data:
            raise UpstreamError(f"Eventful error from {path}: {data.get('status')}")

        return data


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
