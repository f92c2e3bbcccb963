"""Shared pytest fixtures for harvester tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
import hashlib
import json
import os

import httpx
import pytest

from servers.event_harvester.jobs import JobQueue, MemoryJobStore
from servers.event_harvester.sink import RemoteSink
from servers.event_harvester.sources.eventful import EventfulClient
from servers.event_harvester.store import MemoryEventStore


class FakeClock:
    """Controllable clock for queue and sweeper timing."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Hide harvester variables of the calling shell from settings loading."""
    for var in list(os.environ):
        if var.upper().startswith(("HARVESTER_", "EVENTFUL_")):
            monkeypatch.delenv(var, raising=False)
    return monkeypatch


@pytest.fixture
def job_store() -> MemoryJobStore:
    return MemoryJobStore()


@pytest.fixture
def queue(job_store: MemoryJobStore, clock: FakeClock) -> JobQueue:
    return JobQueue(job_store, clock=clock)


@pytest.fixture
def event_store() -> MemoryEventStore:
    return MemoryEventStore()


@pytest.fixture
def sink(event_store: MemoryEventStore) -> RemoteSink:
    return RemoteSink(event_store)


def _raw_event(event_id: str = "E0-001-000000001-0", **overrides: Any) -> dict[str, Any]:
    """Raw event shaped like one element of Eventful's ``events.event``."""
    event = {
        "id": event_id,
        "title": "Blues on the Green",
        "url": "http://austin.eventful.com/events/blues-on-the-green-/E0-001-000000001-0",
        "description": "Free outdoor concert at Zilker Park.",
        "start_time": "2025-03-10 19:00:00",
        "stop_time": "2025-03-10 22:00:00",
        "all_day": "0",
        "language": "English",
        "venue_name": "Zilker Park",
        "venue_address": "2100 Barton Springs Rd",
        "city_name": "Austin",
        "region_name": "Texas",
        "country_name": "United States",
        "latitude": "30.2669",
        "longitude": "-97.7729",
        "image": {"medium": {"url": "http://s1.evcdn.com/images/medium/I0-001/blues.jpeg"}},
        "categories": {"category": [{"id": "music", "name": "Concerts &amp; Tour Dates"}]},
    }
    event.update(overrides)
    return event


@pytest.fixture
def raw_event() -> dict[str, Any]:
    """Provide a publishable raw Austin event."""
    return _raw_event()


def _search_response(events: Optional[list[dict[str, Any]]], page_count: int = 1) -> dict[str, Any]:
    """Eventful search body; ``None`` events mimics an empty page."""
    return {
        "total_items": str(len(events or [])),
        "page_count": str(page_count),
        "page_number": "1",
        "events": {"event": events} if events is not None else None,
    }


@pytest.fixture
def make_client() -> Callable[..., EventfulClient]:
    """Build an EventfulClient answering through a request handler."""

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> EventfulClient:
        return EventfulClient(
            api_key="test-key",
            base_url="http://eventful.test",
            transport=httpx.MockTransport(handler),
        )

    return factory


@pytest.fixture
def make_event() -> Callable[..., dict[str, Any]]:
    """Factory for raw events with overridden fields."""
    return _raw_event


@pytest.fixture
def make_search() -> Callable[..., dict[str, Any]]:
    """Factory for Eventful search response bodies."""
    return _search_response


class FakeRemoteStore:
    """HTTP double of the shared store, served through httpx.MockTransport."""

    def __init__(self, email: str = "admin@example.com", password: str = "secret"):
        self.email = email
        self.digest = hashlib.sha256(password.encode("utf-8")).hexdigest()
        self.collections: dict[str, dict[str, dict[str, Any]]] = {"events": {}, "categories": {}}
        self.method_calls: list[tuple[str, list[Any]]] = []
        self.requests: list[httpx.Request] = []
        self.tokens: set[str] = set()
        self.logins = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def expire_sessions(self) -> None:
        self.tokens.clear()

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path.strip("/").split("/")

        if parts == ["methods", "login"]:
            return self._login(json.loads(request.content))

        if request.headers.get("X-Auth-Token") not in self.tokens:
            return httpx.Response(401, json={"error": "not-authorized"})

        if parts[0] == "methods":
            params = json.loads(request.content)["params"]
            self.method_calls.append((parts[1], params))
            if parts[1] == "addEvent":
                document = params[0]
                self.collections["events"][document["id"]] = {**document, "_id": document["id"]}
            elif parts[1] == "addCategory":
                category = params[0]
                self.collections["categories"][category["id"]] = {**category, "_id": category["id"]}
            return httpx.Response(200, json={"result": True})

        collection = self.collections.get(parts[1])
        if collection is None:
            return httpx.Response(404, json={"error": "no-such-collection"})

        if len(parts) == 2:
            return httpx.Response(200, json=[])
        if parts[2] == "find":
            cutoff = json.loads(request.content)["selector"]["expires"]["$lt"]
            expired = [d for d in collection.values() if d.get("expires") and d["expires"] < cutoff]
            return httpx.Response(200, json=expired)

        document_id = parts[2]
        if request.method == "DELETE":
            collection.pop(document_id, None)
            return httpx.Response(200, json={})
        if document_id not in collection:
            return httpx.Response(404, json={"error": "not-found"})
        return httpx.Response(200, json=collection[document_id])

    def _login(self, body: dict[str, Any]) -> httpx.Response:
        credentials = body["params"][0]
        if (
            credentials["user"]["email"] != self.email
            or credentials["password"]["digest"] != self.digest
        ):
            return httpx.Response(403, json={"error": "login-refused"})
        self.logins += 1
        token = f"token-{self.logins}"
        self.tokens.add(token)
        return httpx.Response(200, json={"result": {"id": "admin-1", "token": token}})


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()
