"""
Connection manager for the shared remote store.

The remote store exposes collections (``events``, ``categories``) and
methods (``login``, ``addEvent``, ``addCategory``) over HTTP/JSON. This
module owns the session lifecycle:

    connect -> authenticate -> subscribe(...) -> requests

When the store answers 401 (session expired, server restarted) the
connection reconnects: it logs in again on the open client (opening one if
it was closed), re-subscribes and runs any registered reconnect hooks, then
replays the request once. Concurrent 401s share a single reconnect; a
request whose token was already replaced just replays.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Optional
import asyncio
import hashlib

import httpx
import structlog

from .resilience.retry import retry_with_backoff

logger = structlog.get_logger()

ReconnectHook = Callable[["RemoteConnection"], Awaitable[None]]


class RemoteStoreError(Exception):
    """Raised when the remote store cannot be reached or rejects a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(RemoteStoreError):
    """Raised when the store refuses the admin credentials."""


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


def password_digest(password: str) -> dict[str, str]:
    """Password in the digest form accepted by the store's login method."""
    return {
        "digest": hashlib.sha256(password.encode("utf-8")).hexdigest(),
        "algorithm": "sha-256",
    }


class RemoteConnection:
    """Authenticated HTTP session with the remote store."""

    def __init__(
        self,
        url: str,
        email: str,
        password: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url.rstrip("/")
        self.email = email
        self.password = password
        self.timeout = timeout
        self.state = ConnectionState.DISCONNECTED
        self.subscriptions: list[str] = []
        self.user_id: Optional[str] = None
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._token: Optional[str] = None
        self._reconnect_hooks: list[ReconnectHook] = []
        self._reconnect_lock = asyncio.Lock()

    def on_reconnect(self, hook: ReconnectHook) -> None:
        """Register a coroutine run after every successful reconnect."""
        self._reconnect_hooks.append(hook)

    async def connect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = httpx.AsyncClient(
            base_url=self.url,
            timeout=self.timeout,
            transport=self._transport,
        )
        self._token = None
        self.state = ConnectionState.CONNECTED
        logger.info("remote_connected", url=self.url)

    async def authenticate(self) -> None:
        """Log in with the admin credentials.

        Raises:
            AuthenticationError: If the credentials are refused
            RemoteStoreError: If the store stays unreachable after retries
        """
        try:
            result = await self._login()
        except httpx.TransportError as e:
            raise RemoteStoreError(f"Login to {self.url} failed: {e}") from e
        if not isinstance(result, dict) or not result.get("token"):
            raise AuthenticationError("Login returned no session token")

        self._token = str(result["token"])
        self.user_id = str(result["id"]) if result.get("id") is not None else None
        self.state = ConnectionState.AUTHENTICATED
        logger.info("remote_authenticated", email=self.email, user_id=self.user_id)

    @retry_with_backoff(max_attempts=3, base_delay=1.0, retryable_exceptions=(httpx.TransportError,))
    async def _login(self) -> Any:
        credentials = {"user": {"email": self.email}, "password": password_digest(self.password)}
        response = await self._client_or_raise().post(
            "/methods/login", json={"params": [credentials]}
        )
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Login refused for {self.email}", status_code=response.status_code
            )
        _raise_for_status(response, "/methods/login")
        return response.json().get("result")

    async def subscribe(self, name: str, replay: bool = True) -> None:
        """Confirm a collection is readable and remember it for reconnects."""
        await self._request("GET", f"/collections/{name}", replay=replay, params={"limit": 0})
        if name not in self.subscriptions:
            self.subscriptions.append(name)
        logger.info("remote_subscribed", collection=name)

    async def reconnect(self, stale_token: Optional[str] = None) -> None:
        """Renew the session.

        Args:
            stale_token: Token of the request that was refused; when the
                session has been renewed since, nothing is done
        """
        async with self._reconnect_lock:
            if stale_token is not None and self._token != stale_token:
                logger.debug("remote_session_already_renewed")
                return

            logger.warning("remote_reconnecting", url=self.url)
            if self._client is None:
                await self.connect()
            else:
                self.state = ConnectionState.CONNECTED
            await self.authenticate()
            for name in list(self.subscriptions):
                await self.subscribe(name, replay=False)
            for hook in self._reconnect_hooks:
                await hook(self)

    async def call(self, method: str, *params: Any) -> Any:
        """Invoke a remote method and return its result."""
        response = await self._request("POST", f"/methods/{method}", json={"params": list(params)})
        return response.json().get("result")

    async def find(self, collection: str, selector: dict[str, Any]) -> list[dict[str, Any]]:
        response = await self._request(
            "POST", f"/collections/{collection}/find", json={"selector": selector}
        )
        documents = response.json()
        return documents if isinstance(documents, list) else []

    async def find_one(self, collection: str, document_id: str) -> Optional[dict[str, Any]]:
        response = await self._request(
            "GET", f"/collections/{collection}/{document_id}", allow_missing=True
        )
        if response.status_code == 404:
            return None
        return response.json()

    async def remove(self, collection: str, document_id: str) -> None:
        await self._request("DELETE", f"/collections/{collection}/{document_id}", allow_missing=True)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.state = ConnectionState.CLOSED

    async def _request(
        self,
        method: str,
        path: str,
        allow_missing: bool = False,
        replay: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        token = self._token
        response = await self._send(method, path, **kwargs)

        # Only requests sent with a session token are replayed
        if response.status_code == 401 and replay and token is not None:
            await self.reconnect(stale_token=token)
            response = await self._send(method, path, **kwargs)

        if allow_missing and response.status_code == 404:
            return response
        _raise_for_status(response, path)
        return response

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {}
        if self._token:
            headers["X-Auth-Token"] = self._token
        if self.user_id:
            headers["X-User-Id"] = self.user_id
        try:
            return await self._client_or_raise().request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteStoreError(f"Timed out calling {method} {path}") from e
        except httpx.RequestError as e:
            raise RemoteStoreError(f"{method} {path} failed: {e}") from e

    def _client_or_raise(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RemoteStoreError("Not connected; call connect() first")
        return self._client


def _raise_for_status(response: httpx.Response, path: str) -> None:
    if response.is_success:
        return
    raise RemoteStoreError(
        f"HTTP {response.status_code} from {path}: {response.text[:200]}",
        status_code=response.status_code,
    )
