"""
Network submitter: one delivery attempt per event against the sync endpoint.

Classifies every outcome into success or one of the delivery errors in
``field_outbox.errors``. Never retries on its own; the queue and the
RetryPolicy decide what happens next.

Example:
    async with HttpSubmitter("https://api.example.com", token="...") as sub:
        await sub.submit(event)
"""

from __future__ import annotations

from typing import Optional, Protocol

import httpx
from loguru import logger

from .errors import AuthError, PermanentError, TransientNetworkError
from .models import OutboxEvent

SYNC_PATH = "/api/v1/worker-events"

_PERMANENT_STATUSES = {400, 404, 410, 422}


class Submitter(Protocol):
    """One delivery attempt. Raises a DeliveryError subclass on failure."""

    async def submit(self, event: OutboxEvent) -> None: ...


def _retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None  # HTTP-date form: fall back to policy backoff


def classify_response(response: httpx.Response) -> None:
    """Return on success, raise the matching delivery error otherwise.

    409 means the server already holds this event id, which is success for
    an idempotent at-least-once sender.
    """
    code = response.status_code
    if 200 <= code < 300 or code == 409:
        return
    detail = response.text[:200] if response.text else ""
    if code in (401, 403):
        raise AuthError(f"sync endpoint rejected credentials ({code})", code)
    if code in _PERMANENT_STATUSES:
        raise PermanentError(f"sync endpoint rejected event ({code}): {detail}", code)
    if code == 429:
        raise TransientNetworkError(
            "sync endpoint rate limited (429)",
            code,
            rate_limited=True,
            retry_after=_retry_after(response),
        )
    raise TransientNetworkError(f"sync endpoint error ({code}): {detail}", code)


class HttpSubmitter:
    """Deliver events with ``httpx.AsyncClient``.

    Each request carries a bounded timeout so one stuck event cannot hold the
    single-flight flag of the queue indefinitely.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._token = token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}{SYNC_PATH}"

    def set_token(self, token: Optional[str]) -> None:
        """Swap the bearer token after re-authentication."""
        self._token = token

    async def start(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        logger.debug(f"HttpSubmitter started: {self.endpoint}")

    async def stop(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        await client.aclose()
        logger.debug("HttpSubmitter stopped")

    async def __aenter__(self) -> "HttpSubmitter":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def submit(self, event: OutboxEvent) -> None:
        if self._client is None:
            await self.start()
        try:
            response = await self._client.post(
                self.endpoint, json=event.to_wire(), headers=self._headers()
            )
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"timeout after {self.timeout}s: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{type(exc).__name__}: {exc}") from exc

        classify_response(response)
        logger.debug(f"Event {event.id} accepted ({response.status_code})")
