"""
WhatsApp channel infrastructure shared by every client implementation.

Provides:
- ChannelError: structured error hierarchy
- CircuitBreaker: pauses a number's sends while the provider is failing
- MessageDeduplicator: bounded TTL seen-set for re-delivered webhooks
- MediaPayload / fetch_media: download a URL into a sendable attachment
- WhatsAppClient: abstract per-number client with an event-handler registry
- OutboundChannel: the send contract the flow engine and schedulers use
"""
from __future__ import annotations

import abc
import asyncio
import base64
import inspect
import mimetypes
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import unquote, urlparse

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from models.schemas import InstanceStatus

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "whatsapp", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class ChannelUnavailableError(ChannelError):
    """No client for the instance, or the client is not ready to send."""

    def __init__(self, client_id: str, status: str = ""):
        self.client_id = client_id
        self.status = status
        detail = f" (status: {status})" if status else ""
        super().__init__(f"WhatsApp client {client_id} not available{detail}", retryable=True)


class MediaFetchError(ChannelError):
    def __init__(self, url: str, reason: str):
        self.url = url
        super().__init__(f"Could not fetch media from {url}: {reason}")


class CircuitOpenError(ChannelError):
    """Sends for this number are paused after repeated transient failures."""

    def __init__(self, client_id: str, retry_after: float):
        self.client_id = client_id
        self.retry_after = retry_after
        super().__init__(
            f"Sending paused for {client_id}; retry in {retry_after:.0f}s", retryable=True,
        )


# ══════════════════════════════════════════════════════════════
#  SEND CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Pauses sends from one WhatsApp number while the provider is failing.

    Only transient failures count (transport errors, 5xx, 429). A rejected
    recipient is the caller's problem and must not block the other contacts
    on the same number. After ``recovery_timeout`` one probe send is let
    through (half-open); its outcome closes or re-opens the breaker.
    """

    def __init__(
        self,
        client_id: str = "",
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client_id = client_id
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> BreakerState:
        if self._opened_at is None:
            return BreakerState.CLOSED
        if self._clock() - self._opened_at >= self.recovery_timeout:
            return BreakerState.HALF_OPEN
        return BreakerState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state == BreakerState.OPEN

    def check(self) -> None:
        """Raise CircuitOpenError unless a send may be attempted now."""
        if self.is_open:
            remaining = self.recovery_timeout - (self._clock() - self._opened_at)
            raise CircuitOpenError(self.client_id, max(remaining, 0.0))

    def record_failure(self) -> None:
        self._failures += 1
        probing = self.state == BreakerState.HALF_OPEN
        if probing or self._failures >= self.failure_threshold:
            self._opened_at = self._clock()
            logger.warning("send_circuit_opened", client_id=self.client_id,
                           failures=self._failures, after_probe=probing)

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("send_circuit_closed", client_id=self.client_id)
        self._failures = 0
        self._opened_at = None

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state.value, "failures": self._failures}


# ══════════════════════════════════════════════════════════════
#  INBOUND DEDUPLICATION
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """
    Remembers recently seen inbound message keys.

    Cloud API webhooks are at-least-once, so the same message id can arrive
    twice within seconds. Entries expire after ``ttl_seconds`` and the oldest
    are evicted beyond ``max_entries``.
    """

    def __init__(self, ttl_seconds: float = 300.0, max_entries: int = 10_000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def is_duplicate(self, key: str) -> bool:
        """Return True if ``key`` was seen recently; otherwise remember it."""
        now = self._clock()
        self._expire(now)
        if key in self._seen:
            return True
        self._seen[key] = now
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)
        return False

    def _expire(self, now: float) -> None:
        # Insertion order is arrival order, so expired keys sit at the front
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self.ttl_seconds:
                break
            del self._seen[key]


# ══════════════════════════════════════════════════════════════
#  MEDIA
# ══════════════════════════════════════════════════════════════

@dataclass
class MediaPayload:
    """An attachment ready to upload: base64 data plus its type and name."""
    data: str
    mimetype: str
    filename: str

    @property
    def raw(self) -> bytes:
        return base64.b64decode(self.data)

    @property
    def kind(self) -> str:
        """WhatsApp message type for this attachment."""
        major = self.mimetype.split("/", 1)[0]
        if major in ("image", "audio", "video"):
            return major
        return "document"

    @classmethod
    def from_bytes(cls, content: bytes, mimetype: str, filename: str) -> "MediaPayload":
        return cls(base64.b64encode(content).decode("ascii"), mimetype, filename)


def _filename_from_url(url: str) -> str:
    path = unquote(urlparse(url).path)
    return path.rsplit("/", 1)[-1] or "file"


@retry(
    retry=retry_if_exception_type(httpx.TransportError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    reraise=True,
)
async def _download(client: httpx.AsyncClient, url: str) -> httpx.Response:
    return await client.get(url, follow_redirects=True)


async def fetch_media(
    url: str,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
) -> MediaPayload:
    """Download ``url`` into a MediaPayload. Raises MediaFetchError."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=timeout)
    try:
        response = await _download(client, url)
    except httpx.HTTPError as e:
        raise MediaFetchError(url, str(e)) from e
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code >= 400:
        raise MediaFetchError(url, f"HTTP {response.status_code}")

    filename = _filename_from_url(url)
    mimetype = response.headers.get("content-type", "").split(";", 1)[0].strip()
    if not mimetype:
        mimetype = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    logger.debug("media_fetched", url=url, mimetype=mimetype, size=len(response.content))
    return MediaPayload.from_bytes(response.content, mimetype, filename)


# ══════════════════════════════════════════════════════════════
#  CLIENT CONTRACT
# ══════════════════════════════════════════════════════════════

class ClientEvent(str, Enum):
    QR = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILURE = "auth_failure"
    MESSAGE = "message"


EventHandler = Callable[..., Any]


class WhatsAppClient(abc.ABC):
    """
    One connected WhatsApp number.

    Implementations drive their own connection and report progress through
    events (qr, authenticated, ready, disconnected, auth_failure, message).
    Handlers may be plain functions or coroutines; a failing handler is
    logged and does not stop the others.
    """

    def __init__(self, client_id: str):
        self.client_id = client_id
        self.status = InstanceStatus.NOT_INITIALIZED
        self._handlers: dict[ClientEvent, list[EventHandler]] = {}

    def on(self, event: ClientEvent | str, handler: EventHandler) -> None:
        self._handlers.setdefault(ClientEvent(event), []).append(handler)

    async def emit(self, event: ClientEvent | str, *args: Any) -> None:
        for handler in list(self._handlers.get(ClientEvent(event), [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("client_event_handler_failed", client_id=self.client_id,
                             client_event=str(event), error=str(e), exc_info=True)

    @abc.abstractmethod
    async def initialize(self) -> None:
        """Start connecting. Pairing progress is reported through events."""
        ...

    @abc.abstractmethod
    async def destroy(self) -> None:
        ...

    @abc.abstractmethod
    async def send_message(self, chat_id: str, text: str) -> str:
        """Send text, return the channel message id."""
        ...

    @abc.abstractmethod
    async def send_media(self, chat_id: str, media: MediaPayload, caption: str = "") -> str:
        """Send an attachment, return the channel message id."""
        ...


class OutboundChannel(abc.ABC):
    """Send contract consumed by the flow executor and the schedulers."""

    @abc.abstractmethod
    async def send_text(self, tenant_id: str, instance_id: str, chat_id: str, text: str) -> str:
        ...

    @abc.abstractmethod
    async def send_media_from_url(
        self, tenant_id: str, instance_id: str, chat_id: str, url: str, caption: str = "",
    ) -> str:
        ...
