"""
Messaging transport boundary.

The WhatsApp automation library runs as a separate process. Outbound sends
go through a Transport; inbound traffic and connection changes arrive as
plain event objects on a TransportEventStream.
"""
import asyncio
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Protocol, Union

import httpx
import structlog

from wahub.config import settings
from wahub.errors import TransportError

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeliveryReceipt:
    message_id: str
    client_id: str
    recipient: str
    sent_at: datetime = field(default_factory=_utcnow)


class ConnectionState(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    AUTH_FAILURE = "auth_failure"


class AckStatus(str, enum.Enum):
    DELIVERED = "delivered"
    READ = "read"


@dataclass(frozen=True)
class InboundMessage:
    organisation_id: str
    client_id: str
    sender: str
    body: str
    message_id: str
    received_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class MessageAck:
    """Delivery/read receipt for a message this client sent."""
    organisation_id: str
    client_id: str
    message_id: str
    status: AckStatus


@dataclass(frozen=True)
class ConnectionStateChanged:
    organisation_id: str
    client_id: str
    state: ConnectionState
    reason: str | None = None


TransportEvent = Union[InboundMessage, MessageAck, ConnectionStateChanged]


class Transport(Protocol):
    async def send(self, client_id: str, recipient: str, content: str) -> DeliveryReceipt:
        """Send a message; raise TransportError on failure."""
        ...


class HttpTransport:
    """
    Transport backed by the automation process's HTTP bridge.

    POST {base_url}/clients/{client_id}/messages
         {"recipient": ..., "content": ...} -> {"message_id": ...}
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        timeout = timeout_seconds if timeout_seconds is not None else settings.TRANSPORT_TIMEOUT_SECONDS
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def send(self, client_id: str, recipient: str, content: str) -> DeliveryReceipt:
        url = f"{self._base_url}/clients/{client_id}/messages"
        try:
            response = await self._client.post(
                url,
                json={"recipient": recipient, "content": content},
            )
        except httpx.TimeoutException as e:
            raise TransportError("Transport timed out") from e
        except httpx.RequestError as e:
            raise TransportError(f"Transport unreachable: {e}") from e

        if response.status_code >= 400:
            raise TransportError(
                f"Transport rejected message: HTTP {response.status_code}",
                retryable=response.status_code >= 500,
            )

        try:
            message_id = response.json()["message_id"]
        except (ValueError, KeyError, TypeError) as e:
            raise TransportError("Transport returned a malformed receipt", retryable=False) from e

        return DeliveryReceipt(message_id=str(message_id), client_id=client_id, recipient=recipient)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class TransportEventStream:
    """
    Inbound event channel between the transport process and the core.

    The transport side publishes; the core iterates with `async for`.
    close() ends iteration once already-queued events are consumed.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def publish(self, event: TransportEvent) -> None:
        if self._closed:
            raise RuntimeError("Event stream is closed")
        await self._queue.put(event)

    def publish_nowait(self, event: TransportEvent) -> None:
        if self._closed:
            raise RuntimeError("Event stream is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> AsyncIterator[TransportEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[TransportEvent]:
        while True:
            event = await self._queue.get()
            if event is self._CLOSED:
                return
            yield event
