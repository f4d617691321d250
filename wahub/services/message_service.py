"""
Message Service

Outbound: admission gate -> human-like delay -> transport -> lifecycle webhook.
Inbound: transport events -> lifecycle webhooks and suspicion resets.
"""
import asyncio
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from wahub.errors import TransportError, ValidationError
from wahub.models.ban_alert import AlertType
from wahub.models.webhook import WebhookEvent
from wahub.repositories.ban_alerts import BanAlertRepository
from wahub.repositories.organisations import OrganisationRepository
from wahub.routes.metrics import track_message
from wahub.sentry_config import capture_exception
from wahub.services.admission_gate import (
    AdmissionGate,
    AdmissionResult,
    AlertSink,
    RateLimits,
    SendOutcome,
)
from wahub.services.transport import (
    AckStatus,
    ConnectionState,
    ConnectionStateChanged,
    DeliveryReceipt,
    InboundMessage,
    MessageAck,
    Transport,
    TransportEvent,
    TransportEventStream,
)
from wahub.services.webhook_service import WebhookEngine

logger = structlog.get_logger()

KEY_SEPARATOR = ":"


def client_key(organisation_id: str, client_id: str) -> str:
    """Gate key of a tenant-client: "{organisation_id}:{client_id}"."""
    if not organisation_id or not client_id:
        raise ValidationError("organisation_id and client_id are required")
    if KEY_SEPARATOR in organisation_id:
        raise ValidationError("organisation_id cannot contain ':'")
    return f"{organisation_id}{KEY_SEPARATOR}{client_id}"


def split_client_key(key: str) -> tuple[str | None, str]:
    """Inverse of client_key; bare client ids map to (None, key)."""
    organisation_id, sep, client_id = key.partition(KEY_SEPARATOR)
    if not sep:
        return None, key
    return organisation_id, client_id


def ban_alert_sink(repository: BanAlertRepository) -> AlertSink:
    """AlertSink persisting gate alerts as BanAlert rows."""

    async def sink(key: str, alert_type: AlertType, details: dict) -> None:
        organisation_id, client_id = split_client_key(key)
        await repository.record(
            client_id=client_id,
            alert_type=alert_type,
            details=details,
            organisation_id=organisation_id,
        )

    return sink


@dataclass(frozen=True)
class SendResult:
    """
    Outcome of one outbound send.

    status is "sent", "failed" or "blocked"; blocked results carry the
    admission result with its reason and retry hint.
    """
    status: str
    admission: AdmissionResult
    message_id: str
    receipt: DeliveryReceipt | None = None
    error: str | None = None

    @property
    def sent(self) -> bool:
        return self.status == "sent"


_ACK_EVENTS = {
    AckStatus.DELIVERED: WebhookEvent.MESSAGE_DELIVERED,
    AckStatus.READ: WebhookEvent.MESSAGE_READ,
}


class MessageDispatcher:
    """Wires the admission gate, the transport and the webhook engine together."""

    def __init__(
        self,
        gate: AdmissionGate,
        engine: WebhookEngine,
        transport: Transport,
        alerts: BanAlertRepository | None = None,
        organisations: OrganisationRepository | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gate = gate
        self.engine = engine
        self.transport = transport
        self.alerts = alerts
        self.organisations = organisations
        self._sleep = sleep

    async def send_message(
        self,
        organisation_id: str,
        client_id: str,
        recipient: str,
        content: str,
    ) -> SendResult:
        key = client_key(organisation_id, client_id)
        if not recipient:
            raise ValidationError("recipient is required")

        if self.gate.snapshot(key) is None:
            # first send from this client since startup
            await self._apply_organisation_limits(organisation_id, key)

        message_id = str(uuid.uuid4())
        admission = await self.gate.try_admit(key, content)
        if not admission.allowed:
            track_message(organisation_id, "blocked")
            return SendResult(status="blocked", admission=admission, message_id=message_id)

        await self._sleep(admission.delay_ms / 1000)

        try:
            receipt = await self.transport.send(client_id, recipient, content)
        except TransportError as e:
            await self.gate.record_outcome(key, SendOutcome.FAILURE)
            logger.warning(
                "message_send_failed",
                org_id=organisation_id,
                client_id=client_id,
                message_id=message_id,
                error=str(e),
            )
            track_message(organisation_id, "failed")
            await self._emit(organisation_id, WebhookEvent.MESSAGE_FAILED, {
                "message_id": message_id,
                "client_id": client_id,
                "recipient": recipient,
                "error": str(e),
            })
            return SendResult(status="failed", admission=admission, message_id=message_id, error=str(e))

        await self.gate.record_outcome(key, SendOutcome.SUCCESS)
        logger.info(
            "message_sent",
            org_id=organisation_id,
            client_id=client_id,
            message_id=receipt.message_id,
            delay_ms=admission.delay_ms,
        )
        track_message(organisation_id, "sent")
        await self._emit(organisation_id, WebhookEvent.MESSAGE_SENT, {
            "message_id": receipt.message_id,
            "client_id": client_id,
            "recipient": recipient,
            "content": content,
            "sent_at": receipt.sent_at.isoformat(),
        })
        return SendResult(
            status="sent",
            admission=admission,
            message_id=receipt.message_id,
            receipt=receipt,
        )

    async def consume(self, stream: TransportEventStream) -> None:
        """Handle inbound transport events until the stream closes."""
        async for event in stream:
            try:
                await self.handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("transport_event_failed", event=type(event).__name__, error=str(e))
                capture_exception()

    async def handle_event(self, event: TransportEvent) -> None:
        if isinstance(event, InboundMessage):
            await self._emit(event.organisation_id, WebhookEvent.MESSAGE_RECEIVED, {
                "message_id": event.message_id,
                "client_id": event.client_id,
                "from": event.sender,
                "body": event.body,
                "received_at": event.received_at.isoformat(),
            })
        elif isinstance(event, MessageAck):
            await self._emit(event.organisation_id, _ACK_EVENTS[event.status], {
                "message_id": event.message_id,
                "client_id": event.client_id,
                "status": event.status.value,
            })
        elif isinstance(event, ConnectionStateChanged):
            await self._handle_connection(event)
        else:
            raise TypeError(f"Unsupported transport event: {type(event).__name__}")

    async def _handle_connection(self, event: ConnectionStateChanged) -> None:
        key = client_key(event.organisation_id, event.client_id)
        logger.info(
            "client_connection_changed",
            org_id=event.organisation_id,
            client_id=event.client_id,
            state=event.state.value,
        )

        if event.state is ConnectionState.CONNECTED:
            await self._apply_organisation_limits(event.organisation_id, key)
            await self.gate.reset_suspicion(key)
            await self._emit(event.organisation_id, WebhookEvent.CLIENT_CONNECTED, {
                "client_id": event.client_id,
            })
        elif event.state is ConnectionState.DISCONNECTED:
            await self._emit(event.organisation_id, WebhookEvent.CLIENT_DISCONNECTED, {
                "client_id": event.client_id,
                "reason": event.reason,
            })
        elif event.state is ConnectionState.AUTH_FAILURE:
            logger.warning(
                "client_auth_failure",
                org_id=event.organisation_id,
                client_id=event.client_id,
                reason=event.reason,
            )
            if self.alerts is not None:
                await self.alerts.record(
                    client_id=event.client_id,
                    alert_type=AlertType.AUTH_FAILURE,
                    details={"reason": event.reason},
                    organisation_id=event.organisation_id,
                )

    async def _apply_organisation_limits(self, organisation_id: str, key: str) -> None:
        """Load the organisation's ceiling overrides into the gate for this client."""
        if self.organisations is None:
            return
        organisation = await self.organisations.get(organisation_id)
        if organisation is None:
            logger.warning("client_organisation_unknown", org_id=organisation_id)
            return
        self.gate.configure_client(key, RateLimits.for_organisation(organisation))

    async def _emit(self, organisation_id: str, event: WebhookEvent, data: dict) -> None:
        """Trigger a lifecycle webhook; a webhook problem never fails the send."""
        try:
            await self.engine.trigger_event(organisation_id, event.value, data)
        except Exception as e:
            logger.error(
                "webhook_trigger_failed",
                org_id=organisation_id,
                event_type=event.value,
                error=str(e),
            )
            capture_exception()
