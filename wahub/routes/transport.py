"""
Transport ingress routes.

The WhatsApp automation process reports inbound messages, delivery/read
acks and connection changes here. Events are queued on the transport event
stream and handled by the dispatcher in the background.
"""
from datetime import datetime
from typing import Annotated, Literal, Union

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from wahub.dependencies.auth import require_permission
from wahub.dependencies.services import get_transport_events
from wahub.services.jwt_service import Principal
from wahub.services.transport import (
    AckStatus,
    ConnectionState,
    ConnectionStateChanged,
    InboundMessage,
    MessageAck,
    TransportEvent,
    TransportEventStream,
)


router = APIRouter(prefix="/api/transport", tags=["transport"])


class InboundMessageIn(BaseModel):
    type: Literal["message"]
    client_id: str = Field(..., min_length=1)
    sender: str = Field(..., min_length=1)
    body: str
    message_id: str = Field(..., min_length=1)
    received_at: datetime | None = None

    def to_event(self, organisation_id: str) -> TransportEvent:
        extra = {"received_at": self.received_at} if self.received_at else {}
        return InboundMessage(
            organisation_id=organisation_id,
            client_id=self.client_id,
            sender=self.sender,
            body=self.body,
            message_id=self.message_id,
            **extra,
        )


class MessageAckIn(BaseModel):
    type: Literal["ack"]
    client_id: str = Field(..., min_length=1)
    message_id: str = Field(..., min_length=1)
    status: AckStatus

    def to_event(self, organisation_id: str) -> TransportEvent:
        return MessageAck(
            organisation_id=organisation_id,
            client_id=self.client_id,
            message_id=self.message_id,
            status=self.status,
        )


class ConnectionStateIn(BaseModel):
    type: Literal["connection"]
    client_id: str = Field(..., min_length=1)
    state: ConnectionState
    reason: str | None = None

    def to_event(self, organisation_id: str) -> TransportEvent:
        return ConnectionStateChanged(
            organisation_id=organisation_id,
            client_id=self.client_id,
            state=self.state,
            reason=self.reason,
        )


TransportEventIn = Annotated[
    Union[InboundMessageIn, MessageAckIn, ConnectionStateIn],
    Field(discriminator="type"),
]


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def publish_event(
    event: TransportEventIn,
    principal: Principal = Depends(require_permission("transport:publish")),
    stream: TransportEventStream = Depends(get_transport_events),
):
    """
    Queue one transport event for the caller's organisation.

    The organisation always comes from the token, never from the body.
    """
    try:
        await stream.publish(event.to_event(principal.organisation_id))
    except RuntimeError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Transport event stream is closed"
        )
    return {"accepted": True, "type": event.type}
