"""
Service dependencies for FastAPI.

The long-lived services are built once in the application lifespan and
kept on app.state; routes reach them through these getters so tests can
override them.
"""
from fastapi import HTTPException, Request, status

from wahub.services.message_service import MessageDispatcher
from wahub.services.transport import TransportEventStream
from wahub.services.webhook_service import WebhookEngine


def get_webhook_engine(request: Request) -> WebhookEngine:
    return request.app.state.webhook_engine


def get_dispatcher(request: Request) -> MessageDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Messaging transport is not configured"
        )
    return dispatcher


def get_transport_events(request: Request) -> TransportEventStream:
    events = getattr(request.app.state, "transport_events", None)
    if events is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Messaging transport is not configured"
        )
    return events
