"""
Webhook API routes.

Subscription management, test sends and delivery logs per organisation.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from wahub.dependencies.auth import require_permission
from wahub.dependencies.services import get_webhook_engine
from wahub.errors import SubscriptionNotFound, ValidationError
from wahub.services.jwt_service import Principal
from wahub.services.webhook_service import WebhookEngine


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class CreateWebhookRequest(BaseModel):
    """Request model for registering a webhook."""
    url: str
    events: list[str]
    headers: dict[str, str] = Field(default_factory=dict)
    description: str | None = None


class UpdateWebhookRequest(BaseModel):
    url: str | None = None
    events: list[str] | None = None
    headers: dict[str, str] | None = None
    active: bool | None = None
    description: str | None = None


class WebhookResponse(BaseModel):
    id: str
    url: str
    events: list[str]
    headers: dict[str, str]
    active: bool
    description: str | None = None
    deactivated_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, subscription) -> "WebhookResponse":
        return cls(
            id=subscription.id,
            url=subscription.url,
            events=list(subscription.events or []),
            headers=dict(subscription.headers or {}),
            active=subscription.active,
            description=subscription.description,
            deactivated_reason=subscription.deactivated_reason,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )


class CreateWebhookResponse(BaseModel):
    """Registration response. The secret is shown here and never again."""
    id: str
    url: str
    events: list[str]
    secret: str
    created_at: datetime | None = None


class DeliveryLogResponse(BaseModel):
    id: str
    delivery_id: str
    event_type: str
    outcome: str
    status_code: int | None
    attempt_count: int
    error_message: str | None
    response_time_ms: int | None
    attempt_history: list[dict]
    created_at: datetime | None


class WebhookTestResponse(BaseModel):
    success: bool
    status_code: int | None
    response_time_ms: int | None
    error: str | None


def _not_found(e: SubscriptionNotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _bad_request(e: ValidationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("", response_model=CreateWebhookResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    request: CreateWebhookRequest,
    principal: Principal = Depends(require_permission("webhooks:write")),
    engine: WebhookEngine = Depends(get_webhook_engine),
):
    """
    Register a webhook for the organisation.

    The response carries the signing secret; store it, it is not shown again.
    """
    try:
        registered = await engine.register_subscription(
            principal.organisation_id,
            url=request.url,
            events=request.events,
            headers=request.headers,
            description=request.description,
        )
    except ValidationError as e:
        raise _bad_request(e)

    return CreateWebhookResponse(
        id=registered.id,
        url=registered.url,
        events=registered.events,
        secret=registered.secret,
        created_at=registered.created_at,
    )


@router.get("", response_model=list[WebhookResponse])
async def list_webhooks(
    principal: Principal = Depends(require_permission("webhooks:read")),
    engine: WebhookEngine = Depends(get_webhook_engine),
):
    """List the organisation's webhooks."""
    subscriptions = await engine.list_subscriptions(principal.organisation_id)
    return [WebhookResponse.from_model(subscription) for subscription in subscriptions]


@router.patch("/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(
    webhook_id: str,
    request: UpdateWebhookRequest,
    principal: Principal = Depends(require_permission("webhooks:write")),
    engine: WebhookEngine = Depends(get_webhook_engine),
):
    try:
        subscription = await engine.update_subscription(
            principal.organisation_id,
            webhook_id,
            **request.model_dump(exclude_unset=True),
        )
    except SubscriptionNotFound as e:
        raise _not_found(e)
    except ValidationError as e:
        raise _bad_request(e)
    return WebhookResponse.from_model(subscription)


@router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook(
    webhook_id: str,
    principal: Principal = Depends(require_permission("webhooks:write")),
    engine: WebhookEngine = Depends(get_webhook_engine),
):
    try:
        await engine.delete_subscription(principal.organisation_id, webhook_id)
    except SubscriptionNotFound as e:
        raise _not_found(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{webhook_id}/test", response_model=WebhookTestResponse)
async def test_webhook(
    webhook_id: str,
    principal: Principal = Depends(require_permission("webhooks:write")),
    engine: WebhookEngine = Depends(get_webhook_engine),
):
    """Send one synthetic test event and report what the endpoint answered."""
    try:
        result = await engine.test_webhook(webhook_id, principal.organisation_id)
    except SubscriptionNotFound as e:
        raise _not_found(e)
    return WebhookTestResponse(
        success=result.success,
        status_code=result.status_code,
        response_time_ms=result.response_time_ms,
        error=result.error,
    )


@router.get("/{webhook_id}/logs", response_model=list[DeliveryLogResponse])
async def get_webhook_logs(
    webhook_id: str,
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(require_permission("webhooks:read")),
    engine: WebhookEngine = Depends(get_webhook_engine),
):
    """Terminal delivery log entries, newest first."""
    try:
        logs = await engine.get_delivery_logs(principal.organisation_id, webhook_id, limit=limit)
    except SubscriptionNotFound as e:
        raise _not_found(e)
    return [
        DeliveryLogResponse(
            id=log.id,
            delivery_id=log.delivery_id,
            event_type=log.event_type,
            outcome=log.outcome.value,
            status_code=log.status_code,
            attempt_count=log.attempt_count,
            error_message=log.error_message,
            response_time_ms=log.response_time_ms,
            attempt_history=list(log.attempt_history or []),
            created_at=log.created_at,
        )
        for log in logs
    ]
