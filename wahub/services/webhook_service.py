"""
Webhook Service

Fans domain events out to subscriber URLs with HMAC signing, bounded
exponential-backoff retry and a terminal delivery log.

Delivery state machine, one DeliveryAttempt per (subscription, event):

    PENDING -> DELIVERING -> DELIVERED
                   |  ^
                   v  |  (backoff timer on the scheduler)
                RETRYING
                   |
                   v
                 FAILED

Only terminal states are persisted. A retry is a scheduled job on the
delivery queue, never a sleeping worker. Attempts the queue drops on
shutdown end FAILED with the error "shutdown".
"""
import enum
import ipaddress
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog

from wahub.config import settings
from wahub.errors import SigningError, SubscriptionNotFound, ValidationError
from wahub.models.webhook import (
    EVENT_TYPES,
    DeliveryOutcome,
    SubscriptionTarget,
    WebhookDeliveryLog,
    WebhookSubscription,
)
from wahub.repositories.webhooks import WebhookRepository
from wahub.routes.metrics import (
    observe_webhook_request,
    track_subscription_deactivated,
    track_webhook_delivery,
    track_webhook_retry,
)
from wahub.sentry_config import capture_exception
from wahub.services.delivery_queue import Scheduler
from wahub.services.webhook_signing import build_envelope, canonical_json, compute_signature

logger = structlog.get_logger()


SUCCESS_STATUSES = frozenset({200, 204})
# 4xx statuses that stay retryable when client errors are not retried
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"

RESERVED_HEADERS = frozenset(
    name.lower()
    for name in (
        "Content-Type",
        "Content-Length",
        "Host",
        SIGNATURE_HEADER,
        EVENT_HEADER,
        TIMESTAMP_HEADER,
        DELIVERY_ID_HEADER,
    )
)

TEST_EVENT = "test"
DEACTIVATION_REASON = "excessive_failures"
SHUTDOWN_ERROR = "shutdown"


class DeliveryState(str, enum.Enum):
    PENDING = "pending"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    RETRYING = "retrying"
    FAILED = "failed"


@dataclass(frozen=True)
class AttemptRecord:
    """What happened on one HTTP attempt."""
    attempt: int
    status_code: int | None
    error: str | None
    response_time_ms: int | None

    def to_dict(self) -> dict:
        return {
            "attempt": self.attempt,
            "status_code": self.status_code,
            "error": self.error,
            "response_time_ms": self.response_time_ms,
        }


@dataclass
class DeliveryAttempt:
    """
    In-memory work item for one subscription and one triggered event.

    attempt is 0-based; the body is serialized once at trigger time so every
    retry posts (and signs) identical bytes.
    """
    target: SubscriptionTarget
    event_type: str
    envelope: dict
    body: bytes
    max_attempts: int
    delivery_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempt: int = 0
    state: DeliveryState = DeliveryState.PENDING
    signature: str | None = None
    history: list[AttemptRecord] = field(default_factory=list)

    @property
    def attempt_count(self) -> int:
        return len(self.history)


@dataclass(frozen=True)
class WebhookTestResult:
    success: bool
    status_code: int | None = None
    response_time_ms: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class RegisteredSubscription:
    """Registration result. The only place the secret is ever handed out."""
    id: str
    organisation_id: str
    url: str
    events: list[str]
    secret: str
    created_at: datetime | None = None

    def __repr__(self):
        return f"RegisteredSubscription(id={self.id!r}, url={self.url!r}, events={self.events!r})"


def validate_url(url: str, production: bool = False) -> str:
    """
    Check a subscriber URL.

    http and https are accepted; production accepts https only and rejects
    loopback hosts.
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("Webhook URL is required")
    url = url.strip()
    parsed = urlparse(url)
    allowed = ("https",) if production else ("http", "https")
    if parsed.scheme not in allowed:
        raise ValidationError(f"Webhook URL must use {' or '.join(allowed)}")
    if not parsed.hostname:
        raise ValidationError("Webhook URL must include a host")
    if production and _is_loopback(parsed.hostname):
        raise ValidationError("Webhook URL cannot point to localhost in production")
    return url


def _is_loopback(hostname: str) -> bool:
    if hostname == "localhost" or hostname.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(hostname).is_loopback
    except ValueError:
        return False


def validate_events(events) -> list[str]:
    """Non-empty list of known event names, deduplicated in order."""
    if isinstance(events, str) or not events:
        raise ValidationError("At least one event is required")
    unknown = [event for event in events if event not in EVENT_TYPES]
    if unknown:
        raise ValidationError(f"Unknown events: {', '.join(map(str, unknown))}")
    return list(dict.fromkeys(str(event) for event in events))


def validate_headers(headers: dict | None) -> dict:
    if not headers:
        return {}
    clean = {}
    for name, value in headers.items():
        if not isinstance(name, str) or not isinstance(value, str):
            raise ValidationError("Custom headers must be string pairs")
        if name.lower() in RESERVED_HEADERS:
            raise ValidationError(f"Header {name} is reserved")
        clean[name] = value
    return clean


class WebhookEngine:
    """
    Subscription management plus asynchronous signed delivery.

    Example:
        queue = DelayQueue(workers=10)
        await queue.start()
        engine = WebhookEngine(WebhookRepository(), queue)
        await engine.trigger_event(org_id, "message.sent", {"message_id": "..."})
    """

    def __init__(
        self,
        repository: WebhookRepository,
        scheduler: Scheduler,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        retry_client_errors: bool | None = None,
        failure_threshold: int | None = None,
        failure_window_hours: int | None = None,
        production: bool | None = None,
    ):
        self._repository = repository
        self._scheduler = scheduler
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.WEBHOOK_TIMEOUT_SECONDS
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self._timeout)
        self.max_attempts = max_attempts if max_attempts is not None else settings.WEBHOOK_MAX_ATTEMPTS
        self.backoff_base_seconds = (
            backoff_base_seconds if backoff_base_seconds is not None
            else settings.WEBHOOK_BACKOFF_BASE_SECONDS
        )
        self.retry_client_errors = (
            retry_client_errors if retry_client_errors is not None
            else settings.WEBHOOK_RETRY_CLIENT_ERRORS
        )
        self.failure_threshold = (
            failure_threshold if failure_threshold is not None
            else settings.WEBHOOK_FAILURE_THRESHOLD
        )
        self.failure_window = timedelta(
            hours=failure_window_hours if failure_window_hours is not None
            else settings.WEBHOOK_FAILURE_WINDOW_HOURS
        )
        self.production = production if production is not None else settings.is_production
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    # ================================================
    # SUBSCRIPTIONS
    # ================================================

    async def register_subscription(
        self,
        organisation_id: str,
        url: str,
        events: list[str],
        headers: dict | None = None,
        description: str | None = None,
    ) -> RegisteredSubscription:
        url = validate_url(url, self.production)
        events = validate_events(events)
        headers = validate_headers(headers)
        secret = secrets.token_hex(32)

        subscription = await self._repository.add_subscription(
            WebhookSubscription(
                organisation_id=organisation_id,
                url=url,
                events=events,
                headers=headers,
                secret=secret,
                description=description,
                active=True,
            )
        )
        logger.info(
            "webhook_registered",
            org_id=organisation_id,
            subscription_id=subscription.id,
            url=url,
            events=events,
        )
        return RegisteredSubscription(
            id=subscription.id,
            organisation_id=organisation_id,
            url=url,
            events=events,
            secret=secret,
            created_at=subscription.created_at,
        )

    async def list_subscriptions(self, organisation_id: str) -> list[WebhookSubscription]:
        return await self._repository.list_subscriptions(organisation_id)

    async def get_subscription(self, organisation_id: str, subscription_id: str) -> WebhookSubscription:
        subscription = await self._repository.get_subscription(subscription_id, organisation_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        return subscription

    async def update_subscription(
        self,
        organisation_id: str,
        subscription_id: str,
        url: str | None = None,
        events: list[str] | None = None,
        headers: dict | None = None,
        active: bool | None = None,
        description: str | None = None,
    ) -> WebhookSubscription:
        """Change url, events, headers or active flag. The secret never changes."""
        changes: dict[str, Any] = {}
        if url is not None:
            changes["url"] = validate_url(url, self.production)
        if events is not None:
            changes["events"] = validate_events(events)
        if headers is not None:
            changes["headers"] = validate_headers(headers)
        if description is not None:
            changes["description"] = description
        if active is not None:
            changes["active"] = active
            if active:
                changes["deactivated_reason"] = None

        subscription = await self._repository.update_subscription(
            organisation_id, subscription_id, **changes
        )
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        logger.info(
            "webhook_updated",
            org_id=organisation_id,
            subscription_id=subscription_id,
            fields=sorted(changes),
        )
        return subscription

    async def delete_subscription(self, organisation_id: str, subscription_id: str) -> None:
        deleted = await self._repository.delete_subscription(organisation_id, subscription_id)
        if not deleted:
            raise SubscriptionNotFound(subscription_id)
        logger.info("webhook_deleted", org_id=organisation_id, subscription_id=subscription_id)

    async def get_delivery_logs(
        self,
        organisation_id: str,
        subscription_id: str,
        limit: int = 100,
    ) -> list[WebhookDeliveryLog]:
        await self.get_subscription(organisation_id, subscription_id)
        return await self._repository.list_delivery_logs(
            organisation_id, subscription_id, limit=limit
        )

    # ================================================
    # DELIVERY
    # ================================================

    async def trigger_event(
        self,
        organisation_id: str,
        event_type: str,
        payload: Any,
        url_contains: str | None = None,
    ) -> int:
        """
        Fan an event out to every active subscription listening to it.

        url_contains narrows the fan-out to subscriptions whose URL contains
        that substring, e.g. to replay an event to a single integration.
        Returns the number of deliveries scheduled. Never waits on network
        I/O; delivery happens on the scheduler.
        """
        if event_type not in EVENT_TYPES:
            raise ValidationError(f"Unknown event: {event_type}")

        targets = await self._repository.find_subscribers(organisation_id, event_type)
        if url_contains:
            targets = [target for target in targets if url_contains in target.url]
        if not targets:
            logger.debug("webhook_no_subscribers", org_id=organisation_id, event_type=event_type)
            return 0

        envelope = build_envelope(event_type, payload)
        body = canonical_json(envelope)

        for target in targets:
            attempt = DeliveryAttempt(
                target=target,
                event_type=event_type,
                envelope=envelope,
                body=body,
                max_attempts=self.max_attempts,
            )
            self._scheduler.schedule(
                0, partial(self._process, attempt), on_drop=partial(self._abandon, attempt)
            )

        logger.info(
            "webhook_event_triggered",
            org_id=organisation_id,
            event_type=event_type,
            deliveries=len(targets),
            url_contains=url_contains,
        )
        return len(targets)

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed 0-based attempt: base * 2**attempt."""
        return self.backoff_base_seconds * (2 ** attempt)

    def _should_retry(self, status_code: int | None) -> bool:
        if status_code is None or status_code >= 500:
            return True
        if 400 <= status_code < 500 and not self.retry_client_errors:
            return status_code in RETRYABLE_CLIENT_STATUSES
        return True

    def _headers(self, attempt: DeliveryAttempt, signature: str) -> dict:
        headers = dict(attempt.target.headers)
        headers.update({
            "Content-Type": "application/json",
            SIGNATURE_HEADER: signature,
            EVENT_HEADER: attempt.event_type,
            TIMESTAMP_HEADER: str(int(time.time() * 1000)),
            DELIVERY_ID_HEADER: attempt.delivery_id,
        })
        return headers

    async def _post(self, url: str, body: bytes, headers: dict) -> tuple[int | None, str | None, int]:
        """One HTTP attempt: (status_code or None, error or None, elapsed ms)."""
        started = time.perf_counter()
        status_code = None
        error = None
        try:
            response = await self._client.post(
                url,
                content=body,
                headers=headers,
                timeout=self._timeout,
            )
            status_code = response.status_code
            if status_code not in SUCCESS_STATUSES:
                error = f"HTTP {status_code}"
        except httpx.TimeoutException:
            error = "Request timeout"
        except httpx.RequestError as e:
            error = str(e) or type(e).__name__
        elapsed = time.perf_counter() - started
        observe_webhook_request(elapsed)
        return status_code, error, int(elapsed * 1000)

    async def _process(self, attempt: DeliveryAttempt) -> None:
        """Run one Delivering step, then finish or reschedule."""
        target = attempt.target
        attempt.state = DeliveryState.DELIVERING

        try:
            attempt.signature = compute_signature(attempt.body, target.secret)
        except SigningError as e:
            attempt.history.append(AttemptRecord(attempt.attempt + 1, None, str(e), None))
            logger.error(
                "webhook_signing_failed",
                subscription_id=target.id,
                delivery_id=attempt.delivery_id,
                error=str(e),
            )
            await self._finish(attempt, DeliveryOutcome.FAILED)
            return

        status_code, error, elapsed_ms = await self._post(
            target.url, attempt.body, self._headers(attempt, attempt.signature)
        )
        attempt.history.append(AttemptRecord(attempt.attempt + 1, status_code, error, elapsed_ms))

        if status_code in SUCCESS_STATUSES:
            await self._finish(attempt, DeliveryOutcome.DELIVERED)
            return

        if attempt.attempt < attempt.max_attempts - 1 and self._should_retry(status_code):
            delay = self.backoff_delay(attempt.attempt)
            attempt.state = DeliveryState.RETRYING
            attempt.attempt += 1
            logger.info(
                "webhook_retry_scheduled",
                subscription_id=target.id,
                delivery_id=attempt.delivery_id,
                event_type=attempt.event_type,
                status_code=status_code,
                error=error,
                next_attempt=attempt.attempt + 1,
                delay_seconds=delay,
            )
            track_webhook_retry(target.organisation_id)
            self._scheduler.schedule(
                delay, partial(self._process, attempt), on_drop=partial(self._abandon, attempt)
            )
            return

        await self._finish(attempt, DeliveryOutcome.FAILED)

    async def _abandon(self, attempt: DeliveryAttempt) -> None:
        """Terminal FAILED entry for an attempt the queue dropped on shutdown."""
        await self._finish(attempt, DeliveryOutcome.FAILED, error=SHUTDOWN_ERROR)

    async def _finish(
        self,
        attempt: DeliveryAttempt,
        outcome: DeliveryOutcome,
        error: str | None = None,
    ) -> None:
        target = attempt.target
        last = attempt.history[-1] if attempt.history else AttemptRecord(0, None, None, None)
        error = error or last.error
        attempt.state = (
            DeliveryState.DELIVERED if outcome is DeliveryOutcome.DELIVERED
            else DeliveryState.FAILED
        )

        log_event = "webhook_delivered" if outcome is DeliveryOutcome.DELIVERED else "webhook_failed"
        log = logger.info if outcome is DeliveryOutcome.DELIVERED else logger.warning
        log(
            log_event,
            org_id=target.organisation_id,
            subscription_id=target.id,
            delivery_id=attempt.delivery_id,
            event_type=attempt.event_type,
            status_code=last.status_code,
            attempts=attempt.attempt_count,
            error=error,
        )
        track_webhook_delivery(target.organisation_id, outcome.value)

        entry = WebhookDeliveryLog(
            delivery_id=attempt.delivery_id,
            subscription_id=target.id,
            organisation_id=target.organisation_id,
            event_type=attempt.event_type,
            payload=attempt.envelope,
            outcome=outcome,
            status_code=last.status_code,
            attempt_count=attempt.attempt_count,
            error_message=error,
            signature=attempt.signature,
            response_time_ms=last.response_time_ms,
            attempt_history=[record.to_dict() for record in attempt.history],
        )
        try:
            await self._repository.record_delivery(entry)
        except Exception as e:
            logger.error(
                "webhook_log_write_failed",
                subscription_id=target.id,
                delivery_id=attempt.delivery_id,
                error=str(e),
            )
            capture_exception()

    async def test_webhook(self, subscription_id: str, organisation_id: str | None = None) -> WebhookTestResult:
        """Single synchronous attempt with a synthetic test event. No retry, no log."""
        subscription = await self._repository.get_subscription(subscription_id, organisation_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)

        envelope = build_envelope(
            TEST_EVENT,
            {"message": "This is a test webhook delivery", "subscription_id": subscription.id},
        )
        body = canonical_json(envelope)
        attempt = DeliveryAttempt(
            target=subscription.to_target(),
            event_type=TEST_EVENT,
            envelope=envelope,
            body=body,
            max_attempts=1,
        )
        try:
            signature = compute_signature(body, subscription.secret)
        except SigningError as e:
            return WebhookTestResult(success=False, error=str(e))

        status_code, error, elapsed_ms = await self._post(
            subscription.url, body, self._headers(attempt, signature)
        )
        success = status_code in SUCCESS_STATUSES
        logger.info(
            "webhook_test_sent",
            subscription_id=subscription.id,
            success=success,
            status_code=status_code,
            error=error,
        )
        return WebhookTestResult(
            success=success,
            status_code=status_code,
            response_time_ms=elapsed_ms,
            error=error,
        )

    # ================================================
    # MAINTENANCE
    # ================================================

    async def deactivate_failing_subscriptions(self, organisation_id: str | None = None) -> list[str]:
        """
        Disable active subscriptions with more than failure_threshold failed
        deliveries inside the failure window. Sweeps every organisation when
        organisation_id is None.
        """
        since = datetime.now(timezone.utc) - self.failure_window
        counts = await self._repository.failure_counts_since(since, organisation_id)
        failing = [count for count in counts if count.failures > self.failure_threshold]
        if not failing:
            return []

        await self._repository.deactivate(
            [count.subscription_id for count in failing],
            DEACTIVATION_REASON,
        )
        for count in failing:
            track_subscription_deactivated(count.organisation_id)
            logger.warning(
                "webhook_deactivated",
                org_id=count.organisation_id,
                subscription_id=count.subscription_id,
                failures=count.failures,
            )
        return [count.subscription_id for count in failing]

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
