"""
Prometheus metrics endpoint.

Exposes system metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Admission Metrics
# ============================================

admissions_total = Counter(
    'admissions_total',
    'Admission decisions by outcome (allowed or block reason)',
    ['outcome']
)

suspicion_alerts_total = Counter(
    'suspicion_alerts_total',
    'Suspicion alerts raised by the admission gate',
    ['alert_type']
)

# ============================================
# Message Metrics
# ============================================

messages_total = Counter(
    'messages_total',
    'Outbound messages by result',
    ['org_id', 'result']
)

# ============================================
# Webhook Metrics
# ============================================

webhook_deliveries_total = Counter(
    'webhook_deliveries_total',
    'Webhook delivery sagas by terminal outcome',
    ['org_id', 'outcome']
)

webhook_retries_total = Counter(
    'webhook_retries_total',
    'Webhook retries scheduled',
    ['org_id']
)

webhook_request_duration = Histogram(
    'webhook_request_duration_seconds',
    'Duration of a single webhook HTTP attempt',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

webhook_subscriptions_deactivated = Counter(
    'webhook_subscriptions_deactivated_total',
    'Subscriptions deactivated by the failure sweep',
    ['org_id']
)

webhook_queue_depth = Gauge(
    'webhook_queue_pending_count',
    'Delivery attempts waiting in the delivery queue'
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_admission(outcome: str):
    """Record an admission decision ("allowed" or a block reason)."""
    admissions_total.labels(outcome=outcome).inc()


def track_suspicion_alert(alert_type: str):
    """Record a suspicion alert."""
    suspicion_alerts_total.labels(alert_type=alert_type).inc()


def track_message(org_id: str, result: str):
    """Record an outbound message result (sent, failed, blocked)."""
    messages_total.labels(org_id=org_id, result=result).inc()


def track_webhook_delivery(org_id: str, outcome: str):
    """Record a delivery saga reaching a terminal state."""
    webhook_deliveries_total.labels(org_id=org_id, outcome=outcome).inc()


def track_webhook_retry(org_id: str):
    """Record a retry being scheduled."""
    webhook_retries_total.labels(org_id=org_id).inc()


def observe_webhook_request(duration_seconds: float):
    """Record the duration of one webhook HTTP attempt."""
    webhook_request_duration.observe(duration_seconds)


def track_subscription_deactivated(org_id: str):
    """Record a subscription disabled by the failure sweep."""
    webhook_subscriptions_deactivated.labels(org_id=org_id).inc()


def update_webhook_queue_depth(depth: int):
    """Update pending delivery count."""
    webhook_queue_depth.set(depth)


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
