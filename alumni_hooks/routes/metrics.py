"""
Prometheus metrics endpoint.

Exposes request and webhook delivery metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

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
# Webhook Metrics
# ============================================

webhook_deliveries_dispatched = Counter(
    'webhook_deliveries_dispatched_total',
    'Total deliveries created by event dispatch',
    ['tenant_id', 'event_type']
)

webhook_attempts = Counter(
    'webhook_delivery_attempts_total',
    'Total outbound delivery attempts',
    ['tenant_id', 'result']
)

webhook_retries_scheduled = Counter(
    'webhook_retries_scheduled_total',
    'Total delivery retries scheduled',
    ['tenant_id']
)

webhook_deliveries_dead = Counter(
    'webhook_deliveries_dead_total',
    'Total deliveries that ended dead',
    ['tenant_id']
)

webhook_attempt_duration = Histogram(
    'webhook_delivery_attempt_duration_seconds',
    'Outbound delivery attempt duration in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
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


def track_delivery_dispatched(tenant_id: str, event_type: str):
    """Record a delivery created for an event."""
    webhook_deliveries_dispatched.labels(tenant_id=tenant_id, event_type=event_type).inc()


def track_delivery_attempt(tenant_id: str, result: str, duration_seconds: float):
    """Record one outbound attempt ("success" or "failed")."""
    webhook_attempts.labels(tenant_id=tenant_id, result=result).inc()
    webhook_attempt_duration.observe(duration_seconds)


def track_retry_scheduled(tenant_id: str):
    """Record a retry being scheduled."""
    webhook_retries_scheduled.labels(tenant_id=tenant_id).inc()


def track_delivery_dead(tenant_id: str):
    """Record a delivery giving up."""
    webhook_deliveries_dead.labels(tenant_id=tenant_id).inc()


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
