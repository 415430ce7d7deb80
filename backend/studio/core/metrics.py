"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Booking metrics
booking_attempts = Counter(
    'studio_booking_attempts_total',
    'Total booking attempts',
    ['status']  # success or the rejection code
)

booking_latency = Histogram(
    'studio_booking_latency_seconds',
    'Booking transaction latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

cancellations = Counter(
    'studio_cancellations_total',
    'Booking cancellations',
    ['outcome']  # refunded, already_canceled, window_closed
)

# Ledger metrics
ledger_entries = Counter(
    'studio_ledger_entries_total',
    'Ledger rows appended',
    ['reason']
)

# Payment reconciliation metrics
webhook_notifications = Counter(
    'studio_webhook_notifications_total',
    'Payment provider notifications by processing outcome',
    ['outcome']
)

# Database metrics
transaction_retries = Counter(
    'studio_transaction_retries_total',
    'Transactions retried after a constraint or serialization conflict',
    ['operation']
)

# Cache metrics
cache_operations = Counter(
    'studio_cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # get/set, hit/miss
)


def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_booking_attempt(status: str):
    """Record booking attempt. Status: success or an error code"""
    booking_attempts.labels(status=status).inc()


def record_cancellation(outcome: str):
    cancellations.labels(outcome=outcome).inc()


def record_ledger_entry(reason: str):
    ledger_entries.labels(reason=reason).inc()


def record_webhook(outcome: str):
    webhook_notifications.labels(outcome=outcome).inc()


def record_retry(operation: str):
    transaction_retries.labels(operation=operation).inc()


def record_cache_operation(operation: str, hit: bool):
    """Record cache operation."""
    result = "hit" if hit else "miss"
    cache_operations.labels(operation=operation, result=result).inc()
