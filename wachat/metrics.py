"""
Prometheus metrics for the chat service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook ingestion outcome counter (outcome)
- Real-time event counter (event)
- Message status transition counter (status)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# outcome: created, skipped, errored, invalid_signature, validation_error
webhook_ingest_total = Counter(
    "webhook_ingest_total",
    "Webhook ingestion outcomes",
    labelnames=["outcome"]
)

realtime_events_total = Counter(
    "realtime_events_total",
    "Real-time events fanned out to connected clients",
    labelnames=["event"]
)

message_status_transitions_total = Counter(
    "message_status_transitions_total",
    "Applied message status transitions",
    labelnames=["status"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_ingest_outcome(outcome: str, count: int = 1) -> None:
    if count:
        webhook_ingest_total.labels(outcome=outcome).inc(count)


def record_realtime_event(event: str) -> None:
    realtime_events_total.labels(event=event).inc()


def record_status_transition(status: str, count: int = 1) -> None:
    if count:
        message_status_transitions_total.labels(status=status).inc(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
