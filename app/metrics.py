"""
Prometheus metrics for the webhook API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook outcome counter (result)
- Per-item ingestion counter (kind, outcome)
- Realtime event counter and subscriber gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: processed, ignored, invalid_json, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

# kind: message, status, contact
# outcome: applied, skipped, unmatched
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook sub-events by kind and outcome",
    labelnames=["kind", "outcome"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

realtime_events_total = Counter(
    "realtime_events_total",
    "Realtime events published",
    labelnames=["event"]
)

realtime_subscribers = Gauge(
    "realtime_subscribers",
    "Currently connected realtime subscribers"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Conversation ids in /messages/{id} and /contacts/{id}/read are collapsed
    to keep label cardinality bounded.
    """
    normalized_path = normalize_path(path.split("?")[0])

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def normalize_path(path: str) -> str:
    parts = path.rstrip("/").split("/")
    for i, part in enumerate(parts[:-1]):
        if part in ("messages", "contacts") and parts[i + 1] != "read":
            parts[i + 1] = "{conversation_id}"
    return "/".join(parts) or "/"


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_webhook_event(kind: str, outcome: str) -> None:
    webhook_events_total.labels(kind=kind, outcome=outcome).inc()


def record_realtime_event(event: str) -> None:
    realtime_events_total.labels(event=event).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
