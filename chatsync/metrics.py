"""
Prometheus metrics for the chat sync API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message creation outcome counter (result)
- Seen transition counter
- Conversation resolution outcome counter (result)
- Realtime subscriber gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: created, duplicate, rejected
messages_created_total = Counter(
    "messages_created_total",
    "Total message send outcomes",
    labelnames=["result"]
)

messages_seen_total = Counter(
    "messages_seen_total",
    "Total messages transitioned to seen"
)

# result: created, existing, race
conversations_resolved_total = Counter(
    "conversations_resolved_total",
    "Total conversation get-or-create outcomes",
    labelnames=["result"]
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

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template when known (keeps label cardinality bounded)
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
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


def record_message_outcome(result: str) -> None:
    """
    Record a message send outcome.

    Args:
        result: "created", "duplicate" (clientRef replay) or "rejected"
    """
    messages_created_total.labels(result=result).inc()


def record_messages_seen(count: int) -> None:
    """Record how many messages a mark-seen call transitioned."""
    if count > 0:
        messages_seen_total.inc(count)


def record_conversation_outcome(result: str) -> None:
    """
    Record a conversation get-or-create outcome.

    Args:
        result: "created", "existing" or "race" (uniqueness conflict absorbed)
    """
    conversations_resolved_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
