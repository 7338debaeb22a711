"""
Prometheus metrics for the messaging service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Outcome counters for each messaging component

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


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

# result: queued, client_error, rate_limited, server_error
messages_routed_total = Counter(
    "messages_routed_total",
    "Send requests handled by the intake router",
    labelnames=["result"]
)

# result: created, duplicate, dropped, error
status_callbacks_total = Counter(
    "status_callbacks_total",
    "Delivery status callbacks processed",
    labelnames=["result"]
)

# result: stored, unresolved, error
inbound_messages_total = Counter(
    "inbound_messages_total",
    "Inbound provider messages processed",
    labelnames=["result"]
)

reminders_sent_total = Counter(
    "reminders_sent_total",
    "Reminder send attempts",
    labelnames=["tier", "result"]
)

sms_fallbacks_total = Counter(
    "sms_fallbacks_total",
    "WhatsApp to SMS fallback attempts",
    labelnames=["result"]
)

dead_letters_total = Counter(
    "dead_letters_total",
    "Failed send requests copied to the dead-letter queue",
    labelnames=["result"]
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


def record_outcome(counter: Counter, result: str, **labels: str) -> None:
    counter.labels(result=result, **labels).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
