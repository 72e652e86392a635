"""
Prometheus metrics for the course chat service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message operation outcome counter (operation, result)
- Store fallback counter (operation)

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

# Message operation outcome counter
# operation: create, update, delete, set_preference
# result: ok, validation_error, forbidden, not_found
message_operations_total = Counter(
    "message_operations_total",
    "Total message and preference operation outcomes",
    labelnames=["operation", "result"]
)

# Answers served from the fallback policy because the store was unreachable
store_fallbacks_total = Counter(
    "store_fallbacks_total",
    "Total responses substituted while the store was unavailable",
    labelnames=["operation"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template, e.g. /api/messages/{course_id}
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    http_requests_total.labels(
        method=method,
        path=path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=path
    ).observe(latency_seconds)


def record_message_operation(operation: str, result: str) -> None:
    """Record the outcome of a gateway write."""
    message_operations_total.labels(operation=operation, result=result).inc()


def record_store_fallback(operation: str) -> None:
    store_fallbacks_total.labels(operation=operation).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
