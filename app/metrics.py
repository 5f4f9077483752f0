"""
Prometheus metrics for the chat service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Chat action outcome counter (action, result)
- Push notification delivery counter (result)
- Realtime change feed counters and live subscription gauge

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

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# action: send, edit, delete, mark_read
# result: ok, validation_error, unauthenticated, forbidden, not_found, conflict, backend
chat_actions_total = Counter(
    "chat_actions_total",
    "Chat action outcomes",
    labelnames=["action", "result"]
)

# result: sent, failed, expired, skipped
push_notifications_total = Counter(
    "push_notifications_total",
    "Push notification delivery outcomes",
    labelnames=["result"]
)

realtime_events_total = Counter(
    "realtime_events_total",
    "Change events published on the realtime feed",
    labelnames=["table", "event"]
)

realtime_callback_errors_total = Counter(
    "realtime_callback_errors_total",
    "Subscriber callbacks that raised while handling a change event"
)

realtime_subscriptions = Gauge(
    "realtime_subscriptions",
    "Currently active realtime subscriptions"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template when known (e.g. /api/messages/{message_id}),
            otherwise the raw request path
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


def record_chat_action(action: str, result: str) -> None:
    chat_actions_total.labels(action=action, result=result).inc()


def record_push_outcome(result: str, amount: int = 1) -> None:
    if amount:
        push_notifications_total.labels(result=result).inc(amount)


def record_realtime_event(table: str, event: str) -> None:
    realtime_events_total.labels(table=table, event=event).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
