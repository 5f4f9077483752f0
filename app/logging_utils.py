import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from app.metrics import record_http_request


# Per-request context picked up by every log line
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
viewer_id_ctx: ContextVar[Optional[str]] = ContextVar("viewer_id", default=None)

# Probes and scrapes are logged at DEBUG only
QUIET_PATHS = ("/health/live", "/health/ready", "/metrics")


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


def bind_viewer(viewer_id: Optional[str], request: Optional[Request] = None) -> None:
    """
    Attach the authenticated user to the current context.

    Log lines emitted afterwards in the same task carry viewer_id; when the
    request is given, the request log line written by the middleware does too.
    """
    viewer_id_ctx.set(viewer_id)
    if request is not None:
        request.state.viewer_id = viewer_id


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 ts, level, request_id and viewer_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        for key, ctx in (('request_id', request_id_ctx), ('viewer_id', viewer_id_ctx)):
            if key not in log_record:
                value = ctx.get()
                if value:
                    log_record[key] = value


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    # Remove existing handlers
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    logger.addHandler(json_handler)

    # Route uvicorn's own loggers through the same handler
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Access lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per HTTP request.

    Log keys:
    - ts, level, request_id, method, path, route, status, latency_ms
    - viewer_id: authenticated user, when the route resolved one

    For chat actions, also includes (when attached via log_chat_data):
    - message_id: affected message
    - action: send, edit, delete, mark_read
    - result: ok or the error code

    WebSocket traffic does not pass through here; /ws logs its own
    connect/disconnect lines.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.perf_counter() - started
            path = request.url.path

            # Route templates keep message ids out of metric labels
            route_path = getattr(request.scope.get("route"), "path", path)

            if path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=route_path,
                    status=response.status_code,
                    latency_seconds=latency_seconds,
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "route": route_path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            viewer_id = getattr(request.state, "viewer_id", None)
            if viewer_id:
                log_data["viewer_id"] = viewer_id
            log_data.update(getattr(request.state, "chat_log_data", {}))

            logger = logging.getLogger("app.requests")
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            elif path in QUIET_PATHS:
                level = logging.DEBUG
            else:
                level = logging.INFO
            logger.log(level, "Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_chat_data(request: Request, action: str, result: str, message_id: str = None):
    """
    Attach chat-specific logging data to the request state.
    This data will be included in the request log by the middleware.

    Args:
        request: FastAPI request object
        action: send, edit, delete, mark_read
        result: ok or an error code
        message_id: Affected message, when known
    """
    chat_data = {"action": action, "result": result}

    if message_id is not None:
        chat_data["message_id"] = message_id

    request.state.chat_log_data = chat_data
