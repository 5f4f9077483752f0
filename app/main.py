import asyncio
import contextlib
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from app import chat, push, reports
from app.config import settings
from app.conversations import involves
from app.logging_utils import setup_logging, RequestLoggingMiddleware, bind_viewer, log_chat_data
from app.metrics import get_metrics, get_metrics_content_type
from app.realtime import ALL, MESSAGES, TYPING, TypingChannel, change_feed
from app.storage import init_db, check_db_health, get_db
from app.utils import verify_session_token
from app.schemas import (
    ConversationsListResponse,
    EditMessageRequest,
    EditMessageResponse,
    ErrorResponse,
    HealthResponse,
    MarkReadRequest,
    MarkReadResponse,
    MessageEnvelope,
    MessagesListResponse,
    PushStatusResponse,
    PushSubscribeRequest,
    PushUnsubscribeRequest,
    ReportEnvelope,
    ReportRequest,
    ReportsListResponse,
    ReportStatusRequest,
    SendMessageRequest,
    SuccessResponse,
    TypingRequest,
    TypingResponse,
    UnreadCountResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

typing_channel = TypingChannel(change_feed, ttl_seconds=settings.TYPING_TTL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, start expiring typing indicators
    - Shutdown: stop the typing sweeper
    """
    init_db()
    sweeper = asyncio.create_task(typing_channel.sweep())
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper


app = FastAPI(
    title="Campus Marketplace Chat API",
    description="Buyer/seller chat, read state, realtime updates and push notifications",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Error Handling
# =============================================================================

ERROR_STATUS = {
    chat.VALIDATION: status.HTTP_400_BAD_REQUEST,
    chat.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    chat.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    chat.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    chat.CONFLICT: status.HTTP_409_CONFLICT,
    chat.BACKEND: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def raise_for_error(result: dict) -> None:
    """Turn an action's error result into an HTTPException."""
    if "error" in result:
        raise HTTPException(
            status_code=ERROR_STATUS.get(result.get("code"), status.HTTP_500_INTERNAL_SERVER_ERROR),
            detail=result["error"],
        )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    logger.info(f"Request validation failed: {problems}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "; ".join(problems) or "Invalid request"},
    )


@app.exception_handler(Exception)
async def unexpected_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


# =============================================================================
# Authentication
# =============================================================================

async def get_viewer_id(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> Optional[str]:
    """Viewer id from ``Authorization: Bearer <token>``, or None."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    viewer_id = verify_session_token(token.strip(), settings.SESSION_SECRET)
    bind_viewer(viewer_id, request)
    return viewer_id


def require_viewer(viewer_id: Annotated[Optional[str], Depends(get_viewer_id)]) -> str:
    if not viewer_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return viewer_id


def require_admin(viewer_id: Annotated[str, Depends(require_viewer)]) -> str:
    if not reports.is_admin(viewer_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return viewer_id


Viewer = Annotated[str, Depends(require_viewer)]
DB = Annotated[Session, Depends(get_db)]

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error"},
    401: {"model": ErrorResponse, "description": "Not authenticated"},
}


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if SESSION_SECRET is set and the
    database is reachable with its schema applied; 503 otherwise.
    """
    if not settings.SESSION_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="SESSION_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/api/conversations", response_model=ConversationsListResponse, responses=ERROR_RESPONSES)
async def list_conversations(viewer_id: Viewer, db: DB) -> ConversationsListResponse:
    """
    All conversations of the viewer, most recent first.

    A load failure still answers 200 with an empty list and ``error`` set, so
    the page can show an inline banner.
    """
    result = chat.get_all_conversations(db, viewer_id)
    if "error" in result:
        logger.error(f"GET /api/conversations failed: {result['error']}")
    return ConversationsListResponse(conversations=result["conversations"], error=result.get("error"))


# =============================================================================
# Message Routes
# =============================================================================

@app.get("/api/messages", response_model=MessagesListResponse, responses=ERROR_RESPONSES)
async def list_messages(
    viewer_id: Viewer,
    db: DB,
    listing_id: Annotated[str, Query(min_length=1, description="Listing of the conversation")],
    counterpart_id: Annotated[str, Query(min_length=1, description="Other participant")],
) -> MessagesListResponse:
    """Messages between the viewer and counterpart on a listing, oldest first."""
    result = chat.get_messages(db, viewer_id, listing_id, counterpart_id)
    raise_for_error(result)
    return MessagesListResponse(messages=result["messages"])


@app.get("/api/messages/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    viewer_id: Annotated[Optional[str], Depends(get_viewer_id)],
    db: DB,
) -> UnreadCountResponse:
    """Unread messages addressed to the viewer; 0 for anonymous callers."""
    return UnreadCountResponse(**chat.get_unread_message_count(db, viewer_id))


@app.post("/api/messages", response_model=MessageEnvelope, responses=ERROR_RESPONSES)
async def send_message(
    request: Request,
    payload: SendMessageRequest,
    background_tasks: BackgroundTasks,
    viewer_id: Viewer,
    db: DB,
) -> MessageEnvelope:
    """
    Send a message. The receiver gets a push notification after the
    response is sent; push failures never affect this request.
    """
    result = chat.send_message(
        db,
        viewer_id,
        listing_id=payload.listing_id,
        receiver_id=payload.receiver_id,
        body=payload.body,
        client_id=payload.client_id,
        notifier=lambda row: background_tasks.add_task(push.notify_new_message, row),
    )
    log_chat_data(
        request,
        action="send",
        result=result.get("code", "ok"),
        message_id=result["message"]["id"] if "message" in result else None,
    )
    raise_for_error(result)
    return MessageEnvelope(message=result["message"])


@app.post("/api/messages/read", response_model=MarkReadResponse, responses=ERROR_RESPONSES)
async def mark_read(request: Request, payload: MarkReadRequest, viewer_id: Viewer, db: DB) -> MarkReadResponse:
    """Mark the counterpart's messages on a listing as read. Idempotent."""
    result = chat.mark_messages_as_read(db, viewer_id, payload.listing_id, payload.counterpart_id)
    log_chat_data(request, action="mark_read", result=result.get("code", "ok"))
    raise_for_error(result)
    return MarkReadResponse(updated=result["updated"])


@app.patch(
    "/api/messages/{message_id}",
    response_model=EditMessageResponse,
    responses={
        **ERROR_RESPONSES,
        403: {"model": ErrorResponse, "description": "Not the sender"},
        404: {"model": ErrorResponse, "description": "Message not found"},
        409: {"model": ErrorResponse, "description": "Edit window expired"},
    },
)
async def edit_message(
    request: Request,
    message_id: str,
    payload: EditMessageRequest,
    viewer_id: Viewer,
    db: DB,
) -> EditMessageResponse:
    """Edit one of the viewer's own messages within the edit window."""
    result = chat.edit_message(db, viewer_id, message_id, payload.body)
    log_chat_data(request, action="edit", result=result.get("code", "ok"), message_id=message_id)
    raise_for_error(result)
    return EditMessageResponse(message=result["message"])


@app.delete(
    "/api/messages/{message_id}",
    response_model=SuccessResponse,
    responses={
        **ERROR_RESPONSES,
        403: {"model": ErrorResponse, "description": "Not the sender"},
        404: {"model": ErrorResponse, "description": "Message not found"},
    },
)
async def delete_message(
    request: Request,
    message_id: str,
    viewer_id: Viewer,
    db: DB,
    confirm: Annotated[bool, Query(description="Must be true; deletion cannot be undone")] = False,
) -> SuccessResponse:
    """Permanently delete one of the viewer's own messages."""
    if not confirm:
        log_chat_data(request, action="delete", result=chat.VALIDATION, message_id=message_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Deletion must be confirmed with confirm=true",
        )
    result = chat.delete_message(db, viewer_id, message_id)
    log_chat_data(request, action="delete", result=result.get("code", "ok"), message_id=message_id)
    raise_for_error(result)
    return SuccessResponse()


# =============================================================================
# Typing Indicator Routes
# =============================================================================

@app.post("/api/typing", response_model=TypingResponse, responses=ERROR_RESPONSES)
async def typing_signal(payload: TypingRequest, viewer_id: Viewer) -> TypingResponse:
    """Refresh (typing=true) or clear (typing=false) the viewer's typing signal."""
    if payload.typing:
        typing_channel.touch(payload.listing_id, viewer_id, payload.receiver_id)
    else:
        typing_channel.clear(payload.listing_id, viewer_id)
    # Only the caller and the counterpart of this thread are visible
    visible = {viewer_id, payload.receiver_id} - {None}
    return TypingResponse(typing=typing_channel.active(payload.listing_id, among=visible))


# =============================================================================
# Push Subscription Routes
# =============================================================================

@app.post("/api/push/subscribe", response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def push_subscribe(
    payload: PushSubscribeRequest,
    viewer_id: Viewer,
    db: DB,
    user_agent: Annotated[str | None, Header()] = None,
) -> SuccessResponse:
    """Save the browser's push subscription. Re-subscribing updates it in place."""
    result = push.save_subscription(db, viewer_id, payload.subscription.model_dump(), user_agent=user_agent)
    if not result["success"]:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result["error"])
    return SuccessResponse()


@app.post("/api/push/unsubscribe", response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def push_unsubscribe(payload: PushUnsubscribeRequest, viewer_id: Viewer, db: DB) -> SuccessResponse:
    """Remove one browser, or every browser of the user when endpoint is omitted."""
    if payload.endpoint is None:
        result = push.remove_all_subscriptions(db, viewer_id)
    else:
        result = push.remove_subscription(db, viewer_id, payload.endpoint)
    if not result["success"]:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result["error"])
    return SuccessResponse()


@app.get("/api/push/status", response_model=PushStatusResponse, responses=ERROR_RESPONSES)
async def push_status(viewer_id: Viewer, db: DB) -> PushStatusResponse:
    return PushStatusResponse(subscribed=push.has_subscription(db, viewer_id))


# =============================================================================
# Report Routes
# =============================================================================

@app.post("/api/reports", response_model=ReportEnvelope, responses=ERROR_RESPONSES)
async def report_listing(
    payload: ReportRequest,
    background_tasks: BackgroundTasks,
    viewer_id: Viewer,
    db: DB,
) -> ReportEnvelope:
    """Report a listing to the moderators."""
    result = reports.report_listing(
        db,
        viewer_id,
        payload.listing_id,
        payload.reason,
        notifier=lambda row: background_tasks.add_task(reports.notify_moderators, row),
    )
    raise_for_error(result)
    return ReportEnvelope(report=result["report"])


@app.get("/api/admin/reports", response_model=ReportsListResponse)
async def list_reports(admin_id: Annotated[str, Depends(require_admin)], db: DB) -> ReportsListResponse:
    result = reports.get_all_reports(db)
    raise_for_error(result)
    return ReportsListResponse(reports=result["reports"])


@app.patch("/api/admin/reports/{report_id}", response_model=SuccessResponse)
async def update_report(
    report_id: str,
    payload: ReportStatusRequest,
    admin_id: Annotated[str, Depends(require_admin)],
    db: DB,
) -> SuccessResponse:
    result = reports.update_report_status(db, report_id, payload.status)
    raise_for_error(result)
    return SuccessResponse()


# =============================================================================
# Realtime WebSocket
# =============================================================================

async def _forward_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        event = await queue.get()
        await websocket.send_json({"type": "change", **event.to_dict()})


@app.websocket("/ws")
async def realtime_socket(websocket: WebSocket, token: Optional[str] = None):
    """
    Stream change events to a signed-in browser.

    Server -> client: ``{"type": "change", "table", "event", "new", "old"}``
    for messages the viewer sent or received and typing signals addressed to
    the viewer.
    Client -> server: ``{"type": "typing" | "typing_stop", "listing_id", "receiver_id"}``
    and ``{"type": "ping"}``.
    """
    viewer_id = verify_session_token(token, settings.SESSION_SECRET)
    if not viewer_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    bind_viewer(viewer_id)
    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue()
    subscriptions = [
        change_feed.subscribe(MESSAGES, queue.put_nowait, ALL, predicate=lambda row: involves(row, viewer_id)),
        change_feed.subscribe(TYPING, queue.put_nowait, ALL, filters={"receiver_id": viewer_id}),
    ]
    forwarder = asyncio.create_task(_forward_events(websocket, queue))
    logger.info(f"Realtime socket opened for {viewer_id}")

    try:
        while True:
            try:
                frame = json.loads(await websocket.receive_text())
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "error": "Invalid JSON"})
                continue
            kind = frame.get("type") if isinstance(frame, dict) else None
            listing_id = frame.get("listing_id") if isinstance(frame, dict) else None

            if kind == "ping":
                await websocket.send_json({"type": "pong"})
            elif kind in ("typing", "typing_stop") and not listing_id:
                await websocket.send_json({"type": "error", "error": "listing_id is required"})
            elif kind == "typing":
                typing_channel.touch(listing_id, viewer_id, frame.get("receiver_id"))
            elif kind == "typing_stop":
                typing_channel.clear(listing_id, viewer_id)
            else:
                await websocket.send_json({"type": "error", "error": "Unknown event"})
    except WebSocketDisconnect:
        logger.info(f"Realtime socket closed for {viewer_id}")
    finally:
        for subscription in subscriptions:
            subscription.unsubscribe()
        forwarder.cancel()


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
