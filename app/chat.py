"""
Chat actions.

Each action takes a database session and the authenticated viewer id (None
when the caller is anonymous) and returns a dict holding either the
requested payload or an ``error`` string plus an error ``code``. Actions
never raise for expected failures; store errors come back as strings.

Successful mutations are published on the realtime change feed so open
views and conversation lists update without polling.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app import storage
from app.config import settings
from app.conversations import aggregate_conversations
from app.metrics import record_chat_action
from app.realtime import DELETE, INSERT, MESSAGES, UPDATE, ChangeEvent, ChangeFeed, change_feed
from app.utils import format_ts, parse_ts, utc_now

logger = logging.getLogger(__name__)

VALIDATION = "validation_error"
UNAUTHENTICATED = "unauthenticated"
NOT_FOUND = storage.NOT_FOUND
FORBIDDEN = storage.FORBIDDEN
CONFLICT = storage.CONFLICT
BACKEND = storage.BACKEND

Notifier = Callable[[Dict[str, Any]], Any]


def _error(action: Optional[str], message: str, code: str, **extra) -> Dict[str, Any]:
    if action:
        record_chat_action(action, code)
    return {"error": message, "code": code, **extra}


def user_summary(user) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {"id": user.id, "display_name": user.display_name}


def listing_summary(listing) -> Optional[Dict[str, Any]]:
    if listing is None:
        return None
    images = listing.image_urls or []
    return {"id": listing.id, "title": listing.title, "image_url": images[0] if images else None}


def serialize_message(message, include_related: bool = False) -> Dict[str, Any]:
    """Column values of a Message, optionally with sender/receiver/listing summaries."""
    row = {column.name: getattr(message, column.name) for column in message.__table__.columns}
    if include_related:
        row["sender"] = user_summary(message.sender)
        row["receiver"] = user_summary(message.receiver)
        row["listing"] = listing_summary(message.listing)
    return row


# =============================================================================
# Conversation Aggregator
# =============================================================================

def get_inbox_rows(db: Session, viewer_id: Optional[str]) -> Dict[str, Any]:
    """Every message row of the viewer, newest first, with summaries."""
    if not viewer_id:
        return _error(None, "Unauthorized", UNAUTHENTICATED, rows=[])
    messages, error = storage.fetch_viewer_messages(db, viewer_id)
    if error:
        return _error(None, error, BACKEND, rows=[])
    return {"rows": [serialize_message(m, include_related=True) for m in messages]}


def get_all_conversations(db: Session, viewer_id: Optional[str]) -> Dict[str, Any]:
    """
    All conversations of the viewer sorted by last message time, newest first.

    A store failure yields an empty list with the error string attached.
    """
    if not viewer_id:
        return {"conversations": []}

    result = get_inbox_rows(db, viewer_id)
    if "error" in result:
        return {"conversations": [], "error": result["error"], "code": result["code"]}

    conversations = aggregate_conversations(result["rows"], viewer_id)
    logger.info(f"Aggregated {len(conversations)} conversations for {viewer_id}")
    return {"conversations": [c.to_dict() for c in conversations]}


def get_messages(db: Session, viewer_id: Optional[str], listing_id: str, counterpart_id: str) -> Dict[str, Any]:
    if not viewer_id:
        return _error(None, "Unauthorized", UNAUTHENTICATED)
    if not listing_id or not counterpart_id:
        return _error(None, "listing_id and counterpart_id are required", VALIDATION)

    messages, error = storage.fetch_thread(db, listing_id, viewer_id, counterpart_id)
    if error:
        return _error(None, error, BACKEND)
    return {"messages": [serialize_message(m, include_related=True) for m in messages]}


def get_unread_message_count(db: Session, viewer_id: Optional[str]) -> Dict[str, int]:
    if not viewer_id:
        return {"count": 0}
    count, error = storage.count_unread(db, viewer_id)
    if error:
        return {"count": 0}
    return {"count": count}


# =============================================================================
# Read-State Tracker
# =============================================================================

def mark_messages_as_read(
    db: Session,
    viewer_id: Optional[str],
    listing_id: str,
    counterpart_id: str,
    feed: ChangeFeed = change_feed,
) -> Dict[str, Any]:
    """
    Mark every unread message from counterpart to viewer on listing as read.

    Idempotent: a repeated call succeeds with updated == 0. message_ids lists
    exactly the rows this call flipped.
    """
    if not viewer_id:
        return _error("mark_read", "Unauthorized", UNAUTHENTICATED)
    if not listing_id or not counterpart_id:
        return _error("mark_read", "listing_id and counterpart_id are required", VALIDATION)

    flipped, error = storage.mark_thread_read(db, listing_id, viewer_id, counterpart_id, format_ts(utc_now()))
    if error:
        return _error("mark_read", error, BACKEND)

    for message in flipped:
        feed.publish(ChangeEvent(MESSAGES, UPDATE, new=serialize_message(message)))

    record_chat_action("mark_read", "ok")
    return {"success": True, "updated": len(flipped), "message_ids": [message.id for message in flipped]}


# =============================================================================
# Message Composer/Mutator
# =============================================================================

def validate_body(body: Optional[str]) -> Optional[str]:
    """Return an error string for an unacceptable message body, else None."""
    if body is None or not body.strip():
        return "Message cannot be empty"
    if len(body) > settings.MAX_MESSAGE_LENGTH:
        return f"Message cannot exceed {settings.MAX_MESSAGE_LENGTH} characters"
    return None


def send_message(
    db: Session,
    viewer_id: Optional[str],
    listing_id: str,
    receiver_id: str,
    body: str,
    client_id: Optional[str] = None,
    feed: ChangeFeed = change_feed,
    notifier: Optional[Notifier] = None,
) -> Dict[str, Any]:
    """
    Send a message from the viewer to receiver_id about listing_id.

    notifier, when given, is called with the stored message after the insert
    committed; its failures are logged and never fail the send.
    """
    if not viewer_id:
        return _error("send", "Unauthorized", UNAUTHENTICATED)

    body_error = validate_body(body)
    if body_error:
        return _error("send", body_error, VALIDATION)
    if not listing_id or not receiver_id:
        return _error("send", "listing_id and receiver_id are required", VALIDATION)
    if receiver_id == viewer_id:
        return _error("send", "You cannot message yourself", VALIDATION)

    message, error = storage.insert_message(
        db,
        listing_id=listing_id,
        sender_id=viewer_id,
        receiver_id=receiver_id,
        body=body,
        created_at=format_ts(utc_now()),
        client_id=client_id,
    )
    if error:
        return _error("send", error, BACKEND)

    row = serialize_message(message, include_related=True)
    feed.publish(ChangeEvent(MESSAGES, INSERT, new=serialize_message(message)))
    record_chat_action("send", "ok")

    if notifier is not None:
        try:
            notifier(row)
        except Exception as e:
            logger.error(f"Message notification failed for {message.id}: {e}")

    return {"message": row}


def edit_message(
    db: Session,
    viewer_id: Optional[str],
    message_id: str,
    new_body: str,
    edit_time_limit: Optional[timedelta] = None,
    feed: ChangeFeed = change_feed,
) -> Dict[str, Any]:
    """
    Replace the body of one of the viewer's own messages.

    Only the sender may edit, and only within edit_time_limit of creation
    (EDIT_TIME_LIMIT_SECONDS by default). Both rules are enforced by the
    UPDATE's WHERE clause, not by a prior read.
    """
    if not viewer_id:
        return _error("edit", "Unauthorized", UNAUTHENTICATED)

    body_error = validate_body(new_body)
    if body_error:
        return _error("edit", body_error, VALIDATION)

    if edit_time_limit is None:
        edit_time_limit = timedelta(seconds=settings.EDIT_TIME_LIMIT_SECONDS)
    not_before = format_ts(utc_now() - edit_time_limit)

    message, error, code = storage.update_message_body(db, message_id, viewer_id, new_body, not_before)
    if error:
        return _error("edit", error, code)

    feed.publish(ChangeEvent(MESSAGES, UPDATE, new=serialize_message(message)))
    record_chat_action("edit", "ok")
    return {"success": True, "message": serialize_message(message, include_related=True)}


def delete_message(
    db: Session,
    viewer_id: Optional[str],
    message_id: str,
    feed: ChangeFeed = change_feed,
) -> Dict[str, Any]:
    """Hard-delete one of the viewer's own messages. There is no undo."""
    if not viewer_id:
        return _error("delete", "Unauthorized", UNAUTHENTICATED)

    old_row, error, code = storage.delete_message_row(db, message_id, viewer_id)
    if error:
        return _error("delete", error, code)

    feed.publish(ChangeEvent(MESSAGES, DELETE, old=old_row))
    record_chat_action("delete", "ok")
    return {"success": True}


def within_edit_window(created_at: str, now: datetime, edit_time_limit: timedelta) -> bool:
    """Client-side hint only; the store makes the real decision."""
    return now - parse_ts(created_at) <= edit_time_limit
