"""
Web Push notifications.

Subscriptions are stored per (user, endpoint) and upserted when a browser
grants permission. Delivery goes through pywebpush with VAPID credentials;
endpoints reported gone (HTTP 404/410) are removed. Delivery is
fire-and-forget: callers never see push failures.
"""

import json
import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from pywebpush import WebPushException, webpush
from sqlalchemy.orm import Session

from app import storage
from app.config import settings
from app.metrics import record_push_outcome
from app.utils import format_ts, utc_now

logger = logging.getLogger(__name__)

GONE_STATUSES = (404, 410)
PREVIEW_LENGTH = 100


class PushDeliveryError(Exception):
    """Raised by a sender when the push service rejects a notification."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class WebPushSender:
    """Sends one notification to one subscription using the Web Push protocol."""

    def __init__(self, vapid_private_key: str, vapid_email: str, ttl: int = 3600):
        self.vapid_private_key = vapid_private_key
        self.vapid_claims = {"sub": vapid_email}
        self.ttl = ttl

    def send(self, subscription, payload: Dict[str, Any]) -> None:
        subscription_info = {
            "endpoint": subscription.endpoint,
            "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
        }
        try:
            webpush(
                subscription_info=subscription_info,
                data=json.dumps(payload),
                vapid_private_key=self.vapid_private_key,
                vapid_claims=dict(self.vapid_claims),
                ttl=self.ttl,
                headers={"Urgency": "high"},
            )
        except WebPushException as e:
            status_code = e.response.status_code if e.response is not None else None
            raise PushDeliveryError(str(e), status_code=status_code) from e


@lru_cache()
def get_push_sender() -> Optional[WebPushSender]:
    """The configured sender, or None when VAPID keys are not set."""
    if not settings.VAPID_PUBLIC_KEY or not settings.VAPID_PRIVATE_KEY:
        return None
    return WebPushSender(settings.VAPID_PRIVATE_KEY, settings.VAPID_EMAIL, ttl=settings.PUSH_TTL_SECONDS)


# =============================================================================
# Subscription Management
# =============================================================================

def save_subscription(
    db: Session,
    user_id: str,
    subscription: Dict[str, Any],
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Save a browser push subscription for a user.

    subscription is the browser's PushSubscription JSON:
    ``{"endpoint": ..., "keys": {"p256dh": ..., "auth": ...}}``
    """
    error = storage.upsert_push_subscription(
        db,
        user_id=user_id,
        endpoint=subscription["endpoint"],
        p256dh=subscription["keys"]["p256dh"],
        auth=subscription["keys"]["auth"],
        user_agent=user_agent,
        created_at=format_ts(utc_now()),
    )
    if error:
        return {"success": False, "error": error}
    logger.info(f"Push subscription saved for user {user_id}")
    return {"success": True}


def remove_subscription(db: Session, user_id: str, endpoint: str) -> Dict[str, Any]:
    _, error = storage.delete_push_subscription(db, user_id, endpoint)
    if error:
        return {"success": False, "error": error}
    logger.info(f"Push subscription removed for user {user_id}")
    return {"success": True}


def remove_all_subscriptions(db: Session, user_id: str) -> Dict[str, Any]:
    removed, error = storage.delete_push_subscription(db, user_id)
    if error:
        return {"success": False, "error": error}
    logger.info(f"All {removed} push subscriptions removed for user {user_id}")
    return {"success": True}


def has_subscription(db: Session, user_id: str) -> bool:
    return len(storage.list_push_subscriptions(db, user_id)) > 0


# =============================================================================
# Delivery
# =============================================================================

def send_push_notification(db: Session, user_id: str, payload: Dict[str, Any], sender=None) -> Dict[str, int]:
    """
    Send payload to every subscribed device of user_id.

    Returns:
        {"sent": n, "failed": m}
    """
    sender = sender or get_push_sender()
    if sender is None:
        logger.info("VAPID keys not configured, skipping push notification")
        record_push_outcome("skipped")
        return {"sent": 0, "failed": 0}

    subscriptions = storage.list_push_subscriptions(db, user_id)
    if not subscriptions:
        logger.debug(f"No push subscriptions for user {user_id}")
        return {"sent": 0, "failed": 0}

    logger.info(f"Sending push to {len(subscriptions)} device(s) for user {user_id}")
    sent = failed = 0
    for subscription in subscriptions:
        endpoint = subscription.endpoint
        try:
            sender.send(subscription, payload)
        except PushDeliveryError as e:
            failed += 1
            logger.warning(f"Push failed for endpoint {endpoint[:50]}...: status={e.status_code}")
            if e.status_code in GONE_STATUSES:
                logger.info(f"Removing expired push subscription: {endpoint[:50]}...")
                storage.delete_push_subscription(db, user_id, endpoint)
                record_push_outcome("expired")
            continue
        except Exception as e:
            failed += 1
            logger.error(f"Unexpected push error for endpoint {endpoint[:50]}...: {e}")
            continue
        sent += 1
        storage.touch_push_subscription(db, user_id, endpoint, format_ts(utc_now()))

    record_push_outcome("sent", sent)
    record_push_outcome("failed", failed)
    logger.info(f"Push results for user {user_id}: {sent} sent, {failed} failed")
    return {"sent": sent, "failed": failed}


def build_message_payload(
    sender_name: str,
    listing_title: str,
    message_preview: str,
    listing_id: str,
    base_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Notification payload for a new chat message, one tag per conversation."""
    preview = message_preview
    if len(preview) > PREVIEW_LENGTH:
        preview = preview[:PREVIEW_LENGTH] + "..."
    base_url = base_url or settings.APP_BASE_URL
    return {
        "title": f"New message from {sender_name}",
        "body": preview,
        "url": f"{base_url}/messages?listing={listing_id}",
        "tag": f"message-{listing_id}",
        "listing_title": listing_title,
    }


def notify_new_message(message: Dict[str, Any], sender=None) -> None:
    """
    Background task: push a new-message notification to the receiver.

    Opens its own session because the request session is closed by the time
    background tasks run. Never raises.
    """
    try:
        with storage.SessionLocal() as db:
            sender_summary = message.get("sender") or {}
            listing = message.get("listing") or {}
            payload = build_message_payload(
                sender_name=sender_summary.get("display_name") or "a buyer",
                listing_title=listing.get("title") or "your listing",
                message_preview=message["body"],
                listing_id=message["listing_id"],
            )
            send_push_notification(db, message["receiver_id"], payload, sender=sender)
    except Exception as e:
        logger.error(f"Failed to push new-message notification for {message.get('id')}: {e}")
