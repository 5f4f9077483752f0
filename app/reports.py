"""
Listing reports and moderation.

A report is stored first; alerting the moderators afterwards is best
effort and can never fail the submission.
"""

import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app import storage
from app.chat import listing_summary, user_summary
from app.config import settings
from app.push import send_push_notification
from app.utils import format_ts, utc_now

logger = logging.getLogger(__name__)

MODERATION_STATUSES = ("resolved", "dismissed")


def serialize_report(report, include_related: bool = False) -> Dict[str, Any]:
    row = {column.name: getattr(report, column.name) for column in report.__table__.columns}
    if include_related:
        # Moderators see who reported what
        row["reporter"] = user_summary(report.reporter)
        row["listing"] = listing_summary(report.listing)
    return row


def report_listing(
    db: Session,
    viewer_id: Optional[str],
    listing_id: str,
    reason: str,
    notifier: Optional[Callable[[Dict[str, Any]], Any]] = None,
) -> Dict[str, Any]:
    if not viewer_id:
        return {"error": "Unauthorized", "code": "unauthenticated"}
    if not listing_id or not reason or not reason.strip():
        return {"error": "listing_id and reason are required", "code": "validation_error"}

    report, error = storage.insert_report(db, viewer_id, listing_id, reason.strip(), format_ts(utc_now()))
    if error:
        return {"error": error, "code": "backend"}

    row = serialize_report(report)
    logger.info(f"Listing {listing_id} reported by {viewer_id}")

    if notifier is not None:
        try:
            notifier(row)
        except Exception as e:
            # The report is already stored
            logger.error(f"Failed to notify moderators about report {report.id}: {e}")

    return {"report": row}


def get_all_reports(db: Session) -> Dict[str, Any]:
    reports, error = storage.list_reports(db)
    if error:
        return {"error": error, "code": "backend"}
    return {"reports": [serialize_report(r, include_related=True) for r in reports]}


def update_report_status(db: Session, report_id: str, status: str) -> Dict[str, Any]:
    if status not in MODERATION_STATUSES:
        return {"error": f"status must be one of {', '.join(MODERATION_STATUSES)}", "code": "validation_error"}

    found, error = storage.set_report_status(db, report_id, status)
    if error:
        return {"error": error, "code": "backend"}
    if not found:
        return {"error": "Report not found", "code": "not_found"}
    logger.info(f"Report {report_id} marked {status}")
    return {"success": True}


def is_admin(user_id: Optional[str]) -> bool:
    return bool(user_id) and user_id in settings.ADMIN_USER_IDS


def notify_moderators(report: Dict[str, Any], sender=None) -> None:
    """Background task: push a new-report alert to every admin. Never raises."""
    payload = {
        "title": "New listing report",
        "body": report["reason"][:100],
        "url": f"{settings.APP_BASE_URL}/admin",
        "tag": f"report-{report['id']}",
    }
    try:
        with storage.SessionLocal() as db:
            for admin_id in settings.ADMIN_USER_IDS:
                send_push_notification(db, admin_id, payload, sender=sender)
    except Exception as e:
        logger.error(f"Failed to notify moderators about report {report.get('id')}: {e}")
