import logging
from typing import Generator, List, Optional, Tuple

from sqlalchemy import create_engine, delete, func, inspect, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from app.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's async
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# Error codes returned next to error strings so routes can pick a status code
NOT_FOUND = "not_found"
FORBIDDEN = "forbidden"
CONFLICT = "conflict"
BACKEND = "backend"


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        import app.models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and the messages table exists.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        if not inspect(engine).has_table("messages"):
            logger.error("Database schema not applied: 'messages' table not found")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Repository Functions
# =============================================================================

def insert_message(
    db: Session,
    listing_id: str,
    sender_id: str,
    receiver_id: str,
    body: str,
    created_at: str,
    client_id: Optional[str] = None,
) -> Tuple[Optional["Message"], Optional[str]]:
    """
    Insert a new unread message.

    Returns:
        (message, None) on success, (None, error) on failure
    """
    from app.models import Message

    logger.info(f"Creating message: listing={listing_id}, from={sender_id}, to={receiver_id}")

    message = Message(
        listing_id=listing_id,
        sender_id=sender_id,
        receiver_id=receiver_id,
        body=body,
        created_at=created_at,
        delivered_at=created_at,
        read=False,
        edited=False,
        client_id=client_id,
    )
    try:
        db.add(message)
        db.commit()
        db.refresh(message)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create message: {e}")
        return None, "Failed to send message"

    logger.info(f"Message created successfully: {message.id}")
    return message, None


def fetch_thread(
    db: Session,
    listing_id: str,
    viewer_id: str,
    counterpart_id: str,
) -> Tuple[List["Message"], Optional[str]]:
    """
    Messages exchanged between viewer and counterpart on one listing,
    oldest first.
    """
    from app.models import Message

    stmt = (
        select(Message)
        .where(Message.listing_id == listing_id)
        .where(
            or_(
                (Message.sender_id == viewer_id) & (Message.receiver_id == counterpart_id),
                (Message.sender_id == counterpart_id) & (Message.receiver_id == viewer_id),
            )
        )
        .order_by(Message.created_at.asc(), Message.id.asc())
    )
    try:
        messages = list(db.execute(stmt).unique().scalars())
    except SQLAlchemyError as e:
        logger.error(f"Failed to load thread for listing {listing_id}: {e}")
        return [], "Failed to load messages"

    logger.debug(f"Loaded {len(messages)} messages for listing {listing_id}")
    return messages, None


def fetch_viewer_messages(db: Session, viewer_id: str) -> Tuple[List["Message"], Optional[str]]:
    """
    Every message the viewer sent or received, newest first, with sender,
    receiver and listing eagerly joined.
    """
    from app.models import Message

    stmt = (
        select(Message)
        .where(or_(Message.sender_id == viewer_id, Message.receiver_id == viewer_id))
        .order_by(Message.created_at.desc(), Message.id.desc())
    )
    try:
        messages = list(db.execute(stmt).unique().scalars())
    except SQLAlchemyError as e:
        logger.error(f"Failed to load messages for viewer {viewer_id}: {e}")
        return [], "Failed to load conversations"
    return messages, None


def mark_thread_read(
    db: Session,
    listing_id: str,
    viewer_id: str,
    counterpart_id: str,
    seen_at: str,
) -> Tuple[List["Message"], Optional[str]]:
    """
    Flip read=false rows addressed to the viewer by counterpart on a listing.

    The UPDATE repeats the read=false condition, so overlapping calls never
    touch a row twice. Returns the rows this call flipped.
    """
    from app.models import Message

    conditions = (
        Message.listing_id == listing_id,
        Message.receiver_id == viewer_id,
        Message.sender_id == counterpart_id,
        Message.read.is_(False),
    )
    try:
        candidate_ids = list(db.execute(select(Message.id).where(*conditions)).scalars())
        if not candidate_ids:
            return [], None

        flipped_ids = []
        for candidate_id in candidate_ids:
            result = db.execute(
                update(Message)
                .where(Message.id == candidate_id, *conditions)
                .values(read=True, seen_at=seen_at)
            )
            if result.rowcount == 1:
                flipped_ids.append(candidate_id)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to mark messages read on listing {listing_id}: {e}")
        return [], "Failed to mark messages as read"

    db.expire_all()
    flipped = list(
        db.execute(select(Message).where(Message.id.in_(flipped_ids))).unique().scalars()
    ) if flipped_ids else []
    logger.info(f"Marked {len(flipped)} messages read: listing={listing_id}, viewer={viewer_id}")
    return flipped, None


def update_message_body(
    db: Session,
    message_id: str,
    sender_id: str,
    body: str,
    not_before: str,
) -> Tuple[Optional["Message"], Optional[str], Optional[str]]:
    """
    Replace the body of a message owned by sender_id created at or after
    not_before.

    Returns:
        (message, None, None) on success, (None, error, code) otherwise.
        code is one of NOT_FOUND, FORBIDDEN, CONFLICT, BACKEND.
    """
    from app.models import Message

    try:
        result = db.execute(
            update(Message)
            .where(
                Message.id == message_id,
                Message.sender_id == sender_id,
                Message.created_at >= not_before,
            )
            .values(body=body, edited=True)
        )
        if result.rowcount == 1:
            db.commit()
            db.expire_all()
            return db.get(Message, message_id), None, None
        db.rollback()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to edit message {message_id}: {e}")
        return None, "Failed to edit message", BACKEND

    # Nothing matched: work out why for the caller
    existing = db.get(Message, message_id)
    if existing is None:
        return None, "Message not found", NOT_FOUND
    if existing.sender_id != sender_id:
        logger.warning(f"Edit rejected, {sender_id} does not own message {message_id}")
        return None, "You can only edit your own messages", FORBIDDEN
    logger.info(f"Edit rejected, message {message_id} is outside the edit window")
    return None, "Edit window has expired", CONFLICT


def delete_message_row(
    db: Session,
    message_id: str,
    sender_id: str,
) -> Tuple[Optional[dict], Optional[str], Optional[str]]:
    """
    Hard-delete a message owned by sender_id.

    Returns:
        (old_row, None, None) on success, (None, error, code) otherwise.
    """
    from app.models import Message

    existing = db.get(Message, message_id)
    if existing is None:
        return None, "Message not found", NOT_FOUND

    old_row = {column.name: getattr(existing, column.name) for column in Message.__table__.columns}
    try:
        result = db.execute(
            delete(Message).where(Message.id == message_id, Message.sender_id == sender_id)
        )
        if result.rowcount != 1:
            db.rollback()
            logger.warning(f"Delete rejected, {sender_id} does not own message {message_id}")
            return None, "You can only delete your own messages", FORBIDDEN
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to delete message {message_id}: {e}")
        return None, "Failed to delete message", BACKEND

    db.expunge_all()
    logger.info(f"Message deleted: {message_id}")
    return old_row, None, None


def count_unread(db: Session, viewer_id: str) -> Tuple[int, Optional[str]]:
    from app.models import Message

    try:
        count = db.execute(
            select(func.count(Message.id)).where(
                Message.receiver_id == viewer_id,
                Message.read.is_(False),
            )
        ).scalar()
    except SQLAlchemyError as e:
        logger.error(f"Failed to count unread messages for {viewer_id}: {e}")
        return 0, "Failed to count unread messages"
    return count or 0, None


# =============================================================================
# Push Subscription Repository Functions
# =============================================================================

def upsert_push_subscription(
    db: Session,
    user_id: str,
    endpoint: str,
    p256dh: str,
    auth: str,
    user_agent: Optional[str],
    created_at: str,
) -> Optional[str]:
    """
    Save a subscription, updating keys in place when (user_id, endpoint)
    already exists. Returns an error string or None.
    """
    from app.models import PushSubscription

    values = dict(p256dh=p256dh, auth=auth, user_agent=user_agent, created_at=created_at)
    try:
        existing = db.execute(
            select(PushSubscription).where(
                PushSubscription.user_id == user_id,
                PushSubscription.endpoint == endpoint,
            )
        ).scalar_one_or_none()
        if existing is None:
            db.add(PushSubscription(user_id=user_id, endpoint=endpoint, **values))
        else:
            for key, value in values.items():
                setattr(existing, key, value)
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent insert of the same pair
        db.rollback()
        logger.info(f"Push subscription already exists for user {user_id}, updating")
        try:
            db.execute(
                update(PushSubscription)
                .where(PushSubscription.user_id == user_id, PushSubscription.endpoint == endpoint)
                .values(**values)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error saving push subscription: {e}")
            return "Failed to save subscription"
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error saving push subscription: {e}")
        return "Failed to save subscription"
    return None


def delete_push_subscription(db: Session, user_id: str, endpoint: Optional[str] = None) -> Tuple[int, Optional[str]]:
    """Remove one subscription, or all of a user's when endpoint is None."""
    from app.models import PushSubscription

    stmt = delete(PushSubscription).where(PushSubscription.user_id == user_id)
    if endpoint is not None:
        stmt = stmt.where(PushSubscription.endpoint == endpoint)
    try:
        removed = db.execute(stmt).rowcount
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error removing push subscription: {e}")
        return 0, "Failed to remove subscription"
    return removed, None


def list_push_subscriptions(db: Session, user_id: str) -> list:
    from app.models import PushSubscription

    try:
        return list(
            db.execute(select(PushSubscription).where(PushSubscription.user_id == user_id)).scalars()
        )
    except SQLAlchemyError as e:
        logger.error(f"Error getting push subscriptions: {e}")
        return []


def touch_push_subscription(db: Session, user_id: str, endpoint: str, used_at: str) -> None:
    from app.models import PushSubscription

    try:
        db.execute(
            update(PushSubscription)
            .where(PushSubscription.user_id == user_id, PushSubscription.endpoint == endpoint)
            .values(last_used_at=used_at)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Could not update last_used_at for push subscription: {e}")


# =============================================================================
# Report Repository Functions
# =============================================================================

def insert_report(
    db: Session,
    reporter_id: str,
    listing_id: str,
    reason: str,
    created_at: str,
) -> Tuple[Optional["Report"], Optional[str]]:
    from app.models import Report

    report = Report(
        reporter_id=reporter_id,
        listing_id=listing_id,
        reason=reason,
        status="pending",
        created_at=created_at,
    )
    try:
        db.add(report)
        db.commit()
        db.refresh(report)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create report: {e}")
        return None, "Failed to submit report"
    return report, None


def list_reports(db: Session) -> Tuple[list, Optional[str]]:
    from app.models import Report

    try:
        reports = list(db.execute(select(Report).order_by(Report.created_at.desc())).scalars())
    except SQLAlchemyError as e:
        logger.error(f"Failed to load reports: {e}")
        return [], "Failed to load reports"
    return reports, None


def set_report_status(db: Session, report_id: str, status: str) -> Tuple[bool, Optional[str]]:
    """Returns (found, error)."""
    from app.models import Report

    try:
        result = db.execute(update(Report).where(Report.id == report_id).values(status=status))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update report {report_id}: {e}")
        return False, "Failed to update report"
    return result.rowcount == 1, None
