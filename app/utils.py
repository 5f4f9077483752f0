"""
Utility functions for the chat service.

- Session tokens: HS256 JWTs shared with the identity provider; ``sub`` is
  the user id and ``exp`` bounds the session
- UTC timestamp helpers; timestamps are stored as ISO-8601 strings so that
  lexical order equals chronological order
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

logger = logging.getLogger(__name__)

TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
TOKEN_ALGORITHM = "HS256"


def create_session_token(user_id: str, secret: str, expires_in: int = 3600) -> str:
    """Issue a session JWT for user_id, valid for expires_in seconds."""
    claims = {
        "sub": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(claims, secret, algorithm=TOKEN_ALGORITHM)


def verify_session_token(token: Optional[str], secret: str) -> Optional[str]:
    """
    Verify a session token and return the user id it carries.

    Args:
        token: Token from the Authorization header or ``token`` query param
        secret: SESSION_SECRET

    Returns:
        The ``sub`` claim if the token is valid and unexpired, None otherwise
    """
    if not token:
        logger.debug("Session token missing")
        return None

    try:
        payload = jwt.decode(token, secret, algorithms=[TOKEN_ALGORITHM])
    except JWTError as e:
        # Covers bad signatures, malformed tokens and expired sessions
        logger.info(f"Session token rejected: {e}")
        return None

    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        return None
    return user_id


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(dt: datetime) -> str:
    """Format an aware or naive-UTC datetime as ISO-8601 with Z suffix."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(TS_FORMAT)


def parse_ts(value: str) -> datetime:
    """Parse an ISO-8601 UTC string (``Z`` suffix accepted) into an aware datetime."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
