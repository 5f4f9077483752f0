"""
Pytest configuration and shared fixtures.

Environment defaults are set here before any app import so that settings
are built from test values; variables already exported take precedence.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_marketplace.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("SESSION_SECRET", "test-session-secret")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from app.main import app
from app.models import Listing, User
from app.storage import SessionLocal, Base, engine
from app.utils import format_ts, create_session_token, utc_now


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="function")
def db():
    """Fresh database for each test and a session bound to it."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db):
    """Create test client on the fresh database."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def users(db):
    """
    Three students and two listings:
    - L1 "Desk" owned by bob
    - L2 "Bike" owned by carol
    """
    now = format_ts(utc_now())
    db.add_all([
        User(id="alice", email="alice@uni.edu", display_name="Alice", university_domain="uni.edu", created_at=now),
        User(id="bob", email="bob@uni.edu", display_name="Bob", university_domain="uni.edu", created_at=now),
        User(id="carol", email="carol@uni.edu", display_name="Carol", university_domain="uni.edu", created_at=now),
    ])
    db.add_all([
        Listing(id="L1", user_id="bob", title="Desk", price=40.0,
                image_urls=["https://cdn.example/desk.jpg"], created_at=now),
        Listing(id="L2", user_id="carol", title="Bike", price=120.0, image_urls=[], created_at=now),
    ])
    db.commit()
    return {"alice": "alice", "bob": "bob", "carol": "carol"}


@pytest.fixture
def auth_headers():
    """Build an Authorization header carrying a signed session token."""
    def _headers(user_id: str) -> dict:
        token = create_session_token(user_id, os.environ["SESSION_SECRET"])
        return {"Authorization": f"Bearer {token}"}
    return _headers
