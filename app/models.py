"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

users and listings are owned by the surrounding marketplace; this service
only reads them to denormalise conversation summaries.
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.storage import Base


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, nullable=False, unique=True)
    display_name = Column(String, nullable=True)
    university_domain = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


class Listing(Base):
    __tablename__ = "listings"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True)
    price = Column(Float, nullable=True)
    image_urls = Column(JSON, nullable=False, default=list)
    created_at = Column(String, nullable=False)


class Message(Base):
    """
    A chat message between two users in the context of one listing.

    Table: messages
    listing_id is deliberately not a foreign key: deleting a listing keeps
    its conversation history readable.
    """
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("sender_id <> receiver_id", name="ck_messages_distinct_parties"),
    )

    id = Column(String, primary_key=True, default=new_id)
    listing_id = Column(String, nullable=False, index=True)
    sender_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    receiver_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    body = Column(Text, nullable=False)
    created_at = Column(String, nullable=False, index=True)  # ISO-8601 UTC string
    edited = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(String, nullable=True)
    seen_at = Column(String, nullable=True)
    read = Column(Boolean, nullable=False, default=False, index=True)
    client_id = Column(String, nullable=True)  # correlation id of the optimistic entry

    sender = relationship("User", foreign_keys=[sender_id], lazy="joined")
    receiver = relationship("User", foreign_keys=[receiver_id], lazy="joined")
    listing = relationship(
        "Listing",
        primaryjoin="foreign(Message.listing_id) == Listing.id",
        viewonly=True,
        lazy="joined",
    )


class PushSubscription(Base):
    """Web push subscription of one browser for one user."""
    __tablename__ = "push_subscriptions"
    __table_args__ = (
        UniqueConstraint("user_id", "endpoint", name="uq_push_sub_user_endpoint"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    endpoint = Column(Text, nullable=False)
    p256dh = Column(String, nullable=False)
    auth = Column(String, nullable=False)
    user_agent = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    last_used_at = Column(String, nullable=True)


class Report(Base):
    __tablename__ = "reports"

    id = Column(String, primary_key=True, default=new_id)
    reporter_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    listing_id = Column(String, nullable=False, index=True)
    reason = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, resolved, dismissed
    created_at = Column(String, nullable=False)

    reporter = relationship("User", foreign_keys=[reporter_id], lazy="joined")
    listing = relationship(
        "Listing",
        primaryjoin="foreign(Report.listing_id) == Listing.id",
        viewonly=True,
        lazy="joined",
    )
