"""
Feedback-related database models for the feedback suite backend.

Defines SQLAlchemy ORM models for screenshot captures, feedback submissions
and the notification outbox.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC now; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class ScreenshotData(Base):
    """Screenshot + DOM snapshot captured by the browser extension."""

    __tablename__ = "screenshot_data"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: uuid.uuid4().hex,
    )

    screenshot_url: Mapped[str] = mapped_column(Text, nullable=False)

    # Base64 encoded, decoded on every read
    dom_tree: Mapped[str] = mapped_column(Text, nullable=False)

    tab_url: Mapped[str] = mapped_column(Text, nullable=False)
    tab_title: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Whole seconds since epoch
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    page_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    temp_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class Feedback(Base):
    """Feedback submission model."""

    __tablename__ = "feedback"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    comment: Mapped[str] = mapped_column(Text, nullable=False)

    # Weak reference: deleting feedback never touches the screenshot row
    screenshot_data_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("screenshot_data.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Whole seconds since epoch
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    user_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    screenshot_data: Mapped[Optional[ScreenshotData]] = relationship(lazy="joined")


class NotificationJob(Base):
    """Outbox row: one side effect (GitHub issue, task, Slack) for one feedback."""

    __tablename__ = "notification_job"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # No FK: jobs outlive an admin deleting the feedback row
    feedback_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    # Store enum values as strings
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", index=True)

    dedup_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    available_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
