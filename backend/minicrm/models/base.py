"""
SQLAlchemy Base and mixins for all models.

All timestamps are naive UTC. Rows that are written once (orders,
communication log entries) only carry ``created_at``; mutable rows also get
``updated_at``.
"""

import uuid
from datetime import datetime

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column, DeclarativeBase


def utcnow() -> datetime:
    return datetime.utcnow()


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class UUIDMixin:
    """String UUID primary key, generated client-side."""

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )


class CreatedAtMixin:
    """Creation time for append-only rows."""

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class TimestampMixin(CreatedAtMixin):
    """Creation and last-modification time for rows that are updated in place."""

    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow
    )
