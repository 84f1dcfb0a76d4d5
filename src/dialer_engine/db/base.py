"""SQLAlchemy Base and Mixins for the Dialer Engine database.

Provides:
- DeclarativeBase for the engine's own tables (scores, conversions, audit)
- ReplicaBase for the read-only ground-truth tables
- TimestampMixin for created_at/updated_at
- UUIDMixin for UUID primary keys
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, String, TypeDecorator, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class UUIDType(TypeDecorator):
    """Platform-independent UUID type.

    Uses String(36) storage but handles UUID <-> str conversion.
    Compatible with SQLite and PostgreSQL.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, UUID):
            return str(value)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, UUID):
            return value
        return UUID(value)


class Base(DeclarativeBase):
    """Base class for the engine's ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
        UUID: UUIDType,
        datetime: DateTime(timezone=True),
    }


class ReplicaBase(DeclarativeBase):
    """Base class for ground-truth replica models.

    Kept separate so Base.metadata.create_all never touches the replica.
    """

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class UUIDMixin:
    """Mixin providing UUID primary key."""

    id: Mapped[UUID] = mapped_column(
        UUIDType(),
        primary_key=True,
        default=uuid4,
        nullable=False,
    )


class TimestampMixin:
    """Mixin providing created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )
