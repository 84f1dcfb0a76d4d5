"""User call score model.

One row per user. Holds the call priority and the current queue category.
Only QueueTransitionService writes to this table.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from dialer_engine.db.base import Base, TimestampMixin, UUIDMixin


class UserCallScoreModel(Base, UUIDMixin, TimestampMixin):
    """Call priority and queue membership for a single user.

    Invariant: is_active is False only when current_queue_category is NULL.
    Rows are never hard-deleted; deactivation is the soft delete.
    """

    __tablename__ = "user_call_scores"

    user_id: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
        index=True,
        comment="External user identity (immutable)",
    )

    # Priority: 0 is the front of the queue
    current_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    current_queue_category: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
        comment="unsigned_users, outstanding_requirements, or NULL when not queued",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Bookkeeping
    total_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_outcome: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_call_at: Mapped[datetime | None] = mapped_column(nullable=True)
    next_call_after: Mapped[datetime | None] = mapped_column(nullable=True)
    last_queue_check_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_reset_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_aged_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        Index(
            "ix_user_call_scores_queue_priority",
            "current_queue_category",
            "is_active",
            "current_score",
        ),
        Index("ix_user_call_scores_active_category", "is_active", "current_queue_category"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserCallScore(user_id={self.user_id}, category={self.current_queue_category}, "
            f"score={self.current_score}, active={self.is_active})>"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "user_id": self.user_id,
            "current_score": self.current_score,
            "current_queue_category": self.current_queue_category,
            "is_active": self.is_active,
            "total_attempts": self.total_attempts,
            "successful_calls": self.successful_calls,
            "last_outcome": self.last_outcome,
            "last_call_at": self.last_call_at.isoformat() if self.last_call_at else None,
            "next_call_after": self.next_call_after.isoformat() if self.next_call_after else None,
            "last_queue_check_at": (
                self.last_queue_check_at.isoformat() if self.last_queue_check_at else None
            ),
            "last_reset_at": self.last_reset_at.isoformat() if self.last_reset_at else None,
            "last_aged_at": self.last_aged_at.isoformat() if self.last_aged_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
