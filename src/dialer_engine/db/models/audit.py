"""Queue transition audit model."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Boolean, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dialer_engine.db.base import Base, UUIDMixin, UUIDType, utcnow


class QueueTransitionAuditModel(Base, UUIDMixin):
    """One row per mutation of a user's queue state.

    Written in the same transaction as the mutation, whether or not a
    conversion was logged.

    Note: This model intentionally does NOT use TimestampMixin
    because audit rows are never updated.
    """

    __tablename__ = "queue_transition_audit"

    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    from_queue_category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    to_queue_category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    agent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    conversion_id: Mapped[UUID | None] = mapped_column(UUIDType(), nullable=True)
    conversion_logged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    timestamp: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, index=True)

    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_queue_transition_audit_logged_timestamp", "conversion_logged", "timestamp"),
        Index("ix_queue_transition_audit_source_timestamp", "source", "timestamp"),
        Index("ix_queue_transition_audit_user_timestamp", "user_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<QueueTransitionAudit(user_id={self.user_id}, "
            f"{self.from_queue_category} -> {self.to_queue_category}, "
            f"conversion_logged={self.conversion_logged})>"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "from_queue_category": self.from_queue_category,
            "to_queue_category": self.to_queue_category,
            "reason": self.reason,
            "source": self.source,
            "agent_id": self.agent_id,
            "conversion_id": str(self.conversion_id) if self.conversion_id else None,
            "conversion_logged": self.conversion_logged,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "metadata": self.meta or {},
        }
