"""Conversion ledger model."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dialer_engine.db.base import Base, UUIDMixin, utcnow


class ConversionModel(Base, UUIDMixin):
    """A user leaving a queue because its business condition was satisfied.

    Append-only. At most one row per (user_id, conversion_type) inside the
    configured dedup window; ConversionRepository.record enforces that.
    """

    __tablename__ = "conversions"

    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    previous_queue_category: Mapped[str] = mapped_column(String(50), nullable=False)
    conversion_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="signature_obtained, requirements_completed",
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Subsystem that detected the conversion",
    )
    converted_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    # Snapshot of the score row at conversion time
    final_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_call_attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_call_at: Mapped[datetime | None] = mapped_column(nullable=True)
    signature_obtained: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_conversions_user_type_converted", "user_id", "conversion_type", "converted_at"),
        Index("ix_conversions_converted_at", "converted_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Conversion(user_id={self.user_id}, type={self.conversion_type}, "
            f"at={self.converted_at})>"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "previous_queue_category": self.previous_queue_category,
            "conversion_type": self.conversion_type,
            "reason": self.reason,
            "source": self.source,
            "converted_at": self.converted_at.isoformat() if self.converted_at else None,
            "final_score": self.final_score,
            "total_call_attempts": self.total_call_attempts,
            "last_call_at": self.last_call_at.isoformat() if self.last_call_at else None,
            "signature_obtained": self.signature_obtained,
            "metadata": self.meta or {},
        }
