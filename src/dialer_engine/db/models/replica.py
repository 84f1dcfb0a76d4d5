"""Read-only ground-truth replica models.

These tables belong to the claims platform. The engine never writes them;
they are mapped only so ReplicaGroundTruthReader can query them.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dialer_engine.db.base import ReplicaBase, utcnow

# SQLite only autoincrements INTEGER primary keys
_BigIntPK = BigInteger().with_variant(Integer, "sqlite")


class ReplicaUser(ReplicaBase):
    """Claimant record."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # NULL until the user has signed
    current_signature_file_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)


class ReplicaClaim(ReplicaBase):
    __tablename__ = "claims"

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")


class ReplicaClaimRequirement(ReplicaBase):
    __tablename__ = "claim_requirements"

    id: Mapped[int] = mapped_column(_BigIntPK, primary_key=True)
    claim_id: Mapped[int] = mapped_column(ForeignKey("claims.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
