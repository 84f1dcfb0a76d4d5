"""Conversion ledger repository.

Append-only. The dedup rule is enforced here so no caller can bypass it.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dialer_engine.db.models.conversions import ConversionModel
from dialer_engine.db.repositories.base import BaseRepository


class ConversionRepository(BaseRepository[ConversionModel]):
    """Repository for the conversion ledger."""

    def __init__(self, session: AsyncSession, dedup_window: timedelta = timedelta(hours=1)):
        super().__init__(ConversionModel, session)
        self._dedup_window = dedup_window

    @property
    def dedup_window(self) -> timedelta:
        return self._dedup_window

    async def find_duplicate(
        self,
        user_id: int,
        conversion_type: str,
        converted_at: datetime,
    ) -> ConversionModel | None:
        """Find a conversion of the same type within the dedup window of converted_at."""
        stmt = (
            select(ConversionModel)
            .where(
                and_(
                    ConversionModel.user_id == user_id,
                    ConversionModel.conversion_type == conversion_type,
                    ConversionModel.converted_at > converted_at - self._dedup_window,
                    ConversionModel.converted_at < converted_at + self._dedup_window,
                )
            )
            .order_by(ConversionModel.converted_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record(self, conversion: ConversionModel) -> ConversionModel | None:
        """Insert a conversion unless a duplicate exists.

        Must run inside the same transaction that holds the user's score
        row lock, so concurrent writers for one user serialize here.

        Args:
            conversion: Unsaved conversion row (converted_at must be set)

        Returns:
            The persisted row, or None when suppressed as a duplicate
        """
        duplicate = await self.find_duplicate(
            conversion.user_id,
            conversion.conversion_type,
            conversion.converted_at,
        )
        if duplicate is not None:
            return None

        return await self.create(conversion)

    async def list_for_user(self, user_id: int, *, limit: int = 100) -> Sequence[ConversionModel]:
        """Conversions for a user, newest first."""
        stmt = (
            select(ConversionModel)
            .where(ConversionModel.user_id == user_id)
            .order_by(ConversionModel.converted_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def exists_near(self, user_id: int, at: datetime, tolerance: timedelta) -> bool:
        """Check for any conversion for the user within +/- tolerance of a timestamp."""
        stmt = select(func.count()).select_from(ConversionModel).where(
            and_(
                ConversionModel.user_id == user_id,
                ConversionModel.converted_at >= at - tolerance,
                ConversionModel.converted_at <= at + tolerance,
            )
        )
        result = await self._session.execute(stmt)
        return (result.scalar() or 0) > 0

    async def count_since(self, since: datetime) -> int:
        stmt = select(func.count()).select_from(ConversionModel).where(
            ConversionModel.converted_at >= since
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0
