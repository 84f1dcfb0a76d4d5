"""Score store repository.

Mutating methods here are called only from QueueTransitionService, which
owns the transaction they run in.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from dialer_engine.db.base import utcnow
from dialer_engine.db.models.scores import UserCallScoreModel
from dialer_engine.db.repositories.base import BaseRepository


class ScoreRepository(BaseRepository[UserCallScoreModel]):
    """Repository for user call scores."""

    def __init__(self, session: AsyncSession):
        super().__init__(UserCallScoreModel, session)

    # ========================================================================
    # Lookups
    # ========================================================================

    async def get_by_user_id(
        self,
        user_id: int,
        *,
        for_update: bool = False,
    ) -> UserCallScoreModel | None:
        """Get the score row for a user.

        Args:
            user_id: External user ID
            for_update: Take a row lock for the rest of the transaction

        Returns:
            Score row or None
        """
        stmt = select(UserCallScoreModel).where(UserCallScoreModel.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()

        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_or_create(self, user_id: int) -> tuple[UserCallScoreModel, bool]:
        """Lock the user's row, inserting a fresh one if none exists.

        Returns:
            Tuple of (row, created)
        """
        row = await self.get_by_user_id(user_id, for_update=True)
        if row is not None:
            return row, False

        row = UserCallScoreModel(
            user_id=user_id,
            current_score=0,
            current_queue_category=None,
            is_active=False,
            total_attempts=0,
            successful_calls=0,
        )
        await self.create(row)
        return row, True

    async def existing_user_ids(self, user_ids: Sequence[int]) -> set[int]:
        """Return the subset of user_ids that already have a score row."""
        if not user_ids:
            return set()

        stmt = select(UserCallScoreModel.user_id).where(
            UserCallScoreModel.user_id.in_(list(user_ids))
        )
        result = await self._session.execute(stmt)
        return set(result.scalars().all())

    # ========================================================================
    # Batch Scans
    # ========================================================================

    async def scan_batch(
        self,
        *conditions: Any,
        after_user_id: int = 0,
        limit: int = 500,
    ) -> Sequence[UserCallScoreModel]:
        """Keyset-paginated scan over rows matching a predicate.

        Args:
            *conditions: SQLAlchemy filter expressions
            after_user_id: Only rows with a larger user_id
            limit: Maximum rows

        Returns:
            Rows ordered by user_id ascending
        """
        stmt = (
            select(UserCallScoreModel)
            .where(and_(UserCallScoreModel.user_id > after_user_id, *conditions))
            .order_by(UserCallScoreModel.user_id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def get_callable(
        self,
        category: str,
        *,
        now: datetime | None = None,
        limit: int = 50,
    ) -> Sequence[UserCallScoreModel]:
        """Users in a queue who may be called now, highest priority first."""
        now = now or utcnow()
        stmt = (
            select(UserCallScoreModel)
            .where(
                and_(
                    UserCallScoreModel.current_queue_category == category,
                    UserCallScoreModel.is_active.is_(True),
                    or_(
                        UserCallScoreModel.next_call_after.is_(None),
                        UserCallScoreModel.next_call_after <= now,
                    ),
                )
            )
            .order_by(UserCallScoreModel.current_score, UserCallScoreModel.user_id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def category_counts(self) -> dict[str | None, int]:
        """Active and inactive row counts per category."""
        stmt = (
            select(UserCallScoreModel.current_queue_category, func.count())
            .group_by(UserCallScoreModel.current_queue_category)
        )
        result = await self._session.execute(stmt)
        return {category: count for category, count in result.all()}

    # ========================================================================
    # Mutations (QueueTransitionService only)
    # ========================================================================

    async def apply_category(
        self,
        row: UserCallScoreModel,
        to_category: str | None,
        *,
        now: datetime,
    ) -> UserCallScoreModel:
        """Move a row to a category, keeping is_active consistent with it."""
        row.current_queue_category = to_category
        row.is_active = to_category is not None
        row.last_queue_check_at = now
        row.updated_at = now
        await self._session.flush()
        return row

    async def deactivate(self, row: UserCallScoreModel, *, now: datetime) -> UserCallScoreModel:
        row.is_active = False
        row.current_queue_category = None
        row.last_queue_check_at = now
        row.updated_at = now
        await self._session.flush()
        return row

    async def apply_outcome(
        self,
        row: UserCallScoreModel,
        *,
        outcome: str,
        new_score: int,
        successful: bool,
        next_call_after: datetime | None,
        now: datetime,
    ) -> UserCallScoreModel:
        """Record a call outcome's bookkeeping on the row."""
        row.current_score = new_score
        row.total_attempts = (row.total_attempts or 0) + 1
        if successful:
            row.successful_calls = (row.successful_calls or 0) + 1
        row.last_outcome = outcome
        row.last_call_at = now
        row.next_call_after = next_call_after
        row.updated_at = now
        await self._session.flush()
        return row

    async def apply_aging(
        self,
        row: UserCallScoreModel,
        *,
        delta: int,
        now: datetime,
    ) -> UserCallScoreModel:
        """Add the aging delta and stamp the row so it is aged once."""
        row.current_score = row.current_score + delta
        row.last_aged_at = now
        row.updated_at = now
        await self._session.flush()
        return row
