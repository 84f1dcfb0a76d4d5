"""Queue transition audit repository (append-only)."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dialer_engine.db.models.audit import QueueTransitionAuditModel
from dialer_engine.db.repositories.base import BaseRepository


class TransitionAuditRepository(BaseRepository[QueueTransitionAuditModel]):
    """Repository for the queue transition audit trail."""

    def __init__(self, session: AsyncSession):
        super().__init__(QueueTransitionAuditModel, session)

    async def append(
        self,
        *,
        user_id: int,
        from_category: str | None,
        to_category: str | None,
        reason: str,
        source: str,
        timestamp: datetime,
        agent_id: str | None = None,
        conversion_id: UUID | None = None,
        conversion_logged: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> QueueTransitionAuditModel:
        """Write one audit row."""
        entry = QueueTransitionAuditModel(
            user_id=user_id,
            from_queue_category=from_category,
            to_queue_category=to_category,
            reason=reason,
            source=source,
            agent_id=agent_id,
            conversion_id=conversion_id,
            conversion_logged=conversion_logged,
            timestamp=timestamp,
            meta=metadata or {},
        )
        return await self.create(entry)

    async def list_for_user(
        self,
        user_id: int,
        *,
        limit: int = 100,
    ) -> Sequence[QueueTransitionAuditModel]:
        """Audit history for a user, newest first."""
        stmt = (
            select(QueueTransitionAuditModel)
            .where(QueueTransitionAuditModel.user_id == user_id)
            .order_by(QueueTransitionAuditModel.timestamp.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def find_unlogged_exits(
        self,
        since: datetime,
        from_categories: Sequence[str],
        *,
        until: datetime | None = None,
        limit: int = 500,
    ) -> Sequence[QueueTransitionAuditModel]:
        """Queue exits without a logged conversion, oldest first.

        Args:
            since: Lower bound on audit timestamp
            from_categories: Categories whose exits can be conversions
            until: Optional upper bound on audit timestamp
            limit: Maximum rows
        """
        conditions = [
            QueueTransitionAuditModel.conversion_logged.is_(False),
            QueueTransitionAuditModel.timestamp >= since,
            QueueTransitionAuditModel.from_queue_category.in_(list(from_categories)),
        ]
        if until is not None:
            conditions.append(QueueTransitionAuditModel.timestamp <= until)

        stmt = (
            select(QueueTransitionAuditModel)
            .where(and_(*conditions))
            .order_by(QueueTransitionAuditModel.timestamp)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def capture_stats(
        self,
        since: datetime,
        from_categories: Sequence[str],
    ) -> dict[str, int]:
        """Count queue exits and how many of them logged a conversion."""
        stmt = select(
            func.count(),
            func.coalesce(
                func.sum(case((QueueTransitionAuditModel.conversion_logged.is_(True), 1), else_=0)),
                0,
            ),
        ).where(
            and_(
                QueueTransitionAuditModel.timestamp >= since,
                QueueTransitionAuditModel.from_queue_category.in_(list(from_categories)),
            )
        )
        result = await self._session.execute(stmt)
        total, logged = result.one()
        return {"queue_exits": int(total or 0), "conversions_logged": int(logged or 0)}
