"""Base Repository Pattern for the Dialer Engine.

Provides generic read and insert operations with async SQLAlchemy.
Updates live on the specialized repositories that are allowed to mutate;
the ledger and audit repositories are append-only and expose none.
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dialer_engine.db.base import Base

ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):
    """Generic base repository.

    Usage:
        class ConversionRepository(BaseRepository[ConversionModel]):
            def __init__(self, session: AsyncSession):
                super().__init__(ConversionModel, session)
    """

    def __init__(self, model: type[ModelT], session: AsyncSession):
        """Initialize repository with model class and session.

        Args:
            model: SQLAlchemy model class
            session: Async database session
        """
        self._model = model
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Get the current database session."""
        return self._session

    # ========================================================================
    # Basic Operations
    # ========================================================================

    async def get(self, id: UUID | str) -> ModelT | None:
        """Get a single record by primary key.

        Args:
            id: UUID or string primary key

        Returns:
            Model instance or None if not found
        """
        if isinstance(id, str):
            id = UUID(id)

        stmt = select(self._model).where(self._model.id == id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, obj_in: ModelT) -> ModelT:
        """Insert a new record and flush it so generated fields are populated.

        Args:
            obj_in: Model instance to create

        Returns:
            The same instance, now persistent
        """
        self._session.add(obj_in)
        await self._session.flush()
        return obj_in

    # ========================================================================
    # Query Helpers
    # ========================================================================

    async def count(self, **filters: Any) -> int:
        """Count records matching simple equality filters."""
        stmt = select(func.count()).select_from(self._model)
        for field, value in filters.items():
            if hasattr(self._model, field):
                stmt = stmt.where(getattr(self._model, field) == value)

        result = await self._session.execute(stmt)
        return result.scalar() or 0
