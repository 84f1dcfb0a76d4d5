"""Database Session Management for the Dialer Engine.

Provides:
- Async SQLAlchemy engines for the primary store and the ground-truth replica
- AsyncSession factories shared by the services
- Database initialization and table creation
"""
from __future__ import annotations

from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from dialer_engine.config import get_settings
from dialer_engine.db.base import Base


# Global engines and session factories (initialized lazily)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_replica_engine: AsyncEngine | None = None
_replica_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT works on SQLite.

    The driver's own implicit transaction handling breaks nested
    transactions, which the conversion insert relies on.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _create_engine(url: str, echo: bool) -> AsyncEngine:
    """Create an engine with pooling suited to the database type.

    Connection pooling:
        - SQLite (dev): shared connection, savepoint hooks installed
        - PostgreSQL (prod): pool_size=5, max_overflow=10, pool_timeout=30
    """
    if "sqlite" in url and "///" in url:
        db_path = url.split("///")[1]
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    if "sqlite" in url:
        engine = create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool if ":memory:" in url else None,
        )
        _enable_sqlite_savepoints(engine)
        return engine

    if "postgresql" in url or "postgres" in url:
        return create_async_engine(
            url,
            echo=echo,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
        )

    return create_async_engine(
        url,
        echo=echo,
        pool_size=3,
        max_overflow=5,
        pool_timeout=30,
        pool_pre_ping=True,
    )


def _make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Get or create the primary store engine."""
    global _engine

    if _engine is None:
        settings = get_settings()
        _engine = _create_engine(settings.database.url, settings.database.echo)

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the primary store session factory."""
    global _session_factory

    if _session_factory is None:
        _session_factory = _make_session_factory(get_engine())

    return _session_factory


def get_replica_engine() -> AsyncEngine:
    """Get or create the read-only ground-truth replica engine."""
    global _replica_engine

    if _replica_engine is None:
        settings = get_settings()
        _replica_engine = _create_engine(settings.replica.url, settings.replica.echo)

    return _replica_engine


def get_replica_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the replica session factory."""
    global _replica_session_factory

    if _replica_session_factory is None:
        _replica_session_factory = _make_session_factory(get_replica_engine())

    return _replica_session_factory


async def init_db() -> None:
    """Create the engine's tables. Safe to call multiple times.

    The replica schema is owned elsewhere and is not created here.
    """
    from dialer_engine.db.models import (  # noqa: F401
        UserCallScoreModel,
        ConversionModel,
        QueueTransitionAuditModel,
    )

    engine = get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections.

    Call this during application shutdown.
    """
    global _engine, _session_factory, _replica_engine, _replica_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None

    if _replica_engine is not None:
        await _replica_engine.dispose()
        _replica_engine = None
        _replica_session_factory = None


# Testing utilities
async def create_test_engine(
    url: str = "sqlite+aiosqlite:///:memory:",
    metadata=None,
) -> AsyncEngine:
    """Create a test database engine with in-memory SQLite.

    Args:
        url: Database URL (default: in-memory SQLite)
        metadata: MetaData to create (default: engine tables)

    Returns:
        Configured AsyncEngine for testing.
    """
    engine = _create_engine(url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync((metadata or Base.metadata).create_all)

    return engine


def get_test_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a test session factory.

    Args:
        engine: Test engine from create_test_engine()

    Returns:
        Session factory for testing.
    """
    return _make_session_factory(engine)
