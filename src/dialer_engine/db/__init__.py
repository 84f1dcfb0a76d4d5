"""Database module for the Dialer Engine.

Provides:
- SQLAlchemy ORM models for scores, conversions and the audit trail
- Read-only models for the ground-truth replica
- Async session management with dependency injection
- Repository pattern for data access
"""
from dialer_engine.db.base import (
    Base,
    ReplicaBase,
    UUIDMixin,
    TimestampMixin,
    utcnow,
    as_utc,
)
from dialer_engine.db.session import (
    get_engine,
    get_session_factory,
    get_replica_engine,
    get_replica_session_factory,
    init_db,
    close_db,
    create_test_engine,
    get_test_session_factory,
)

__all__ = [
    # Base and mixins
    "Base",
    "ReplicaBase",
    "UUIDMixin",
    "TimestampMixin",
    "utcnow",
    "as_utc",
    # Session management
    "get_engine",
    "get_session_factory",
    "get_replica_engine",
    "get_replica_session_factory",
    "init_db",
    "close_db",
    "create_test_engine",
    "get_test_session_factory",
]
