"""Pytest configuration and fixtures for Dialer Engine tests."""

from __future__ import annotations

import os
from datetime import datetime, timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio

# Set test environment
os.environ["DIALER_ENV"] = "test"

from dialer_engine.config import ApiSettings, JobSettings, Settings  # noqa: E402
from dialer_engine.db.base import ReplicaBase, utcnow  # noqa: E402
from dialer_engine.db.models import UserCallScoreModel  # noqa: E402
from dialer_engine.db.session import create_test_engine, get_test_session_factory  # noqa: E402
from dialer_engine.services.eligibility import RequirementExclusionPolicy  # noqa: E402
from dialer_engine.services.ground_truth import InMemoryGroundTruthReader  # noqa: E402
from dialer_engine.services.outcomes import OutcomeService  # noqa: E402
from dialer_engine.services.transition import QueueTransitionService  # noqa: E402

ADMIN_TOKEN = "test-admin-token"
CRON_SECRET = "test-cron-secret"


@pytest.fixture
def settings() -> Settings:
    """Settings with known secrets and small job limits."""
    return Settings(
        environment="test",
        debug=True,
        api=ApiSettings(admin_token=ADMIN_TOKEN, cron_secret=CRON_SECRET),
        jobs=JobSettings(default_batch_size=100, max_batch_size=500, time_budget_seconds=60.0),
    )


# ============================================================================
# Async Database Fixtures
# ============================================================================


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Primary store on in-memory SQLite, fresh per test."""
    engine = await create_test_engine()
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return get_test_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator:
    """Session for direct assertions against the primary store."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Primary store on a file-backed SQLite database.

    Unlike the in-memory engine, every session gets its own connection, so
    concurrent transactions really contend for the database lock.
    """
    engine = await create_test_engine(f"sqlite+aiosqlite:///{tmp_path}/dialer.db")
    yield get_test_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def replica_engine():
    """Ground-truth replica schema on its own in-memory SQLite."""
    engine = await create_test_engine(metadata=ReplicaBase.metadata)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def replica_session_factory(replica_engine):
    return get_test_session_factory(replica_engine)


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def ground_truth() -> InMemoryGroundTruthReader:
    return InMemoryGroundTruthReader(RequirementExclusionPolicy(), read_timeout=0.2)


@pytest_asyncio.fixture
async def transition_service(session_factory, ground_truth) -> QueueTransitionService:
    return QueueTransitionService(
        session_factory,
        ground_truth,
        dedup_window=timedelta(hours=1),
        store_timeout=5.0,
    )


@pytest_asyncio.fixture
async def outcome_service(transition_service) -> OutcomeService:
    return OutcomeService(transition_service)


def _score_seeder(factory):
    """Build a coroutine that inserts score rows directly, bypassing the transition service."""

    async def _seed(
        user_id: int,
        category: str | None = None,
        *,
        score: int = 0,
        is_active: bool | None = None,
        next_call_after: datetime | None = None,
        total_attempts: int = 0,
        created_at: datetime | None = None,
    ) -> UserCallScoreModel:
        row = UserCallScoreModel(
            user_id=user_id,
            current_score=score,
            current_queue_category=category,
            is_active=(category is not None) if is_active is None else is_active,
            total_attempts=total_attempts,
            successful_calls=0,
            next_call_after=next_call_after,
            created_at=created_at or utcnow(),
            updated_at=utcnow(),
        )
        async with factory() as session:
            async with session.begin():
                session.add(row)
        return row

    return _seed


@pytest_asyncio.fixture
async def seed_score(session_factory):
    return _score_seeder(session_factory)


@pytest_asyncio.fixture
async def seed_file_score(file_session_factory):
    return _score_seeder(file_session_factory)


@pytest_asyncio.fixture
async def fetch_score(session_factory):
    """Read the current score row for a user in a fresh session."""
    from dialer_engine.db.repositories import ScoreRepository

    async def _fetch(user_id: int) -> UserCallScoreModel | None:
        async with session_factory() as session:
            return await ScoreRepository(session).get_by_user_id(user_id)

    return _fetch


@pytest_asyncio.fixture
async def ledger(session_factory):
    """List conversions and audit rows for a user."""
    from dialer_engine.db.repositories import ConversionRepository, TransitionAuditRepository

    class _Ledger:
        async def conversions(self, user_id: int):
            async with session_factory() as session:
                return list(await ConversionRepository(session).list_for_user(user_id))

        async def audit(self, user_id: int):
            async with session_factory() as session:
                return list(await TransitionAuditRepository(session).list_for_user(user_id))

    return _Ledger()
