"""Dependency Injection for the Dialer Engine.

One QueueTransitionService is built per process and shared by every entry
point (outcome ingestion, jobs, admin endpoints and the CLI). The container
lives on app.state; tests replace it through dependency overrides.

Usage:
    from dialer_engine.dependencies import TransitionServiceDep

    @router.post("/endpoint")
    async def handler(service: TransitionServiceDep):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Annotated, AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dialer_engine.config import Settings, get_settings
from dialer_engine.core.retry import CircuitBreaker
from dialer_engine.db.session import get_replica_session_factory, get_session_factory
from dialer_engine.services.eligibility import RequirementExclusionPolicy
from dialer_engine.services.ground_truth import GroundTruthReader, ReplicaGroundTruthReader
from dialer_engine.services.jobs import ReconciliationJob, build_job
from dialer_engine.services.leak_monitor import ConversionLeakMonitor
from dialer_engine.services.outcomes import OutcomeService
from dialer_engine.services.scoring import ScoringPolicy
from dialer_engine.services.transition import QueueTransitionService


# =============================================================================
# Container
# =============================================================================


@dataclass
class EngineContainer:
    """Process-wide service graph."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    ground_truth: GroundTruthReader
    transitions: QueueTransitionService
    outcomes: OutcomeService
    leak_monitor: ConversionLeakMonitor

    def job(self, name: str, **overrides) -> ReconciliationJob:
        """Build a discovery / backfill job bound to the shared services."""
        return build_job(name, self.transitions, self.ground_truth, self.settings, **overrides)


def build_container(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    ground_truth: GroundTruthReader | None = None,
) -> EngineContainer:
    """Wire the services from settings.

    Args:
        settings: Application settings (default: get_settings())
        session_factory: Primary store sessions (default: configured engine)
        ground_truth: Ground-truth reader (default: replica reader)

    Returns:
        EngineContainer
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()

    if ground_truth is None:
        ground_truth = ReplicaGroundTruthReader(
            get_replica_session_factory(),
            RequirementExclusionPolicy.from_settings(settings),
            read_timeout=settings.replica.read_timeout_seconds,
            breaker=CircuitBreaker(
                "ground_truth_replica",
                failure_threshold=settings.replica.failure_threshold,
                reset_timeout=settings.replica.reset_timeout_seconds,
            ),
        )

    transitions = QueueTransitionService(
        session_factory,
        ground_truth,
        dedup_window=timedelta(minutes=settings.conversions.dedup_window_minutes),
        store_timeout=settings.database.store_timeout_seconds,
        max_concurrency=settings.jobs.max_concurrency,
    )

    return EngineContainer(
        settings=settings,
        session_factory=session_factory,
        ground_truth=ground_truth,
        transitions=transitions,
        outcomes=OutcomeService(transitions, ScoringPolicy.from_settings(settings)),
        leak_monitor=ConversionLeakMonitor(
            transitions,
            match_tolerance=timedelta(minutes=settings.conversions.leak_match_tolerance_minutes),
            default_lookback=timedelta(minutes=settings.conversions.leak_lookback_minutes),
        ),
    )


# =============================================================================
# FastAPI Dependencies
# =============================================================================


def get_container(request: Request) -> EngineContainer:
    """Container built by the application lifespan."""
    container = getattr(request.app.state, "container", None)
    if container is None:
        container = build_container()
        request.app.state.container = container
    return container


ContainerDep = Annotated[EngineContainer, Depends(get_container)]


def get_app_settings(container: ContainerDep) -> Settings:
    return container.settings


SettingsDep = Annotated[Settings, Depends(get_app_settings)]


async def get_session(container: ContainerDep) -> AsyncGenerator[AsyncSession, None]:
    """Read-side session for query endpoints."""
    async with container.session_factory() as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_session)]


def get_transition_service(container: ContainerDep) -> QueueTransitionService:
    return container.transitions


TransitionServiceDep = Annotated[QueueTransitionService, Depends(get_transition_service)]


def get_outcome_service(container: ContainerDep) -> OutcomeService:
    return container.outcomes


OutcomeServiceDep = Annotated[OutcomeService, Depends(get_outcome_service)]


def get_leak_monitor(container: ContainerDep) -> ConversionLeakMonitor:
    return container.leak_monitor


LeakMonitorDep = Annotated[ConversionLeakMonitor, Depends(get_leak_monitor)]
