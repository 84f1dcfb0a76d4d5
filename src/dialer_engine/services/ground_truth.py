"""Ground-Truth Reader.

Read-only access to the canonical claim records: whether a user has signed
and which requirements are still pending. The production implementation
reads a replica that may lag or be unavailable; every failure is raised as
ReadFailure and never reported as "no signature" or "no requirements".
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy import and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dialer_engine.core.exceptions import (
    GroundTruthRecordMissing,
    GroundTruthTimeout,
    GroundTruthUnavailable,
    ReadFailure,
)
from dialer_engine.core.log import get_logger
from dialer_engine.core.retry import CircuitBreaker, CircuitOpen
from dialer_engine.db.base import as_utc
from dialer_engine.db.models.replica import ReplicaClaim, ReplicaClaimRequirement, ReplicaUser
from dialer_engine.services.eligibility import GroundTruthFacts, RequirementExclusionPolicy

log = get_logger(__name__)

T = TypeVar("T")


class GroundTruthReader(ABC):
    """Abstract ground-truth port.

    Implementations must apply the shared RequirementExclusionPolicy so
    discovery and transition agree on what is pending.
    """

    @abstractmethod
    async def get_signature_status(self, user_id: int) -> bool:
        """Whether the user has a current signature.

        Raises:
            ReadFailure: Ground truth could not be read
        """

    @abstractmethod
    async def get_pending_requirement_types(self, user_id: int) -> list[str]:
        """Types of valid pending requirements across the user's claims.

        Raises:
            ReadFailure: Ground truth could not be read
        """

    @abstractmethod
    async def list_recent_user_ids(
        self,
        since: datetime,
        *,
        after_user_id: int = 0,
        limit: int = 500,
    ) -> list[int]:
        """Enabled users created at or after `since`, ascending by id."""

    async def read_facts(self, user_id: int) -> GroundTruthFacts:
        """Read everything eligibility and discovery need for one user."""
        has_signature = await self.get_signature_status(user_id)
        pending = await self.get_pending_requirement_types(user_id)
        return GroundTruthFacts(has_signature=has_signature, pending_requirement_types=tuple(pending))

    def status(self) -> dict[str, Any]:
        return {"reader": type(self).__name__}


class ReplicaGroundTruthReader(GroundTruthReader):
    """Reads users, claims and requirements from the replica database.

    Every read is bounded by a timeout and guarded by a circuit breaker.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        exclusion_policy: RequirementExclusionPolicy,
        *,
        read_timeout: float = 5.0,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._policy = exclusion_policy
        self._read_timeout = read_timeout
        self._breaker = breaker or CircuitBreaker("ground_truth_replica")

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def _guarded(self, operation: str, user_id: int | None, func: Callable[[], Awaitable[T]]) -> T:
        """Run a replica read with timeout, circuit breaker and error mapping."""
        try:
            async with self._breaker:
                try:
                    return await asyncio.wait_for(func(), timeout=self._read_timeout)
                except GroundTruthRecordMissing as e:
                    # The replica answered; absence is data, not an outage
                    missing = e
        except CircuitOpen as e:
            raise GroundTruthUnavailable(
                "Ground-truth replica circuit is open",
                details={"operation": operation, "user_id": user_id, **self._breaker.status()},
                cause=e,
            ) from e
        except asyncio.TimeoutError as e:
            log.warning(
                "Ground-truth read timed out",
                operation=operation,
                user_id=user_id,
                timeout=self._read_timeout,
            )
            raise GroundTruthTimeout(
                f"Replica read '{operation}' exceeded {self._read_timeout}s",
                details={"operation": operation, "user_id": user_id},
                cause=e,
            ) from e
        except (SQLAlchemyError, OSError) as e:
            log.warning(
                "Ground-truth read failed",
                operation=operation,
                user_id=user_id,
                error=str(e),
            )
            raise GroundTruthUnavailable(
                f"Replica read '{operation}' failed",
                details={"operation": operation, "user_id": user_id},
                cause=e,
            ) from e

        raise missing

    async def get_signature_status(self, user_id: int) -> bool:
        async def _read() -> bool:
            async with self._session_factory() as session:
                stmt = select(ReplicaUser.current_signature_file_id).where(ReplicaUser.id == user_id)
                result = await session.execute(stmt)
                row = result.one_or_none()
            if row is None:
                raise GroundTruthRecordMissing(
                    f"User {user_id} not found in ground truth",
                    details={"user_id": user_id},
                )
            return row[0] is not None

        return await self._guarded("get_signature_status", user_id, _read)

    async def get_pending_requirement_types(self, user_id: int) -> list[str]:
        async def _read() -> list[str]:
            async with self._session_factory() as session:
                exists = await session.execute(select(ReplicaUser.id).where(ReplicaUser.id == user_id))
                if exists.scalar_one_or_none() is None:
                    raise GroundTruthRecordMissing(
                        f"User {user_id} not found in ground truth",
                        details={"user_id": user_id},
                    )

                stmt = (
                    select(
                        ReplicaClaimRequirement.type,
                        ReplicaClaimRequirement.reason,
                        ReplicaClaimRequirement.status,
                    )
                    .join(ReplicaClaim, ReplicaClaim.id == ReplicaClaimRequirement.claim_id)
                    .where(ReplicaClaim.user_id == user_id)
                    .order_by(ReplicaClaimRequirement.id)
                )
                result = await session.execute(stmt)
                rows = result.all()

            return self._policy.filter(
                (req_type, reason) for req_type, reason, status in rows if self._policy.is_pending(status)
            )

        return await self._guarded("get_pending_requirement_types", user_id, _read)

    async def list_recent_user_ids(
        self,
        since: datetime,
        *,
        after_user_id: int = 0,
        limit: int = 500,
    ) -> list[int]:
        async def _read() -> list[int]:
            async with self._session_factory() as session:
                stmt = (
                    select(ReplicaUser.id)
                    .where(
                        and_(
                            ReplicaUser.id > after_user_id,
                            ReplicaUser.created_at >= since,
                            ReplicaUser.is_enabled.is_(True),
                        )
                    )
                    .order_by(ReplicaUser.id)
                    .limit(limit)
                )
                result = await session.execute(stmt)
                return list(result.scalars().all())

        return await self._guarded("list_recent_user_ids", None, _read)

    def status(self) -> dict[str, Any]:
        return {
            "reader": type(self).__name__,
            "read_timeout": self._read_timeout,
            "circuit": self._breaker.status(),
        }


@dataclass
class _UserRecord:
    has_signature: bool = False
    requirements: list[tuple[str, str | None, str]] = field(default_factory=list)
    created_at: datetime | None = None
    is_enabled: bool = True


class InMemoryGroundTruthReader(GroundTruthReader):
    """In-memory ground truth for development and testing.

    Failures can be injected per user to exercise the ReadFailure paths.
    """

    def __init__(
        self,
        exclusion_policy: RequirementExclusionPolicy | None = None,
        *,
        read_timeout: float = 5.0,
    ) -> None:
        self._policy = exclusion_policy or RequirementExclusionPolicy()
        self._read_timeout = read_timeout
        self._users: dict[int, _UserRecord] = {}
        self._failures: dict[int, ReadFailure] = {}
        self._delays: dict[int, float] = {}
        self.reads: list[tuple[str, int]] = []

    def add_user(
        self,
        user_id: int,
        *,
        has_signature: bool = False,
        requirements: list[tuple[str, str | None] | tuple[str, str | None, str]] | None = None,
        created_at: datetime | None = None,
        is_enabled: bool = True,
    ) -> None:
        """Register a user. Requirements are (type, reason[, status]) tuples."""
        normalized = [
            (r[0], r[1], r[2] if len(r) > 2 else "PENDING")  # type: ignore[misc]
            for r in (requirements or [])
        ]
        self._users[user_id] = _UserRecord(
            has_signature=has_signature,
            requirements=normalized,
            created_at=created_at,
            is_enabled=is_enabled,
        )

    def set_signature(self, user_id: int, has_signature: bool) -> None:
        self._users.setdefault(user_id, _UserRecord()).has_signature = has_signature

    def set_requirements(self, user_id: int, requirements: list[tuple[str, str | None]]) -> None:
        self._users.setdefault(user_id, _UserRecord()).requirements = [
            (t, reason, "PENDING") for t, reason in requirements
        ]

    def fail_for(self, user_id: int, error: ReadFailure | None = None) -> None:
        """Make every read for user_id raise."""
        self._failures[user_id] = error or GroundTruthUnavailable(
            "Simulated replica outage", details={"user_id": user_id}
        )

    def delay_for(self, user_id: int, seconds: float) -> None:
        """Make reads for user_id take `seconds`, subject to the read timeout."""
        self._delays[user_id] = seconds

    def clear_failures(self) -> None:
        self._failures.clear()
        self._delays.clear()

    async def _lookup(self, operation: str, user_id: int) -> _UserRecord:
        self.reads.append((operation, user_id))
        if user_id in self._failures:
            raise self._failures[user_id]
        if user_id in self._delays:
            try:
                await asyncio.wait_for(asyncio.sleep(self._delays[user_id]), timeout=self._read_timeout)
            except asyncio.TimeoutError as e:
                raise GroundTruthTimeout(
                    f"Read '{operation}' exceeded {self._read_timeout}s",
                    details={"operation": operation, "user_id": user_id},
                    cause=e,
                ) from e
        record = self._users.get(user_id)
        if record is None:
            raise GroundTruthRecordMissing(
                f"User {user_id} not found in ground truth",
                details={"user_id": user_id},
            )
        return record

    async def get_signature_status(self, user_id: int) -> bool:
        record = await self._lookup("get_signature_status", user_id)
        return record.has_signature

    async def get_pending_requirement_types(self, user_id: int) -> list[str]:
        record = await self._lookup("get_pending_requirement_types", user_id)
        return self._policy.filter(
            (t, reason) for t, reason, status in record.requirements if self._policy.is_pending(status)
        )

    async def list_recent_user_ids(
        self,
        since: datetime,
        *,
        after_user_id: int = 0,
        limit: int = 500,
    ) -> list[int]:
        ids = [
            user_id
            for user_id, record in self._users.items()
            if user_id > after_user_id
            and record.is_enabled
            and record.created_at is not None
            and as_utc(record.created_at) >= as_utc(since)
        ]
        return sorted(ids)[:limit]
