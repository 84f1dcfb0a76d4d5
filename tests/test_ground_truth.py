"""Tests for the ground-truth readers."""

from __future__ import annotations

from datetime import timedelta

import pytest
import pytest_asyncio

from dialer_engine.core.exceptions import (
    GroundTruthRecordMissing,
    GroundTruthTimeout,
    GroundTruthUnavailable,
    ReadFailure,
)
from dialer_engine.core.retry import CircuitBreaker, CircuitOpen, CircuitState
from dialer_engine.db.base import utcnow
from dialer_engine.db.models.replica import ReplicaClaim, ReplicaClaimRequirement, ReplicaUser
from dialer_engine.services.eligibility import RequirementExclusionPolicy
from dialer_engine.services.ground_truth import InMemoryGroundTruthReader, ReplicaGroundTruthReader


@pytest_asyncio.fixture
async def seeded_replica(replica_session_factory):
    """Three users: signed with pending work, unsigned, and an old disabled one."""
    now = utcnow()
    async with replica_session_factory() as session:
        async with session.begin():
            session.add_all(
                [
                    ReplicaUser(id=1, is_enabled=True, current_signature_file_id=900, created_at=now),
                    ReplicaUser(id=2, is_enabled=True, current_signature_file_id=None, created_at=now),
                    ReplicaUser(
                        id=3,
                        is_enabled=False,
                        current_signature_file_id=None,
                        created_at=now - timedelta(days=10),
                    ),
                ]
            )
            await session.flush()
            session.add(ReplicaClaim(id=10, user_id=1, status="active"))
            await session.flush()
            session.add_all(
                [
                    ReplicaClaimRequirement(claim_id=10, type="bank_statement", status="PENDING"),
                    ReplicaClaimRequirement(claim_id=10, type="signature", status="PENDING"),
                    ReplicaClaimRequirement(
                        claim_id=10,
                        type="id_document",
                        status="PENDING",
                        reason="Base requirement for claim.",
                    ),
                    ReplicaClaimRequirement(claim_id=10, type="payslip", status="COMPLETED"),
                ]
            )
    return replica_session_factory


@pytest.fixture
def breaker():
    return CircuitBreaker("test_replica", failure_threshold=2, reset_timeout=60.0)


class TestReplicaGroundTruthReader:
    @pytest.mark.asyncio
    async def test_signature_status(self, seeded_replica, breaker):
        reader = ReplicaGroundTruthReader(seeded_replica, RequirementExclusionPolicy(), breaker=breaker)

        assert await reader.get_signature_status(1) is True
        assert await reader.get_signature_status(2) is False

    @pytest.mark.asyncio
    async def test_pending_requirements_apply_exclusions(self, seeded_replica, breaker):
        reader = ReplicaGroundTruthReader(seeded_replica, RequirementExclusionPolicy(), breaker=breaker)

        assert await reader.get_pending_requirement_types(1) == ["bank_statement"]
        assert await reader.get_pending_requirement_types(2) == []

    @pytest.mark.asyncio
    async def test_read_facts(self, seeded_replica, breaker):
        reader = ReplicaGroundTruthReader(seeded_replica, RequirementExclusionPolicy(), breaker=breaker)

        facts = await reader.read_facts(1)

        assert facts.has_signature is True
        assert facts.pending_count == 1

    @pytest.mark.asyncio
    async def test_missing_user_is_a_read_failure(self, seeded_replica, breaker):
        """Absence is never reported as "no signature"."""
        reader = ReplicaGroundTruthReader(seeded_replica, RequirementExclusionPolicy(), breaker=breaker)

        with pytest.raises(GroundTruthRecordMissing):
            await reader.get_signature_status(999)
        with pytest.raises(ReadFailure):
            await reader.get_pending_requirement_types(999)

        # The replica answered, so the circuit stays closed
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_list_recent_user_ids(self, seeded_replica, breaker):
        reader = ReplicaGroundTruthReader(seeded_replica, RequirementExclusionPolicy(), breaker=breaker)
        since = utcnow() - timedelta(days=1)

        assert await reader.list_recent_user_ids(since) == [1, 2]
        assert await reader.list_recent_user_ids(since, after_user_id=1) == [2]
        assert await reader.list_recent_user_ids(since, limit=1) == [1]

    @pytest.mark.asyncio
    async def test_store_errors_open_the_circuit(self, session_factory, breaker):
        """A session factory without the replica tables fails every read."""
        reader = ReplicaGroundTruthReader(session_factory, RequirementExclusionPolicy(), breaker=breaker)

        for _ in range(2):
            with pytest.raises(GroundTruthUnavailable):
                await reader.get_signature_status(1)

        assert breaker.state == CircuitState.OPEN

        with pytest.raises(GroundTruthUnavailable, match="circuit is open"):
            await reader.get_signature_status(1)

        status = reader.status()
        assert status["circuit"]["state"] == "open"

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_reads_until_reset(self, seeded_replica, breaker):
        reader = ReplicaGroundTruthReader(seeded_replica, RequirementExclusionPolicy(), breaker=breaker)
        breaker.record_failure()
        breaker.record_failure()

        with pytest.raises(GroundTruthUnavailable) as exc_info:
            await reader.get_signature_status(1)

        assert isinstance(exc_info.value.__cause__, CircuitOpen)
        assert exc_info.value.details["state"] == "open"

        breaker.reset()
        assert await reader.get_signature_status(1) is True
        assert breaker.state == CircuitState.CLOSED


class TestInMemoryGroundTruthReader:
    @pytest.mark.asyncio
    async def test_requirements_filtered(self):
        reader = InMemoryGroundTruthReader()
        reader.add_user(
            5,
            has_signature=True,
            requirements=[
                ("bank_statement", None),
                ("cfa", None),
                ("payslip", None, "COMPLETED"),
            ],
        )

        assert await reader.get_pending_requirement_types(5) == ["bank_statement"]

    @pytest.mark.asyncio
    async def test_injected_failure(self):
        reader = InMemoryGroundTruthReader()
        reader.add_user(5, has_signature=True)
        reader.fail_for(5)

        with pytest.raises(GroundTruthUnavailable):
            await reader.read_facts(5)

        reader.clear_failures()
        assert (await reader.read_facts(5)).has_signature is True

    @pytest.mark.asyncio
    async def test_slow_read_times_out(self):
        reader = InMemoryGroundTruthReader(read_timeout=0.05)
        reader.add_user(5, has_signature=True)
        reader.delay_for(5, 1.0)

        with pytest.raises(GroundTruthTimeout):
            await reader.get_signature_status(5)

    @pytest.mark.asyncio
    async def test_unknown_user(self):
        reader = InMemoryGroundTruthReader()

        with pytest.raises(GroundTruthRecordMissing):
            await reader.get_signature_status(1)
