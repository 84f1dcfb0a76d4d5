"""Tests for the discovery and backfill jobs."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from itertools import count

import pytest

from dialer_engine.core.exceptions import ValidationError
from dialer_engine.db.base import utcnow
from dialer_engine.db.repositories import ConversionRepository, ScoreRepository
from dialer_engine.services.jobs import (
    JOBS,
    JobRequest,
    NewRequirementsDiscoveryJob,
    NewUsersDiscoveryJob,
    NullQueueBackfillJob,
    OutstandingRequirementsCleanupJob,
    ScoreAgingJob,
    SignatureConversionCleanupJob,
    available_jobs,
    build_job,
)
from dialer_engine.services.scoring import ScoreAgingPolicy
from dialer_engine.services.transition import QueueTransitionService

UNSIGNED = "unsigned_users"
OUTSTANDING = "outstanding_requirements"


def _ticking_clock(step: float):
    """Monotonic clock that advances `step` seconds per call."""
    ticks = count()
    return lambda: next(ticks) * step


class TestNullQueueBackfill:
    @pytest.mark.asyncio
    async def test_backfill(self, transition_service, ground_truth, seed_score, fetch_score, ledger):
        await seed_score(1, None, is_active=True)
        await seed_score(2, None, is_active=True)
        await seed_score(3, None, is_active=True)
        await seed_score(4, UNSIGNED)
        ground_truth.add_user(1, has_signature=False)
        ground_truth.add_user(2, has_signature=True)
        ground_truth.add_user(3, has_signature=True)
        ground_truth.fail_for(3)

        job = NullQueueBackfillJob(transition_service, ground_truth)
        result = await job.run()

        assert result.processed == 3
        assert result.updated == 2
        assert len(result.errors) == 1
        assert result.errors[0].user_id == 3
        assert result.errors[0].error_code == "GROUND_TRUTH_UNAVAILABLE"
        assert result.next_offset is None

        assert (await fetch_score(1)).current_queue_category == UNSIGNED
        deactivated = await fetch_score(2)
        assert deactivated.is_active is False
        assert deactivated.current_queue_category is None
        # Unreadable users are left alone
        assert (await fetch_score(3)).is_active is True

        audit = await ledger.audit(1)
        assert audit[0].source == "null_queue_backfill"
        assert audit[0].meta["job"] == "null_queue_backfill"

    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(self, transition_service, ground_truth, seed_score, ledger):
        await seed_score(1, None, is_active=True)
        await seed_score(2, None, is_active=True)
        ground_truth.add_user(1, has_signature=False)
        ground_truth.add_user(2, has_signature=True, requirements=[("bank_statement", None)])

        job = NullQueueBackfillJob(transition_service, ground_truth)
        first = await job.run()
        second = await job.run()

        assert first.updated == 2
        assert second.processed == 0
        assert second.updated == 0
        assert len(await ledger.audit(1)) == 1
        assert len(await ledger.audit(2)) == 1

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, transition_service, ground_truth, seed_score, fetch_score, ledger):
        await seed_score(1, None, is_active=True)
        await seed_score(2, None, is_active=True)
        ground_truth.add_user(1, has_signature=False)
        ground_truth.add_user(2, has_signature=True)

        job = NullQueueBackfillJob(transition_service, ground_truth)
        result = await job.run(JobRequest(dry_run=True))

        assert result.dry_run
        assert result.updated == 2
        actions = {c.user_id: c.to_dict() for c in result.changes}
        assert actions[1]["to_category"] == UNSIGNED
        assert actions[2]["action"] == "deactivate"

        assert (await fetch_score(1)).current_queue_category is None
        assert (await fetch_score(2)).is_active is True
        assert await ledger.audit(1) == []
        assert await ledger.audit(2) == []

    @pytest.mark.asyncio
    async def test_keyset_pagination(self, transition_service, ground_truth, seed_score):
        for user_id in range(1, 6):
            await seed_score(user_id, None, is_active=True)
            ground_truth.add_user(user_id, has_signature=False)

        job = NullQueueBackfillJob(transition_service, ground_truth)

        first = await job.run(JobRequest(batch_size=2))
        assert first.processed == 2
        assert first.next_offset == 2

        second = await job.run(JobRequest(offset=first.next_offset, batch_size=2))
        assert second.processed == 2
        assert second.next_offset == 4

        third = await job.run(JobRequest(offset=second.next_offset, batch_size=2))
        assert third.processed == 1
        assert third.next_offset is None

    @pytest.mark.asyncio
    async def test_time_budget(self, transition_service, ground_truth, seed_score, fetch_score):
        for user_id in (1, 2, 3):
            await seed_score(user_id, None, is_active=True)
            ground_truth.add_user(user_id, has_signature=False)

        job = NullQueueBackfillJob(
            transition_service,
            ground_truth,
            time_budget_seconds=15.0,
            clock=_ticking_clock(10.0),
        )
        result = await job.run()

        assert result.budget_exhausted
        assert result.processed == 1
        assert result.next_offset == 1
        assert (await fetch_score(2)).current_queue_category is None

        resumed = await NullQueueBackfillJob(transition_service, ground_truth).run(
            JobRequest(offset=result.next_offset)
        )
        assert resumed.processed == 2

    @pytest.mark.asyncio
    async def test_invalid_requests(self, transition_service, ground_truth):
        job = NullQueueBackfillJob(transition_service, ground_truth)

        with pytest.raises(ValidationError):
            await job.run(JobRequest(batch_size=0))
        with pytest.raises(ValidationError):
            await job.run(JobRequest(offset=-1))


class TestCleanupJobs:
    @pytest.mark.asyncio
    async def test_signature_cleanup(self, transition_service, ground_truth, seed_score, fetch_score, ledger):
        await seed_score(10, UNSIGNED)
        await seed_score(11, UNSIGNED)
        await seed_score(12, UNSIGNED)
        ground_truth.add_user(10, has_signature=True)
        ground_truth.add_user(11, has_signature=True, requirements=[("bank_statement", None)])
        ground_truth.add_user(12, has_signature=False)

        result = await SignatureConversionCleanupJob(transition_service, ground_truth).run()

        assert result.processed == 3
        assert result.updated == 2
        assert result.skipped == 1
        assert result.conversions_logged == 2

        assert (await fetch_score(10)).current_queue_category is None
        assert (await fetch_score(11)).current_queue_category == OUTSTANDING
        assert (await fetch_score(12)).current_queue_category == UNSIGNED

        conversions = await ledger.conversions(11)
        assert conversions[0].conversion_type == "signature_obtained"
        assert conversions[0].source == "signature_cleanup"

    @pytest.mark.asyncio
    async def test_outstanding_requirements_cleanup(
        self, transition_service, ground_truth, seed_score, fetch_score, ledger
    ):
        await seed_score(20, OUTSTANDING)
        await seed_score(21, OUTSTANDING)
        ground_truth.add_user(20, has_signature=True, requirements=[("vehicle_registration", None)])
        ground_truth.add_user(21, has_signature=True, requirements=[("bank_statement", None)])

        result = await OutstandingRequirementsCleanupJob(transition_service, ground_truth).run()

        assert result.updated == 1
        assert result.skipped == 1
        assert (await fetch_score(20)).is_active is False
        assert (await ledger.conversions(20))[0].conversion_type == "requirements_completed"
        assert (await fetch_score(21)).current_queue_category == OUTSTANDING


class TestNewUsersDiscovery:
    @pytest.mark.asyncio
    async def test_discovers_recent_users(self, transition_service, ground_truth, seed_score, fetch_score, ledger):
        now = utcnow()
        ground_truth.add_user(30, has_signature=False, created_at=now)
        ground_truth.add_user(31, has_signature=True, requirements=[("bank_statement", None)], created_at=now)
        ground_truth.add_user(32, has_signature=True, created_at=now)
        ground_truth.add_user(33, has_signature=False, created_at=now)
        ground_truth.add_user(34, has_signature=False, created_at=now - timedelta(days=3))
        ground_truth.add_user(35, has_signature=False, created_at=now, is_enabled=False)
        await seed_score(33, UNSIGNED)

        result = await NewUsersDiscoveryJob(transition_service, ground_truth).run()

        assert result.processed == 4
        assert result.updated == 2
        assert result.skipped == 2

        row = await fetch_score(30)
        assert row.current_queue_category == UNSIGNED
        assert row.is_active is True
        assert (await fetch_score(31)).current_queue_category == OUTSTANDING
        assert await fetch_score(32) is None
        assert await fetch_score(34) is None

        audit = await ledger.audit(30)
        assert audit[0].source == "new_users_discovery"
        assert audit[0].meta["scoreRowCreated"] is True

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, transition_service, ground_truth, ledger):
        ground_truth.add_user(40, has_signature=False, created_at=utcnow())
        job = NewUsersDiscoveryJob(transition_service, ground_truth)

        await job.run()
        second = await job.run()

        assert second.updated == 0
        assert len(await ledger.audit(40)) == 1


class TestNewRequirementsDiscovery:
    @pytest.mark.asyncio
    async def test_requeues_converted_user_with_new_requirements(
        self, transition_service, ground_truth, seed_score, fetch_score, ledger
    ):
        await seed_score(900, OUTSTANDING)
        ground_truth.add_user(900, has_signature=True)
        await OutstandingRequirementsCleanupJob(transition_service, ground_truth).run()
        assert (await fetch_score(900)).is_active is False

        ground_truth.set_requirements(900, [("id_document", "Please upload ID")])
        result = await NewRequirementsDiscoveryJob(transition_service, ground_truth).run()

        assert result.updated == 1
        row = await fetch_score(900)
        assert row.current_queue_category == OUTSTANDING
        assert row.is_active is True

        audit = await ledger.audit(900)
        assert audit[0].source == "new_requirements_discovery"
        assert audit[0].from_queue_category is None
        assert len(await ledger.conversions(900)) == 1

    @pytest.mark.asyncio
    async def test_only_signed_users_with_pending_work(self, transition_service, ground_truth, seed_score, fetch_score):
        await seed_score(901, None)
        await seed_score(902, None, score=200)
        await seed_score(903, None)
        await seed_score(904, None)
        ground_truth.add_user(901, has_signature=False, requirements=[("bank_statement", None)])
        ground_truth.add_user(902, has_signature=True, requirements=[("bank_statement", None)])
        ground_truth.add_user(903, has_signature=True)
        ground_truth.add_user(904, has_signature=True, requirements=[("cfa", None)])

        result = await NewRequirementsDiscoveryJob(transition_service, ground_truth).run()

        # Frozen rows are never scanned
        assert result.processed == 3
        assert result.updated == 0
        assert result.skipped == 3
        for user_id in (901, 902, 903, 904):
            assert (await fetch_score(user_id)).current_queue_category is None

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, transition_service, ground_truth, seed_score, ledger):
        await seed_score(905, None)
        ground_truth.add_user(905, has_signature=True, requirements=[("bank_statement", None)])
        job = NewRequirementsDiscoveryJob(transition_service, ground_truth)

        first = await job.run()
        second = await job.run()

        assert first.updated == 1
        assert second.processed == 0
        assert len(await ledger.audit(905)) == 1


class TestScoreAging:
    @pytest.mark.asyncio
    async def test_ages_old_active_rows_once(self, transition_service, ground_truth, seed_score, fetch_score):
        old = utcnow() - timedelta(days=8)
        await seed_score(1, UNSIGNED, score=5, created_at=old)
        await seed_score(2, UNSIGNED, score=200, created_at=old)
        await seed_score(3, UNSIGNED, score=0, created_at=utcnow() - timedelta(days=2))
        await seed_score(4, None, score=0, created_at=old)
        await seed_score(5, OUTSTANDING, score=137, created_at=utcnow() - timedelta(days=30))

        job = ScoreAgingJob(transition_service, ground_truth, aging=ScoreAgingPolicy(delta=5))
        first = await job.run()
        second = await job.run()

        assert first.processed == 2
        assert first.updated == 2
        assert second.processed == 0

        assert (await fetch_score(1)).current_score == 10
        assert (await fetch_score(5)).current_score == 142
        assert (await fetch_score(2)).current_score == 200
        assert (await fetch_score(3)).current_score == 0
        assert (await fetch_score(4)).current_score == 0
        # Aging reads no ground truth and moves no one between queues
        assert ground_truth.reads == []
        assert (await fetch_score(1)).current_queue_category == UNSIGNED

    @pytest.mark.asyncio
    async def test_dry_run(self, transition_service, ground_truth, seed_score, fetch_score):
        await seed_score(1, UNSIGNED, score=5, created_at=utcnow() - timedelta(days=8))

        result = await ScoreAgingJob(transition_service, ground_truth).run(JobRequest(dry_run=True))

        assert result.updated == 1
        assert result.changes[0].to_dict()["action"] == "age"
        assert (await fetch_score(1)).current_score == 5

    @pytest.mark.asyncio
    async def test_unknown_category_is_reported_per_user(
        self, transition_service, ground_truth, seed_score, fetch_score
    ):
        old = utcnow() - timedelta(days=8)
        await seed_score(1, UNSIGNED, score=0, created_at=old)
        await seed_score(2, "vip_users", score=0, created_at=old)
        await seed_score(3, OUTSTANDING, score=0, created_at=old)

        result = await ScoreAgingJob(transition_service, ground_truth).run()

        assert result.processed == 3
        assert result.updated == 2
        assert len(result.errors) == 1
        assert result.errors[0].user_id == 2
        assert result.errors[0].error_code == "VALIDATION_ERROR"
        assert (await fetch_score(2)).current_score == 0
        assert (await fetch_score(3)).current_score == 5


class TestOverlappingRuns:
    @pytest.mark.asyncio
    async def test_overlapping_signature_cleanup(self, file_session_factory, seed_file_score, ground_truth):
        """Two concurrent runs never double-log; a later run finishes what conflicts left."""
        service = QueueTransitionService(file_session_factory, ground_truth, store_timeout=10.0)
        user_ids = list(range(50, 56))
        for user_id in user_ids:
            await seed_file_score(user_id, UNSIGNED)
            ground_truth.add_user(user_id, has_signature=True)

        async def _state(user_id):
            async with file_session_factory() as session:
                row = await ScoreRepository(session).get_by_user_id(user_id)
                conversions = await ConversionRepository(session).list_for_user(user_id)
            return row.current_queue_category, len(conversions)

        first, second = await asyncio.gather(
            SignatureConversionCleanupJob(service, ground_truth).run(),
            SignatureConversionCleanupJob(service, ground_truth).run(),
        )

        assert {e.error_code for e in first.errors + second.errors} <= {"WRITE_CONFLICT"}
        for user_id in user_ids:
            assert await _state(user_id) in {(None, 1), (UNSIGNED, 0)}

        final = await SignatureConversionCleanupJob(service, ground_truth).run()

        assert final.errors == []
        for user_id in user_ids:
            assert await _state(user_id) == (None, 1)


class TestRegistry:
    def test_all_jobs_registered(self):
        assert set(JOBS) == {
            "null_queue_backfill",
            "signature_cleanup",
            "outstanding_requirements_cleanup",
            "new_users_discovery",
            "new_requirements_discovery",
            "score_aging",
        }
        assert {j["name"] for j in available_jobs()} == set(JOBS)

    def test_build_job_from_settings(self, transition_service, ground_truth, settings):
        job = build_job("new_users_discovery", transition_service, ground_truth, settings)

        assert isinstance(job, NewUsersDiscoveryJob)
        assert job.source == "new_users_discovery"

    def test_build_aging_job_from_settings(self, transition_service, ground_truth, settings):
        settings.scoring.aging_delta = 3

        job = build_job("score_aging", transition_service, ground_truth, settings)

        assert isinstance(job, ScoreAgingJob)
        assert job._aging == ScoreAgingPolicy(delta=3, after=timedelta(days=7))

    def test_unknown_job(self, transition_service, ground_truth):
        with pytest.raises(ValidationError):
            build_job("reindex_everything", transition_service, ground_truth)

    @pytest.mark.asyncio
    async def test_result_shape(self, transition_service, ground_truth):
        result = await NullQueueBackfillJob(transition_service, ground_truth).run()
        data = result.to_dict()

        for key in ("job", "processed", "updated", "errors", "next_offset", "dry_run", "elapsed_seconds"):
            assert key in data
