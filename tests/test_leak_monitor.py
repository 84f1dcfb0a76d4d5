"""Tests for conversion leak detection and recovery."""

from __future__ import annotations

import pytest

from dialer_engine.db.base import as_utc
from dialer_engine.services.leak_monitor import RECOVERY_SOURCE, ConversionLeakMonitor

UNSIGNED = "unsigned_users"
OUTSTANDING = "outstanding_requirements"


@pytest.fixture
def monitor(transition_service) -> ConversionLeakMonitor:
    return ConversionLeakMonitor(transition_service)


@pytest.fixture
def leak(transition_service, ground_truth, seed_score):
    """Move a user out of a queue while ground truth is down, then bring it back."""

    async def _leak(user_id: int, from_category: str, *, has_signature: bool, requirements=None):
        await seed_score(user_id, from_category)
        ground_truth.fail_for(user_id)
        result = await transition_service.transition(
            user_id, from_category, None, "Completed on call", "dialer"
        )
        assert result.success and result.transitioned
        assert result.conversion_check_skipped
        ground_truth.clear_failures()
        ground_truth.add_user(user_id, has_signature=has_signature, requirements=requirements)
        return result

    return _leak


class TestScan:
    @pytest.mark.asyncio
    async def test_finds_exit_without_conversion(self, monitor, leak):
        result = await leak(50, UNSIGNED, has_signature=True)

        leaks = await monitor.scan()

        assert len(leaks) == 1
        assert leaks[0].user_id == 50
        assert leaks[0].audit_id == result.audit_id
        assert leaks[0].from_category == UNSIGNED
        assert leaks[0].to_category is None
        assert leaks[0].source == "dialer"

    @pytest.mark.asyncio
    async def test_logged_conversions_are_not_leaks(self, monitor, transition_service, ground_truth, seed_score):
        await seed_score(51, UNSIGNED)
        ground_truth.add_user(51, has_signature=True)
        result = await transition_service.transition(51, UNSIGNED, None, "Signed", "dialer")
        assert result.conversion_logged

        assert await monitor.scan() == []

    @pytest.mark.asyncio
    async def test_emergency_transitions_are_excluded(self, monitor, transition_service, ground_truth, seed_score):
        await seed_score(52, UNSIGNED)
        ground_truth.add_user(52, has_signature=True)
        await transition_service.emergency_transition(
            52, UNSIGNED, None, "Duplicate account merged", operator_id="ops-1"
        )

        assert await monitor.scan() == []

    @pytest.mark.asyncio
    async def test_queue_entries_are_not_exits(self, monitor, transition_service, ground_truth):
        ground_truth.add_user(53, has_signature=False)
        await transition_service.transition(53, None, UNSIGNED, "New user", "new_users_discovery")

        assert await monitor.scan() == []


class TestRecover:
    @pytest.mark.asyncio
    async def test_recovers_missed_conversion(self, monitor, leak, ledger, fetch_score):
        result = await leak(60, UNSIGNED, has_signature=True)
        audit_at = as_utc((await ledger.audit(60))[0].timestamp)

        report = await monitor.recover()

        assert report.leaks_found == 1
        assert report.recovered == 1
        assert report.failed == 0

        conversions = await ledger.conversions(60)
        assert len(conversions) == 1
        assert conversions[0].source == RECOVERY_SOURCE
        assert conversions[0].conversion_type == "signature_obtained"
        assert as_utc(conversions[0].converted_at) == audit_at
        assert str(result.audit_id) in conversions[0].reason

        # Recovery never touches the queue state or the audit trail
        assert (await fetch_score(60)).current_queue_category is None
        assert len(await ledger.audit(60)) == 1

    @pytest.mark.asyncio
    async def test_second_recovery_finds_nothing(self, monitor, leak, ledger):
        await leak(61, UNSIGNED, has_signature=True)

        await monitor.recover()
        again = await monitor.recover()

        assert again.leaks_found == 0
        assert len(await ledger.conversions(61)) == 1

    @pytest.mark.asyncio
    async def test_not_eligible_when_ground_truth_disagrees(self, monitor, leak, ledger):
        await leak(62, OUTSTANDING, has_signature=True, requirements=[("bank_statement", None)])

        report = await monitor.recover()

        assert report.leaks_found == 1
        assert report.recovered == 0
        assert report.not_eligible == 1
        assert await ledger.conversions(62) == []

    @pytest.mark.asyncio
    async def test_ground_truth_still_down(self, monitor, leak, ground_truth, ledger):
        await leak(63, UNSIGNED, has_signature=True)
        ground_truth.fail_for(63)

        report = await monitor.recover()

        assert report.recovered == 0
        assert report.not_eligible == 1
        assert await ledger.conversions(63) == []

    @pytest.mark.asyncio
    async def test_dry_run(self, monitor, leak, ledger):
        await leak(64, UNSIGNED, has_signature=True)

        report = await monitor.recover(dry_run=True)

        assert report.dry_run
        assert report.leaks_found == 1
        assert report.recovered == 0
        assert report.to_dict()["leaks"][0]["user_id"] == 64
        assert await ledger.conversions(64) == []


class TestHealth:
    @pytest.mark.asyncio
    async def test_no_exits(self, monitor):
        health = await monitor.health()

        assert health["queue_exits"] == 0
        assert health["capture_rate"] is None
        assert health["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_capture_rate(self, monitor, leak, transition_service, ground_truth, seed_score):
        await leak(70, UNSIGNED, has_signature=True)
        await seed_score(71, UNSIGNED)
        ground_truth.add_user(71, has_signature=True)
        await transition_service.transition(71, UNSIGNED, None, "Signed", "dialer")

        health = await monitor.health(hours=1)

        assert health["window_hours"] == 1
        assert health["queue_exits"] == 2
        assert health["conversions_logged"] == 1
        assert health["conversions_total"] == 1
        assert health["capture_rate"] == 0.5
        assert health["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_degraded_when_nothing_captured(self, monitor, leak):
        await leak(72, UNSIGNED, has_signature=True)

        health = await monitor.health()

        assert health["capture_rate"] == 0.0
        assert health["status"] == "degraded"
