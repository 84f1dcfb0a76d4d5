"""Tests for the conversion decision table and requirement exclusions."""

from __future__ import annotations

import pytest

from dialer_engine.config import EligibilitySettings, Settings
from dialer_engine.core.exceptions import ValidationError
from dialer_engine.services.eligibility import (
    ConversionType,
    GroundTruthFacts,
    QueueCategory,
    RequirementExclusionPolicy,
    decide_conversion,
    derive_category,
    parse_category,
)

UNSIGNED = QueueCategory.UNSIGNED_USERS
OUTSTANDING = QueueCategory.OUTSTANDING_REQUIREMENTS


class TestDecideConversion:
    def test_signature_obtained(self):
        decision = decide_conversion(UNSIGNED, None, GroundTruthFacts(has_signature=True))

        assert decision.eligible
        assert decision.conversion_type == ConversionType.SIGNATURE_OBTAINED

    def test_unsigned_to_outstanding_counts_as_signature(self):
        facts = GroundTruthFacts(has_signature=True, pending_requirement_types=("id_document",))
        decision = decide_conversion(UNSIGNED, OUTSTANDING, facts)

        assert decision.conversion_type == ConversionType.SIGNATURE_OBTAINED

    def test_unsigned_without_signature(self):
        decision = decide_conversion(UNSIGNED, None, GroundTruthFacts(has_signature=False))
        assert not decision.eligible

    def test_requirements_completed(self):
        decision = decide_conversion(OUTSTANDING, None, GroundTruthFacts(has_signature=True))

        assert decision.eligible
        assert decision.conversion_type == ConversionType.REQUIREMENTS_COMPLETED

    def test_requirements_still_pending(self):
        facts = GroundTruthFacts(has_signature=True, pending_requirement_types=("bank_statement",))
        decision = decide_conversion(OUTSTANDING, None, facts)

        assert not decision.eligible
        assert "1 pending" in decision.reason

    @pytest.mark.parametrize("from_cat,to_cat", [(None, UNSIGNED), (UNSIGNED, UNSIGNED), (None, None)])
    def test_never_eligible(self, from_cat, to_cat):
        decision = decide_conversion(from_cat, to_cat, GroundTruthFacts(has_signature=True))
        assert not decision.eligible
        assert decision.conversion_type is None


class TestDeriveCategory:
    def test_unsigned_takes_priority(self):
        facts = GroundTruthFacts(has_signature=False, pending_requirement_types=("bank_statement",))
        assert derive_category(facts) == UNSIGNED

    def test_pending_requirements(self):
        facts = GroundTruthFacts(has_signature=True, pending_requirement_types=("bank_statement",))
        assert derive_category(facts) == OUTSTANDING

    def test_nothing_to_chase(self):
        assert derive_category(GroundTruthFacts(has_signature=True)) is None


class TestParseCategory:
    @pytest.mark.parametrize("value", [None, "", "  ", "null", "None"])
    def test_not_queued(self, value):
        assert parse_category(value) is None

    def test_known(self):
        assert parse_category("unsigned_users") is UNSIGNED

    def test_unknown(self):
        with pytest.raises(ValidationError):
            parse_category("vip_users")


class TestRequirementExclusionPolicy:
    def test_excluded_types(self):
        policy = RequirementExclusionPolicy()

        assert not policy.is_valid_pending("signature")
        assert not policy.is_valid_pending("Vehicle_Registration")
        assert policy.is_valid_pending("bank_statement")

    def test_excluded_type_reason(self):
        policy = RequirementExclusionPolicy()

        assert not policy.is_valid_pending("id_document", "Base requirement for claim.")
        assert policy.is_valid_pending("id_document", "Passport expired")

    def test_filter(self):
        policy = RequirementExclusionPolicy()
        kept = policy.filter(
            [
                ("signature", None),
                ("id_document", "base requirement for claim."),
                ("bank_statement", None),
            ]
        )
        assert kept == ["bank_statement"]

    def test_pending_status_is_case_insensitive(self):
        policy = RequirementExclusionPolicy()

        assert policy.is_pending("PENDING")
        assert policy.is_pending("pending")
        assert not policy.is_pending("COMPLETED")
        assert not policy.is_pending(None)

    def test_from_settings(self):
        settings = Settings(
            eligibility=EligibilitySettings(
                excluded_requirement_types=["Proof_Of_Address"],
                excluded_type_reasons={},
                pending_statuses=["Open"],
            )
        )
        policy = RequirementExclusionPolicy.from_settings(settings)

        assert not policy.is_valid_pending("proof_of_address")
        assert policy.is_valid_pending("signature")
        assert policy.is_pending("OPEN")
