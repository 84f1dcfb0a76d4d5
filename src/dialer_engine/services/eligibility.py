"""Conversion eligibility.

Pure decision table deciding whether leaving a queue counts as a conversion,
plus the requirement exclusion policy shared with the ground-truth reader and
the discovery jobs so all of them agree on what a "valid pending requirement"
is.

| from                     | to                      | condition                      | result                  |
|--------------------------|-------------------------|--------------------------------|-------------------------|
| unsigned_users           | not unsigned_users      | signature present              | signature_obtained      |
| outstanding_requirements | not outstanding_req...  | zero valid pending requirements| requirements_completed  |
| null or same category    | -                       | -                              | never eligible          |
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping

from dialer_engine.core.exceptions import ValidationError


class QueueCategory(str, Enum):
    """Outbound campaign a user belongs to."""

    UNSIGNED_USERS = "unsigned_users"
    OUTSTANDING_REQUIREMENTS = "outstanding_requirements"


class ConversionType(str, Enum):
    SIGNATURE_OBTAINED = "signature_obtained"
    REQUIREMENTS_COMPLETED = "requirements_completed"


def parse_category(value: QueueCategory | str | None) -> QueueCategory | None:
    """Parse a queue category; None and empty strings mean "not queued".

    Raises:
        ValidationError: Unknown category
    """
    if value is None or isinstance(value, QueueCategory):
        return value
    text = str(value).strip()
    if not text or text.lower() in ("null", "none"):
        return None
    try:
        return QueueCategory(text)
    except ValueError as e:
        raise ValidationError(
            f"Unknown queue category: {value!r}",
            details={"allowed": [c.value for c in QueueCategory]},
            cause=e,
        ) from e


@dataclass(frozen=True)
class GroundTruthFacts:
    """What ground truth says about a user at the time of the check."""

    has_signature: bool
    pending_requirement_types: tuple[str, ...] = ()

    @property
    def pending_count(self) -> int:
        return len(self.pending_requirement_types)


@dataclass(frozen=True)
class EligibilityDecision:
    eligible: bool
    conversion_type: ConversionType | None = None
    reason: str = ""

    @classmethod
    def not_eligible(cls, reason: str) -> "EligibilityDecision":
        return cls(eligible=False, reason=reason)


def decide_conversion(
    from_category: QueueCategory | None,
    to_category: QueueCategory | None,
    facts: GroundTruthFacts,
) -> EligibilityDecision:
    """Apply the conversion decision table.

    Read failures never reach this function; the caller records them as a
    skipped check instead.
    """
    if from_category is None:
        return EligibilityDecision.not_eligible("User was not in a queue")

    if from_category == to_category:
        return EligibilityDecision.not_eligible("Queue category unchanged")

    if from_category == QueueCategory.UNSIGNED_USERS:
        if facts.has_signature:
            return EligibilityDecision(
                eligible=True,
                conversion_type=ConversionType.SIGNATURE_OBTAINED,
                reason="User provided signature - moved from unsigned queue",
            )
        return EligibilityDecision.not_eligible("User still has no signature")

    if from_category == QueueCategory.OUTSTANDING_REQUIREMENTS:
        if facts.pending_count == 0:
            return EligibilityDecision(
                eligible=True,
                conversion_type=ConversionType.REQUIREMENTS_COMPLETED,
                reason="All outstanding requirements have been fulfilled",
            )
        return EligibilityDecision.not_eligible(
            f"User still has {facts.pending_count} pending requirements"
        )

    return EligibilityDecision.not_eligible("No conversion rule for this transition")


def derive_category(facts: GroundTruthFacts) -> QueueCategory | None:
    """The queue a user belongs in according to ground truth.

    Unsigned users take priority over requirement chasing.
    """
    if not facts.has_signature:
        return QueueCategory.UNSIGNED_USERS
    if facts.pending_count > 0:
        return QueueCategory.OUTSTANDING_REQUIREMENTS
    return None


@dataclass(frozen=True)
class RequirementExclusionPolicy:
    """Requirement types that never count as actionable pending work.

    Attributes:
        excluded_types: Administrative types excluded outright
        excluded_type_reasons: type -> reasons that make that type non-actionable
        pending_statuses: Statuses considered pending (compared case-insensitively)
    """

    excluded_types: frozenset[str] = frozenset(
        {
            "signature",
            "vehicle_registration",
            "cfa",
            "solicitor_letter_of_authority",
            "letter_of_authority",
        }
    )
    excluded_type_reasons: Mapping[str, frozenset[str]] = field(
        default_factory=lambda: {"id_document": frozenset({"base requirement for claim."})}
    )
    pending_statuses: frozenset[str] = frozenset({"pending"})

    @classmethod
    def from_settings(cls, settings) -> "RequirementExclusionPolicy":
        eligibility = settings.eligibility
        return cls(
            excluded_types=frozenset(t.strip().lower() for t in eligibility.excluded_requirement_types),
            excluded_type_reasons={
                t.strip().lower(): frozenset(_normalize(r) for r in reasons)
                for t, reasons in eligibility.excluded_type_reasons.items()
            },
            pending_statuses=frozenset(s.strip().lower() for s in eligibility.pending_statuses),
        )

    def is_pending(self, status: str | None) -> bool:
        return (status or "").strip().lower() in self.pending_statuses

    def is_valid_pending(self, requirement_type: str, reason: str | None = None) -> bool:
        """Whether a pending requirement counts as actionable."""
        key = requirement_type.strip().lower()
        if key in self.excluded_types:
            return False
        excluded_reasons = self.excluded_type_reasons.get(key)
        if excluded_reasons and _normalize(reason) in excluded_reasons:
            return False
        return True

    def filter(self, requirements: Iterable[tuple[str, str | None]]) -> list[str]:
        """Keep the types of valid pending requirements from (type, reason) pairs."""
        return [t for t, reason in requirements if self.is_valid_pending(t, reason)]


def _normalize(reason: str | None) -> str:
    return (reason or "").strip().lower()
