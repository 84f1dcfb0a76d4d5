"""Priority Scoring Service.

Pure computation. Given a call outcome it yields a score delta, the delay
until the user may be called again, and whether the contact counts as
successful. Lower scores are called first; 0 is the front of the queue.

Deltas are always additive. A neutral outcome on a user who is already near
the front moves them back by the delta, never to a fixed constant.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum
from typing import Mapping

from dialer_engine.core.exceptions import ValidationError


class OutcomeType(str, Enum):
    """Call outcomes reported by the call/SMS/voice subsystems."""

    # Positive
    COMPLETED_FORM = "completed_form"
    GOING_TO_COMPLETE = "going_to_complete"
    MIGHT_COMPLETE = "might_complete"
    CALL_BACK = "call_back"
    MISSED_CALL = "missed_call"

    # Neutral / retry
    NO_ANSWER = "no_answer"
    HUNG_UP = "hung_up"
    BUSY = "busy"
    LEFT_VOICEMAIL = "left_voicemail"

    # Negative
    BAD_NUMBER = "bad_number"
    NOT_INTERESTED = "not_interested"
    NO_CLAIM = "no_claim"
    DO_NOT_CONTACT = "do_not_contact"


class OutcomeBucket(str, Enum):
    POSITIVE = "positive"
    NEUTRAL_RETRY = "neutral_retry"
    NEGATIVE = "negative"


@dataclass(frozen=True)
class OutcomePolicy:
    """Scoring policy for one outcome.

    Attributes:
        bucket: Policy bucket
        delta: Additive score change
        removes_from_queue: Caller should transition the user out of every queue
        next_call_delay: Delay before the next call; None means the caller supplies it
        successful_contact: Counts toward successful calls in session statistics
    """

    bucket: OutcomeBucket
    delta: int
    removes_from_queue: bool
    next_call_delay: timedelta | None
    successful_contact: bool


# Scores at or above this are frozen: the user is effectively never called
FROZEN_SCORE = 200

DEFAULT_OUTCOME_POLICIES: dict[OutcomeType, OutcomePolicy] = {
    OutcomeType.COMPLETED_FORM: OutcomePolicy(
        OutcomeBucket.POSITIVE, 0, True, timedelta(0), True
    ),
    # Agent agrees a callback time with the user
    OutcomeType.GOING_TO_COMPLETE: OutcomePolicy(
        OutcomeBucket.POSITIVE, 0, False, None, True
    ),
    OutcomeType.MIGHT_COMPLETE: OutcomePolicy(
        OutcomeBucket.POSITIVE, 3, False, timedelta(days=3), True
    ),
    OutcomeType.CALL_BACK: OutcomePolicy(
        OutcomeBucket.POSITIVE, 3, False, timedelta(minutes=30), True
    ),
    # Inbound contact: eligible again right away
    OutcomeType.MISSED_CALL: OutcomePolicy(
        OutcomeBucket.POSITIVE, 0, False, timedelta(0), True
    ),
    OutcomeType.NO_ANSWER: OutcomePolicy(
        OutcomeBucket.NEUTRAL_RETRY, 10, False, timedelta(hours=4), False
    ),
    OutcomeType.HUNG_UP: OutcomePolicy(
        OutcomeBucket.NEUTRAL_RETRY, 25, False, timedelta(hours=8), False
    ),
    OutcomeType.BUSY: OutcomePolicy(
        OutcomeBucket.NEUTRAL_RETRY, 5, False, timedelta(hours=2), False
    ),
    OutcomeType.LEFT_VOICEMAIL: OutcomePolicy(
        OutcomeBucket.NEUTRAL_RETRY, 10, False, timedelta(hours=8), False
    ),
    OutcomeType.BAD_NUMBER: OutcomePolicy(
        OutcomeBucket.NEGATIVE, 50, False, timedelta(days=2), False
    ),
    OutcomeType.NOT_INTERESTED: OutcomePolicy(
        OutcomeBucket.NEGATIVE, 100, False, timedelta(days=2), False
    ),
    OutcomeType.NO_CLAIM: OutcomePolicy(
        OutcomeBucket.NEGATIVE, FROZEN_SCORE, True, timedelta(0), False
    ),
    OutcomeType.DO_NOT_CONTACT: OutcomePolicy(
        OutcomeBucket.NEGATIVE, FROZEN_SCORE, True, timedelta(0), False
    ),
}


@dataclass(frozen=True)
class ScoreAgingPolicy:
    """One-off additive penalty for leads that linger in a queue.

    Attributes:
        delta: Additive score change
        after: Rows created at least this long ago are aged
    """

    delta: int = 5
    after: timedelta = timedelta(days=7)

    def applies_to(self, current_score: int) -> bool:
        """Frozen users are never aged."""
        return current_score < FROZEN_SCORE


DEFAULT_SCORE_AGING = ScoreAgingPolicy()

SCORE_BANDS: tuple[tuple[int, str], ...] = (
    (10, "hot"),
    (50, "warm"),
    (100, "lukewarm"),
    (FROZEN_SCORE - 1, "cold"),
)


def parse_outcome(value: OutcomeType | str) -> OutcomeType:
    """Parse an outcome, rejecting anything not in the policy table.

    Raises:
        ValidationError: Unknown outcome type
    """
    if isinstance(value, OutcomeType):
        return value
    try:
        return OutcomeType(str(value).strip().lower())
    except ValueError as e:
        raise ValidationError(
            f"Unknown outcome type: {value!r}",
            details={"allowed": [o.value for o in OutcomeType]},
            cause=e,
        ) from e


class ScoringPolicy:
    """Outcome policy table with configurable overrides.

    Args:
        policies: Base policy table (defaults to DEFAULT_OUTCOME_POLICIES)
        delta_overrides: outcome value -> delta
        delay_overrides_minutes: outcome value -> delay in minutes
        aging: Periodic aging policy (defaults to DEFAULT_SCORE_AGING)
    """

    def __init__(
        self,
        policies: Mapping[OutcomeType, OutcomePolicy] | None = None,
        delta_overrides: Mapping[str, int] | None = None,
        delay_overrides_minutes: Mapping[str, int] | None = None,
        aging: ScoreAgingPolicy | None = None,
    ) -> None:
        table = dict(policies or DEFAULT_OUTCOME_POLICIES)

        for key, delta in (delta_overrides or {}).items():
            outcome = parse_outcome(key)
            if delta < 0:
                raise ValidationError(
                    f"Score delta for {outcome.value} must be non-negative",
                    details={"delta": delta},
                )
            table[outcome] = replace(table[outcome], delta=int(delta))

        for key, minutes in (delay_overrides_minutes or {}).items():
            outcome = parse_outcome(key)
            table[outcome] = replace(table[outcome], next_call_delay=timedelta(minutes=int(minutes)))

        missing = set(OutcomeType) - set(table)
        if missing:
            raise ValidationError(
                "Scoring policy table is incomplete",
                details={"missing": sorted(o.value for o in missing)},
            )

        aging = aging or DEFAULT_SCORE_AGING
        if aging.delta < 0:
            raise ValidationError("Aging delta must be non-negative", details={"delta": aging.delta})

        self._table = table
        self._aging = aging

    @classmethod
    def from_settings(cls, settings) -> "ScoringPolicy":
        return cls(
            delta_overrides=settings.scoring.delta_overrides,
            delay_overrides_minutes=settings.scoring.delay_overrides_minutes,
            aging=ScoreAgingPolicy(
                delta=settings.scoring.aging_delta,
                after=timedelta(days=settings.scoring.aging_after_days),
            ),
        )

    @property
    def aging(self) -> ScoreAgingPolicy:
        return self._aging

    def policy_for(self, outcome: OutcomeType | str) -> OutcomePolicy:
        return self._table[parse_outcome(outcome)]

    def score_delta_for_outcome(self, outcome: OutcomeType | str, current_score: int) -> int:
        """Additive score delta for an outcome.

        Args:
            outcome: Outcome type
            current_score: The user's current score (validated, not used to reset)

        Returns:
            Delta to add to current_score

        Raises:
            ValidationError: Unknown outcome or negative/non-integer score
        """
        if isinstance(current_score, bool) or not isinstance(current_score, int):
            raise ValidationError("current_score must be an integer", details={"value": current_score})
        if current_score < 0:
            raise ValidationError("current_score must be non-negative", details={"value": current_score})
        return self.policy_for(outcome).delta

    def apply(self, outcome: OutcomeType | str, current_score: int) -> int:
        """New score after an outcome, floored at 0."""
        return max(0, current_score + self.score_delta_for_outcome(outcome, current_score))

    def next_eligible_delay_for_outcome(
        self,
        outcome: OutcomeType | str,
        override: timedelta | None = None,
    ) -> timedelta | None:
        """Delay until the user may be called again.

        Args:
            outcome: Outcome type
            override: Caller-supplied delay, always wins

        Returns:
            Delay, or None when the policy leaves it to the caller and none was given
        """
        policy = self.policy_for(outcome)
        if override is not None:
            if override < timedelta(0):
                raise ValidationError("Next call delay override cannot be negative")
            return override
        return policy.next_call_delay

    def is_successful_contact(self, outcome: OutcomeType | str) -> bool:
        return self.policy_for(outcome).successful_contact


def score_band(score: int) -> str:
    """Human-readable priority band for a score."""
    for upper, name in SCORE_BANDS:
        if score <= upper:
            return name
    return "frozen"


_DEFAULT_POLICY = ScoringPolicy()


def score_delta_for_outcome(outcome: OutcomeType | str, current_score: int) -> int:
    """Additive delta from the default policy table."""
    return _DEFAULT_POLICY.score_delta_for_outcome(outcome, current_score)


def next_eligible_delay_for_outcome(
    outcome: OutcomeType | str,
    override: timedelta | None = None,
) -> timedelta | None:
    """Next-call delay from the default policy table."""
    return _DEFAULT_POLICY.next_eligible_delay_for_outcome(outcome, override)


def is_successful_contact(outcome: OutcomeType | str) -> bool:
    """Whether the outcome counts as a successful contact."""
    return _DEFAULT_POLICY.is_successful_contact(outcome)
