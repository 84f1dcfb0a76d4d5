"""Outcome ingestion.

Boundary where call, SMS and voice subsystems report what happened on a
contact. Scores the outcome, records it on the score row, and removes the
user from their queue when the outcome's policy says so. Both writes go
through QueueTransitionService.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from dialer_engine.core.exceptions import ValidationError
from dialer_engine.core.log import get_logger
from dialer_engine.core.retry import WRITE_CONFLICT_RETRY_CONFIG, RetryConfig, retry_async
from dialer_engine.db.base import as_utc, utcnow
from dialer_engine.services.scoring import OutcomeType, ScoringPolicy, parse_outcome
from dialer_engine.services.transition import (
    QueueTransitionService,
    ScoreUpdate,
    TransitionResult,
)

log = get_logger(__name__)

OUTCOME_SOURCE = "call_outcome"


@dataclass
class OutcomeResult:
    """What report_outcome did."""

    user_id: int
    outcome: OutcomeType
    score: ScoreUpdate
    removed_from_queue: bool = False
    transition: TransitionResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "outcome": self.outcome.value,
            "score": self.score.to_dict(),
            "removed_from_queue": self.removed_from_queue,
            "transition": self.transition.to_dict() if self.transition else None,
        }


class OutcomeService:
    """Ingest call outcomes.

    Args:
        transition_service: The shared transition service
        scoring: Outcome policy table
        retry_config: Retry policy for write conflicts on the score row
    """

    def __init__(
        self,
        transition_service: QueueTransitionService,
        scoring: ScoringPolicy | None = None,
        *,
        retry_config: RetryConfig = WRITE_CONFLICT_RETRY_CONFIG,
    ) -> None:
        self._transitions = transition_service
        self._scoring = scoring or ScoringPolicy()
        self._retry_config = retry_config

    @property
    def scoring(self) -> ScoringPolicy:
        return self._scoring

    async def report_outcome(
        self,
        user_id: int,
        outcome_type: OutcomeType | str,
        metadata: dict[str, Any] | None = None,
        *,
        next_call_at: datetime | None = None,
        agent_id: str | None = None,
    ) -> OutcomeResult:
        """Record a contact outcome for a user.

        Args:
            user_id: External user ID
            outcome_type: Outcome reported by the contact subsystem
            metadata: Extra context stored on the audit row if the user is removed
            next_call_at: Agent-agreed callback time; required for outcomes whose
                policy leaves the delay to the caller
            agent_id: Agent who handled the contact

        Returns:
            OutcomeResult

        Raises:
            ValidationError: Unknown outcome or missing callback time
            RecordNotFoundError: User has no score row
            RetryExhausted: Score row kept conflicting
        """
        outcome = parse_outcome(outcome_type)
        policy = self._scoring.policy_for(outcome)

        if next_call_at is not None:
            next_call_at = as_utc(next_call_at)
            if next_call_at < utcnow():
                raise ValidationError(
                    "next_call_at must be in the future",
                    details={"next_call_at": next_call_at.isoformat()},
                )

        override = None if next_call_at is None else max(timedelta(0), next_call_at - utcnow())
        delay = self._scoring.next_eligible_delay_for_outcome(outcome, override)
        if delay is None and not policy.removes_from_queue:
            raise ValidationError(
                f"Outcome {outcome.value} requires an agent-supplied next_call_at",
                details={"outcome": outcome.value},
            )

        score = await retry_async(
            self._transitions.record_outcome_score,
            user_id,
            outcome,
            self._scoring,
            next_call_delay=delay,
            next_call_at=next_call_at,
            config=self._retry_config,
        )

        log.info(
            "Outcome recorded",
            user_id=user_id,
            outcome=outcome.value,
            bucket=policy.bucket.value,
            previous_score=score.previous_score,
            new_score=score.new_score,
            agent_id=agent_id,
        )

        result = OutcomeResult(user_id=user_id, outcome=outcome, score=score)

        if policy.removes_from_queue and score.current_category is not None:
            result.transition = await self._transitions.transition(
                user_id,
                score.current_category,
                None,
                f"call_outcome:{outcome.value}",
                OUTCOME_SOURCE,
                agent_id=agent_id,
                metadata={**(metadata or {}), "outcome": outcome.value, "bucket": policy.bucket.value},
            )
            result.removed_from_queue = result.transition.transitioned

        return result
