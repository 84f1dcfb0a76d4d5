"""Universal Queue Transition Service.

The only writer of a user's queue category. Each transition runs as one
database transaction that:

1. locks (or creates) the user's score row,
2. evaluates conversion eligibility against ground truth,
3. records the conversion in the ledger (dedup enforced in the same
   transaction, inside a savepoint so a failed insert cannot block the
   queue change),
4. updates the score row,
5. writes exactly one audit row.

Nothing is raised to callers; every outcome is a TransitionResult.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dialer_engine.core.exceptions import (
    DialerEngineError,
    FatalStoreError,
    ReadFailure,
    RecordNotFoundError,
    StoreTimeout,
    ValidationError,
    classify_store_exception,
    wrap_exception,
)
from dialer_engine.core.log import get_logger
from dialer_engine.db.base import utcnow
from dialer_engine.db.models.conversions import ConversionModel
from dialer_engine.db.models.scores import UserCallScoreModel
from dialer_engine.db.repositories.audit import TransitionAuditRepository
from dialer_engine.db.repositories.conversions import ConversionRepository
from dialer_engine.db.repositories.scores import ScoreRepository
from dialer_engine.services.eligibility import (
    ConversionType,
    EligibilityDecision,
    GroundTruthFacts,
    QueueCategory,
    decide_conversion,
    parse_category,
)
from dialer_engine.services.ground_truth import GroundTruthReader
from dialer_engine.services.scoring import OutcomeType, ScoreAgingPolicy, ScoringPolicy

log = get_logger(__name__)

EMERGENCY_SOURCE = "admin_emergency"


# =============================================================================
# Request / Result Types
# =============================================================================


@dataclass
class TransitionRequest:
    """One queue change request, as accepted by bulk_transition."""

    user_id: int
    from_category: QueueCategory | str | None
    to_category: QueueCategory | str | None
    reason: str
    source: str
    agent_id: str | None = None
    metadata: dict[str, Any] | None = None
    skip_conversion_check: bool = False


@dataclass
class TransitionResult:
    """Structured outcome of a transition.

    Attributes:
        success: False only when nothing was persisted (validation or store failure)
        transitioned: Score row and audit trail were written
        conversion_logged: A new conversion row was written in this call
        conversion_check_skipped: Eligibility was not evaluated (emergency or read failure)
        conversion_error: Conversion insert failed while the queue change committed
        retryable: Safe to retry the whole call
    """

    success: bool
    transitioned: bool = False
    conversion_logged: bool = False
    conversion_id: UUID | None = None
    audit_written: bool = False
    audit_id: UUID | None = None
    message: str = ""
    error: str | None = None
    error_code: str | None = None
    retryable: bool = False
    conversion_check_skipped: bool = False
    conversion_error: str | None = None

    @property
    def partial_failure(self) -> bool:
        return self.conversion_error is not None

    @classmethod
    def failed(cls, exc: DialerEngineError) -> "TransitionResult":
        return cls(
            success=False,
            message=exc.message,
            error=str(exc),
            error_code=exc.error_code,
            retryable=exc.retryable,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "transitioned": self.transitioned,
            "conversion_logged": self.conversion_logged,
            "conversion_id": str(self.conversion_id) if self.conversion_id else None,
            "audit_written": self.audit_written,
            "audit_id": str(self.audit_id) if self.audit_id else None,
            "message": self.message,
            "error": self.error,
            "error_code": self.error_code,
            "retryable": self.retryable,
            "conversion_check_skipped": self.conversion_check_skipped,
            "conversion_error": self.conversion_error,
            "partial_failure": self.partial_failure,
        }


@dataclass
class BulkTransitionResult:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    conversions_logged: int = 0
    results: list[TransitionResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "conversions_logged": self.conversions_logged,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class ScoreUpdate:
    """Result of recording a call outcome on the score row."""

    user_id: int
    outcome: OutcomeType
    previous_score: int
    new_score: int
    delta: int
    next_call_after: datetime | None
    current_category: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "outcome": self.outcome.value,
            "previous_score": self.previous_score,
            "new_score": self.new_score,
            "delta": self.delta,
            "next_call_after": self.next_call_after.isoformat() if self.next_call_after else None,
            "current_category": self.current_category,
        }


@dataclass
class ScoreAgingUpdate:
    user_id: int
    previous_score: int
    new_score: int
    delta: int


# =============================================================================
# Service
# =============================================================================


class QueueTransitionService:
    """Single choke point for queue membership changes.

    Construct once and inject; it holds no per-call state.

    Args:
        session_factory: Primary store session factory
        ground_truth: Ground-truth reader used for eligibility
        dedup_window: Conversion dedup window
        store_timeout: Upper bound in seconds for one transaction
        max_concurrency: Parallel items in bulk_transition
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ground_truth: GroundTruthReader,
        *,
        dedup_window: timedelta = timedelta(hours=1),
        store_timeout: float = 10.0,
        max_concurrency: int = 1,
    ) -> None:
        self._session_factory = session_factory
        self._ground_truth = ground_truth
        self._dedup_window = dedup_window
        self._store_timeout = store_timeout
        self._max_concurrency = max(1, max_concurrency)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    @property
    def ground_truth(self) -> GroundTruthReader:
        return self._ground_truth

    # ========================================================================
    # Transition
    # ========================================================================

    async def transition(
        self,
        user_id: int,
        from_category: QueueCategory | str | None,
        to_category: QueueCategory | str | None,
        reason: str,
        source: str,
        *,
        agent_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        skip_conversion_check: bool = False,
    ) -> TransitionResult:
        """Move a user between queues, logging a conversion when earned.

        Args:
            user_id: External user ID
            from_category: Category the caller believes the user is in
            to_category: Target category, None removes the user from all queues
            reason: Why the change is happening
            source: Calling subsystem
            agent_id: Agent responsible, if any
            metadata: Extra key/values stored on the audit row
            skip_conversion_check: Operator emergency bypass of eligibility

        Returns:
            TransitionResult (never raises)
        """
        try:
            from_cat, to_cat = self._validate(user_id, from_category, to_category, reason, source)
        except ValidationError as e:
            log.warning("Transition rejected", user_id=user_id, error=e.message, source=source)
            return TransitionResult.failed(e)

        if from_cat == to_cat:
            return TransitionResult(success=True, message="No queue change detected")

        audit_meta: dict[str, Any] = dict(metadata or {})
        if skip_conversion_check:
            audit_meta["conversionCheckSkipped"] = True
            audit_meta.setdefault("skipReason", "operator bypass")

        try:
            result = await asyncio.wait_for(
                self._apply_transition(
                    user_id,
                    from_cat,
                    to_cat,
                    reason=reason.strip(),
                    source=source.strip(),
                    agent_id=agent_id,
                    audit_meta=audit_meta,
                    skip_conversion_check=skip_conversion_check,
                ),
                timeout=self._store_timeout,
            )
        except asyncio.TimeoutError as e:
            error = StoreTimeout(
                f"Transition exceeded {self._store_timeout}s",
                details={"user_id": user_id},
                cause=e,
            )
            log.error("Transition timed out", user_id=user_id, timeout=self._store_timeout)
            return TransitionResult.failed(error)
        except SQLAlchemyError as e:
            error = classify_store_exception(e)
            log.error(
                "Transition rolled back",
                user_id=user_id,
                error_code=error.error_code,
                error=str(e),
            )
            return TransitionResult.failed(error)
        except DialerEngineError as e:
            log.error("Transition rolled back", user_id=user_id, error_code=e.error_code, error=e.message)
            return TransitionResult.failed(e)
        except Exception as e:
            error = wrap_exception(e, FatalStoreError, "Unexpected error during transition")
            log.exception("Transition failed unexpectedly", user_id=user_id)
            return TransitionResult.failed(error)

        log.info(
            "Queue transition applied",
            user_id=user_id,
            from_category=from_cat.value if from_cat else None,
            to_category=to_cat.value if to_cat else None,
            source=source,
            conversion_logged=result.conversion_logged,
            conversion_check_skipped=result.conversion_check_skipped,
        )
        if result.partial_failure:
            log.warning(
                "Queue transition committed without its conversion",
                user_id=user_id,
                conversion_error=result.conversion_error,
            )
        return result

    async def _apply_transition(
        self,
        user_id: int,
        from_cat: QueueCategory | None,
        to_cat: QueueCategory | None,
        *,
        reason: str,
        source: str,
        agent_id: str | None,
        audit_meta: dict[str, Any],
        skip_conversion_check: bool,
    ) -> TransitionResult:
        now = utcnow()
        result = TransitionResult(success=True, transitioned=True)

        async with self._session_factory() as session:
            async with session.begin():
                scores = ScoreRepository(session)
                ledger = ConversionRepository(session, self._dedup_window)
                audit = TransitionAuditRepository(session)

                row, created = await scores.lock_or_create(user_id)
                if created:
                    audit_meta["scoreRowCreated"] = True

                expected = from_cat.value if from_cat else None
                if row.current_queue_category != expected:
                    # Another writer moved the user first; eligibility still uses the caller's view
                    audit_meta["observedFromCategory"] = row.current_queue_category

                conversion: ConversionModel | None = None
                if skip_conversion_check:
                    result.conversion_check_skipped = True
                else:
                    evaluated = await self._evaluate_eligibility(user_id, from_cat, to_cat, audit_meta)
                    if evaluated is None:
                        result.conversion_check_skipped = True
                    else:
                        decision, facts = evaluated
                        if decision.eligible:
                            conversion = await self._log_conversion(
                                session,
                                ledger,
                                row,
                                decision,
                                facts,
                                from_cat=from_cat,
                                reason=reason,
                                source=source,
                                converted_at=now,
                                audit_meta=audit_meta,
                                result=result,
                            )

                await scores.apply_category(row, to_cat.value if to_cat else None, now=now)

                entry = await audit.append(
                    user_id=user_id,
                    from_category=expected,
                    to_category=to_cat.value if to_cat else None,
                    reason=reason,
                    source=source,
                    agent_id=agent_id,
                    conversion_id=conversion.id if conversion else None,
                    conversion_logged=conversion is not None,
                    timestamp=now,
                    metadata=audit_meta,
                )

        result.audit_written = True
        result.audit_id = entry.id
        result.conversion_logged = conversion is not None
        result.conversion_id = conversion.id if conversion else None
        result.message = (
            "Queue transition completed with conversion logged"
            if conversion
            else "Queue transition completed"
        )
        return result

    async def _evaluate_eligibility(
        self,
        user_id: int,
        from_cat: QueueCategory | None,
        to_cat: QueueCategory | None,
        audit_meta: dict[str, Any],
    ) -> tuple[EligibilityDecision, GroundTruthFacts] | None:
        """Read ground truth and apply the decision table.

        Returns:
            (decision, facts), or None when ground truth could not be read
        """
        if from_cat is None:
            return EligibilityDecision.not_eligible("User was not in a queue"), GroundTruthFacts(False)

        try:
            facts = await self._ground_truth.read_facts(user_id)
        except ReadFailure as e:
            audit_meta["conversionCheckSkippedDueToError"] = True
            audit_meta["readError"] = e.error_code
            audit_meta["readErrorMessage"] = e.message
            log.warning(
                "Conversion check skipped, ground truth unavailable",
                user_id=user_id,
                error_code=e.error_code,
                error=e.message,
            )
            return None

        decision = decide_conversion(from_cat, to_cat, facts)
        audit_meta["eligibility"] = {
            "eligible": decision.eligible,
            "conversionType": decision.conversion_type.value if decision.conversion_type else None,
            "reason": decision.reason,
            "hasSignature": facts.has_signature,
            "pendingRequirements": facts.pending_count,
        }
        return decision, facts

    async def _log_conversion(
        self,
        session: AsyncSession,
        ledger: ConversionRepository,
        row: UserCallScoreModel,
        decision: EligibilityDecision,
        facts: GroundTruthFacts,
        *,
        from_cat: QueueCategory,
        reason: str,
        source: str,
        converted_at: datetime,
        audit_meta: dict[str, Any],
        result: TransitionResult,
    ) -> ConversionModel | None:
        """Insert the conversion inside a savepoint; failures only roll back the savepoint.

        Raises:
            FatalStoreError: The decision is eligible but names no conversion type
        """
        conversion_type = decision.conversion_type
        if conversion_type is None:
            raise FatalStoreError(
                "Eligible decision has no conversion type",
                details={"user_id": row.user_id, "reason": decision.reason},
            )

        conversion = ConversionModel(
            user_id=row.user_id,
            previous_queue_category=from_cat.value,
            conversion_type=conversion_type.value,
            reason=f"{decision.reason} | {reason}",
            source=source,
            converted_at=converted_at,
            final_score=row.current_score,
            total_call_attempts=row.total_attempts,
            last_call_at=row.last_call_at,
            signature_obtained=(
                conversion_type == ConversionType.SIGNATURE_OBTAINED or facts.has_signature
            ),
            meta={"pendingRequirements": facts.pending_count},
        )

        try:
            async with session.begin_nested():
                saved = await ledger.record(conversion)
        except SQLAlchemyError as e:
            result.conversion_error = str(e)
            audit_meta["conversionError"] = str(e)
            log.warning(
                "Conversion insert failed, continuing with queue change",
                user_id=row.user_id,
                conversion_type=conversion_type.value,
                error=str(e),
            )
            return None

        if saved is None:
            audit_meta["conversionDeduplicated"] = True
            log.info(
                "Conversion suppressed as duplicate",
                user_id=row.user_id,
                conversion_type=conversion_type.value,
                window_minutes=int(self._dedup_window.total_seconds() // 60),
            )
        return saved

    def _validate(
        self,
        user_id: Any,
        from_category: QueueCategory | str | None,
        to_category: QueueCategory | str | None,
        reason: Any,
        source: Any,
    ) -> tuple[QueueCategory | None, QueueCategory | None]:
        if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
            raise ValidationError("user_id must be a positive integer", details={"user_id": user_id})
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("reason is required", details={"user_id": user_id})
        if not isinstance(source, str) or not source.strip():
            raise ValidationError("source is required", details={"user_id": user_id})
        return parse_category(from_category), parse_category(to_category)

    # ========================================================================
    # Variants
    # ========================================================================

    async def bulk_transition(
        self,
        requests: Sequence[TransitionRequest],
        *,
        max_concurrency: int | None = None,
    ) -> BulkTransitionResult:
        """Apply many transitions with independent per-item guarantees."""
        semaphore = asyncio.Semaphore(max(1, max_concurrency or self._max_concurrency))

        async def _one(request: TransitionRequest) -> TransitionResult:
            async with semaphore:
                return await self.transition(
                    request.user_id,
                    request.from_category,
                    request.to_category,
                    request.reason,
                    request.source,
                    agent_id=request.agent_id,
                    metadata=request.metadata,
                    skip_conversion_check=request.skip_conversion_check,
                )

        results = await asyncio.gather(*(_one(r) for r in requests))

        summary = BulkTransitionResult(results=list(results))
        for item in results:
            summary.processed += 1
            if item.success:
                summary.successful += 1
            else:
                summary.failed += 1
            if item.conversion_logged:
                summary.conversions_logged += 1

        log.info(
            "Bulk transition finished",
            processed=summary.processed,
            successful=summary.successful,
            failed=summary.failed,
            conversions_logged=summary.conversions_logged,
        )
        return summary

    async def emergency_transition(
        self,
        user_id: int,
        from_category: QueueCategory | str | None,
        to_category: QueueCategory | str | None,
        reason: str,
        *,
        operator_id: str,
    ) -> TransitionResult:
        """Operator correction that bypasses the conversion check.

        The reason is mandatory and stored verbatim on the audit row.
        """
        if not isinstance(reason, str) or not reason.strip():
            return TransitionResult.failed(ValidationError("Emergency transitions require a reason"))
        if not operator_id or not str(operator_id).strip():
            return TransitionResult.failed(ValidationError("Emergency transitions require an operator"))

        log.warning(
            "Emergency queue transition requested",
            user_id=user_id,
            from_category=str(from_category) if from_category else None,
            to_category=str(to_category) if to_category else None,
            operator_id=operator_id,
        )
        return await self.transition(
            user_id,
            from_category,
            to_category,
            f"EMERGENCY: {reason.strip()}",
            EMERGENCY_SOURCE,
            agent_id=str(operator_id),
            metadata={
                "emergency": True,
                "operatorReason": reason.strip(),
                "operatorId": str(operator_id),
                "timestamp": utcnow().isoformat(),
                "skipReason": "emergency operator correction",
            },
            skip_conversion_check=True,
        )

    async def deactivate(
        self,
        user_id: int,
        reason: str,
        source: str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Soft-deactivate a user who is active but in no queue.

        Repairs rows that violate the is_active invariant without changing
        any category. Rows still in a queue must go through transition().
        """
        try:
            self._validate(user_id, None, None, reason, source)
        except ValidationError as e:
            return TransitionResult.failed(e)

        async def _apply() -> TransitionResult:
            now = utcnow()
            async with self._session_factory() as session:
                async with session.begin():
                    scores = ScoreRepository(session)
                    row = await scores.get_by_user_id(user_id, for_update=True)
                    if row is None or not row.is_active:
                        return TransitionResult(success=True, message="Already inactive")
                    if row.current_queue_category is not None:
                        raise ValidationError(
                            "User is still queued; use transition()",
                            details={"user_id": user_id, "category": row.current_queue_category},
                        )
                    await scores.deactivate(row, now=now)
                    entry = await TransitionAuditRepository(session).append(
                        user_id=user_id,
                        from_category=None,
                        to_category=None,
                        reason=reason.strip(),
                        source=source.strip(),
                        timestamp=now,
                        metadata={**(metadata or {}), "deactivated": True},
                    )
            return TransitionResult(
                success=True,
                transitioned=True,
                audit_written=True,
                audit_id=entry.id,
                message="User deactivated",
            )

        try:
            result = await asyncio.wait_for(_apply(), timeout=self._store_timeout)
        except ValidationError as e:
            return TransitionResult.failed(e)
        except asyncio.TimeoutError as e:
            return TransitionResult.failed(StoreTimeout("Deactivation timed out", cause=e))
        except SQLAlchemyError as e:
            return TransitionResult.failed(classify_store_exception(e))

        if result.transitioned:
            log.info("User deactivated", user_id=user_id, source=source)
        return result

    # ========================================================================
    # Score Bookkeeping
    # ========================================================================

    async def record_outcome_score(
        self,
        user_id: int,
        outcome: OutcomeType,
        scoring: ScoringPolicy,
        *,
        next_call_delay: timedelta | None,
        next_call_at: datetime | None = None,
    ) -> ScoreUpdate:
        """Apply an outcome's score delta and next-call time to the score row.

        Raises:
            RecordNotFoundError: User has no score row
            WriteConflict / FatalStoreError: Store failure (retry WriteConflict)
            StoreTimeout: Transaction exceeded the store timeout
        """

        async def _apply() -> ScoreUpdate:
            now = utcnow()
            async with self._session_factory() as session:
                async with session.begin():
                    scores = ScoreRepository(session)
                    row = await scores.get_by_user_id(user_id, for_update=True)
                    if row is None:
                        raise RecordNotFoundError(
                            f"No score row for user {user_id}",
                            details={"user_id": user_id},
                        )

                    previous = row.current_score
                    delta = scoring.score_delta_for_outcome(outcome, previous)
                    new_score = scoring.apply(outcome, previous)
                    if next_call_at is not None:
                        next_call_after = next_call_at
                    elif next_call_delay is not None:
                        next_call_after = now + next_call_delay
                    else:
                        next_call_after = None

                    await scores.apply_outcome(
                        row,
                        outcome=outcome.value,
                        new_score=new_score,
                        successful=scoring.is_successful_contact(outcome),
                        next_call_after=next_call_after,
                        now=now,
                    )
                    return ScoreUpdate(
                        user_id=user_id,
                        outcome=outcome,
                        previous_score=previous,
                        new_score=new_score,
                        delta=delta,
                        next_call_after=next_call_after,
                        current_category=row.current_queue_category,
                    )

        try:
            return await asyncio.wait_for(_apply(), timeout=self._store_timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeout("Outcome score update timed out", details={"user_id": user_id}, cause=e) from e
        except SQLAlchemyError as e:
            raise classify_store_exception(e) from e

    async def age_score(self, user_id: int, aging: ScoreAgingPolicy) -> ScoreAgingUpdate | None:
        """Apply the one-off aging delta to a user's score.

        The row is re-checked under its lock, so a user who was deactivated,
        frozen or already aged since the caller looked is left alone.

        Returns:
            ScoreAgingUpdate, or None when the row no longer qualifies

        Raises:
            WriteConflict / FatalStoreError: Store failure
            StoreTimeout: Transaction exceeded the store timeout
        """

        async def _apply() -> ScoreAgingUpdate | None:
            now = utcnow()
            async with self._session_factory() as session:
                async with session.begin():
                    scores = ScoreRepository(session)
                    row = await scores.get_by_user_id(user_id, for_update=True)
                    if (
                        row is None
                        or not row.is_active
                        or row.last_aged_at is not None
                        or not aging.applies_to(row.current_score)
                    ):
                        return None

                    previous = row.current_score
                    await scores.apply_aging(row, delta=aging.delta, now=now)
                    return ScoreAgingUpdate(
                        user_id=user_id,
                        previous_score=previous,
                        new_score=row.current_score,
                        delta=aging.delta,
                    )

        try:
            update = await asyncio.wait_for(_apply(), timeout=self._store_timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeout("Score aging timed out", details={"user_id": user_id}, cause=e) from e
        except SQLAlchemyError as e:
            raise classify_store_exception(e) from e

        if update is not None:
            log.info(
                "Score aged",
                user_id=user_id,
                previous_score=update.previous_score,
                new_score=update.new_score,
            )
        return update

    # ========================================================================
    # Conversion Recovery
    # ========================================================================

    async def record_recovered_conversion(
        self,
        user_id: int,
        from_category: QueueCategory | str,
        to_category: QueueCategory | str | None,
        *,
        converted_at: datetime,
        reason: str,
        source: str,
    ) -> TransitionResult:
        """Log a conversion that a past transition missed. Never changes the category.

        Ground truth is re-read now; the ledger's dedup window is applied
        around `converted_at`, the time of the original transition.
        """
        try:
            from_cat, to_cat = self._validate(user_id, from_category, to_category, reason, source)
        except ValidationError as e:
            return TransitionResult.failed(e)

        async def _apply() -> TransitionResult:
            result = TransitionResult(success=True)
            async with self._session_factory() as session:
                async with session.begin():
                    scores = ScoreRepository(session)
                    row = await scores.get_by_user_id(user_id, for_update=True)
                    if row is None:
                        result.message = "No score row"
                        return result

                    meta: dict[str, Any] = {}
                    evaluated = await self._evaluate_eligibility(user_id, from_cat, to_cat, meta)
                    if evaluated is None:
                        result.conversion_check_skipped = True
                        result.message = "Ground truth unavailable"
                        return result

                    decision, facts = evaluated
                    if not decision.eligible:
                        result.message = decision.reason
                        return result

                    conversion = await self._log_conversion(
                        session,
                        ConversionRepository(session, self._dedup_window),
                        row,
                        decision,
                        facts,
                        from_cat=from_cat,  # type: ignore[arg-type]
                        reason=reason.strip(),
                        source=source.strip(),
                        converted_at=converted_at,
                        audit_meta=meta,
                        result=result,
                    )
                    if conversion is not None:
                        result.conversion_logged = True
                        result.conversion_id = conversion.id
                        result.message = "Conversion recovered"
                    else:
                        result.message = meta.get("conversionError") or "Duplicate conversion suppressed"
            return result

        try:
            return await asyncio.wait_for(_apply(), timeout=self._store_timeout)
        except asyncio.TimeoutError as e:
            return TransitionResult.failed(StoreTimeout("Conversion recovery timed out", cause=e))
        except SQLAlchemyError as e:
            return TransitionResult.failed(classify_store_exception(e))
        except DialerEngineError as e:
            return TransitionResult.failed(e)
