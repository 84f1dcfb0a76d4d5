"""Queue discovery and backfill jobs.

Scheduled reconcilers that find score rows whose queue state disagrees with
ground truth and correct them through QueueTransitionService, plus the
score aging job. None of them write the score store directly.

Each run:
- scans a bounded, keyset-paginated batch (offset = last scanned user_id),
- stops before the wall-clock budget and hands back a continuation offset,
- skips users whose ground truth cannot be read (reported as errors),
- in dry-run mode performs every read and decision but no writes.

Running a job twice leaves the same end state as running it once. Two
overlapping runs are safe because the transition service serializes per
user and deduplicates conversions.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, ClassVar, Sequence

from dialer_engine.core.exceptions import DialerEngineError, ReadFailure, ValidationError
from dialer_engine.core.log import get_logger
from dialer_engine.db.base import utcnow
from dialer_engine.db.models.scores import UserCallScoreModel
from dialer_engine.db.repositories.scores import ScoreRepository
from dialer_engine.services.eligibility import (
    GroundTruthFacts,
    QueueCategory,
    derive_category,
    parse_category,
)
from dialer_engine.services.ground_truth import GroundTruthReader
from dialer_engine.services.scoring import (
    DEFAULT_SCORE_AGING,
    FROZEN_SCORE,
    ScoreAgingPolicy,
    ScoringPolicy,
)
from dialer_engine.services.transition import QueueTransitionService, TransitionResult

log = get_logger(__name__)


# =============================================================================
# Request / Result Types
# =============================================================================


@dataclass
class JobRequest:
    """Job invocation parameters.

    Attributes:
        offset: Resume after this user_id (None or 0 starts from the beginning)
        batch_size: Rows to scan in this invocation
        dry_run: Analyse only, write nothing
    """

    offset: int | None = None
    batch_size: int | None = None
    dry_run: bool = False


@dataclass
class JobError:
    user_id: int | None
    error_code: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "error_code": self.error_code, "message": self.message}


@dataclass
class PlannedChange:
    """A correction a job wants to apply to one user."""

    user_id: int
    from_category: QueueCategory | None
    to_category: QueueCategory | None
    reason: str
    action: str = "transition"  # "transition", "deactivate" or "age"

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "from_category": self.from_category.value if self.from_category else None,
            "to_category": self.to_category.value if self.to_category else None,
            "reason": self.reason,
            "action": self.action,
        }


@dataclass
class JobResult:
    job: str
    dry_run: bool = False
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    conversions_logged: int = 0
    errors: list[JobError] = field(default_factory=list)
    changes: list[PlannedChange] = field(default_factory=list)
    next_offset: int | None = None
    budget_exhausted: bool = False
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "dry_run": self.dry_run,
            "processed": self.processed,
            "updated": self.updated,
            "skipped": self.skipped,
            "conversions_logged": self.conversions_logged,
            "errors": [e.to_dict() for e in self.errors],
            "changes": [c.to_dict() for c in self.changes],
            "next_offset": self.next_offset,
            "budget_exhausted": self.budget_exhausted,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


@dataclass
class Candidate:
    """Snapshot of a row (or replica user) selected for reconciliation."""

    user_id: int
    current_category: QueueCategory | None
    is_active: bool
    has_score_row: bool = True
    current_score: int = 0
    load_error: JobError | None = None


@dataclass
class _ItemOutcome:
    status: str  # "updated", "skipped", "error"
    change: PlannedChange | None = None
    error: JobError | None = None
    conversion_logged: bool = False


# =============================================================================
# Base Job
# =============================================================================


class ReconciliationJob(ABC):
    """Base class for discovery / backfill jobs.

    Args:
        transition_service: The shared transition service (the only writer)
        ground_truth: Ground-truth reader
        default_batch_size: Batch size when the request gives none
        max_batch_size: Upper clamp on requested batch sizes
        time_budget_seconds: Wall-clock budget per invocation
        max_concurrency: Users reconciled in parallel
        clock: Monotonic clock, injectable for tests
    """

    name: ClassVar[str]
    description: ClassVar[str] = ""

    def __init__(
        self,
        transition_service: QueueTransitionService,
        ground_truth: GroundTruthReader,
        *,
        default_batch_size: int = 500,
        max_batch_size: int = 2000,
        time_budget_seconds: float = 240.0,
        max_concurrency: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transitions = transition_service
        self._ground_truth = ground_truth
        self._default_batch_size = default_batch_size
        self._max_batch_size = max_batch_size
        self._time_budget = time_budget_seconds
        self._max_concurrency = max(1, max_concurrency)
        self._clock = clock

    @property
    def source(self) -> str:
        return self.name

    async def run(self, request: JobRequest | None = None) -> JobResult:
        """Run one bounded invocation of the job."""
        request = request or JobRequest()
        batch_size = self._resolve_batch_size(request.batch_size)
        after = request.offset or 0
        if after < 0:
            raise ValidationError("offset must be non-negative", details={"offset": after})

        started = self._clock()
        result = JobResult(job=self.name, dry_run=request.dry_run)

        log.info(
            "Job started",
            job=self.name,
            offset=after,
            batch_size=batch_size,
            dry_run=request.dry_run,
        )

        candidates = await self.load_candidates(after, batch_size)
        last_scanned = after

        for start in range(0, len(candidates), self._max_concurrency):
            if self._clock() - started >= self._time_budget:
                result.budget_exhausted = True
                result.next_offset = last_scanned
                log.warning(
                    "Job stopped at time budget",
                    job=self.name,
                    processed=result.processed,
                    next_offset=last_scanned,
                )
                break

            chunk = candidates[start:start + self._max_concurrency]
            outcomes = await asyncio.gather(*(self._process_candidate(c, request.dry_run) for c in chunk))

            for candidate, outcome in zip(chunk, outcomes):
                result.processed += 1
                if outcome.status == "updated":
                    result.updated += 1
                    if outcome.change:
                        result.changes.append(outcome.change)
                elif outcome.status == "error" and outcome.error:
                    result.errors.append(outcome.error)
                else:
                    result.skipped += 1
                if outcome.conversion_logged:
                    result.conversions_logged += 1
                last_scanned = candidate.user_id
        else:
            result.next_offset = last_scanned if len(candidates) >= batch_size else None

        result.elapsed_seconds = self._clock() - started

        log.info(
            "Job finished",
            job=self.name,
            processed=result.processed,
            updated=result.updated,
            skipped=result.skipped,
            errors=len(result.errors),
            next_offset=result.next_offset,
            dry_run=request.dry_run,
        )
        return result

    def _resolve_batch_size(self, requested: int | None) -> int:
        if requested is None:
            return self._default_batch_size
        if requested <= 0:
            raise ValidationError("batch_size must be positive", details={"batch_size": requested})
        return min(requested, self._max_batch_size)

    async def _process_candidate(self, candidate: Candidate, dry_run: bool) -> _ItemOutcome:
        if candidate.load_error is not None:
            log.warning(
                "Skipping unreadable score row",
                job=self.name,
                user_id=candidate.user_id,
                error=candidate.load_error.message,
            )
            return _ItemOutcome(status="error", error=candidate.load_error)
        return await self._process(candidate, dry_run)

    async def _process(self, candidate: Candidate, dry_run: bool) -> _ItemOutcome:
        try:
            facts = await self._ground_truth.read_facts(candidate.user_id)
        except ReadFailure as e:
            log.warning(
                "Skipping user, ground truth unavailable",
                job=self.name,
                user_id=candidate.user_id,
                error_code=e.error_code,
            )
            return _ItemOutcome(
                status="error",
                error=JobError(candidate.user_id, e.error_code, e.message),
            )

        change = self.plan(candidate, facts)
        if change is None:
            return _ItemOutcome(status="skipped")

        if dry_run:
            return _ItemOutcome(status="updated", change=change)

        outcome = await self._apply(change)
        if not outcome.success:
            return _ItemOutcome(
                status="error",
                change=change,
                error=JobError(candidate.user_id, outcome.error_code or "ERROR", outcome.message),
            )
        if not outcome.transitioned:
            return _ItemOutcome(status="skipped")
        return _ItemOutcome(
            status="updated",
            change=change,
            conversion_logged=outcome.conversion_logged,
        )

    async def _apply(self, change: PlannedChange) -> TransitionResult:
        if change.action == "deactivate":
            return await self._transitions.deactivate(
                change.user_id,
                change.reason,
                self.source,
                metadata={"job": self.name},
            )
        return await self._transitions.transition(
            change.user_id,
            change.from_category,
            change.to_category,
            change.reason,
            self.source,
            metadata={"job": self.name},
        )

    async def _scan_scores(self, *conditions: Any, after: int, limit: int) -> list[Candidate]:
        """Load a batch of score rows and release the session before processing."""
        async with self._transitions.session_factory() as session:
            rows = await ScoreRepository(session).scan_batch(
                *conditions,
                after_user_id=after,
                limit=limit,
            )
            return [_to_candidate(row) for row in rows]

    @abstractmethod
    async def load_candidates(self, after: int, limit: int) -> list[Candidate]:
        """Select rows matching the job's inconsistency predicate."""

    @abstractmethod
    def plan(self, candidate: Candidate, facts: GroundTruthFacts) -> PlannedChange | None:
        """Decide the correction for one candidate, or None if it is already correct."""


def _to_candidate(row: UserCallScoreModel) -> Candidate:
    candidate = Candidate(
        user_id=row.user_id,
        current_category=None,
        is_active=row.is_active,
        current_score=row.current_score,
    )
    try:
        candidate.current_category = parse_category(row.current_queue_category)
    except ValidationError as e:
        candidate.load_error = JobError(row.user_id, e.error_code, e.message)
    return candidate


def _describe(facts: GroundTruthFacts) -> str:
    signature = "signed" if facts.has_signature else "unsigned"
    return f"{signature}, {facts.pending_count} pending requirements"


# =============================================================================
# Concrete Jobs
# =============================================================================


class NullQueueBackfillJob(ReconciliationJob):
    """Active users with no queue category: place them or deactivate them."""

    name = "null_queue_backfill"
    description = "Assign a queue to active users whose category is NULL"

    async def load_candidates(self, after: int, limit: int) -> list[Candidate]:
        return await self._scan_scores(
            UserCallScoreModel.current_queue_category.is_(None),
            UserCallScoreModel.is_active.is_(True),
            after=after,
            limit=limit,
        )

    def plan(self, candidate: Candidate, facts: GroundTruthFacts) -> PlannedChange | None:
        target = derive_category(facts)
        if target is None:
            return PlannedChange(
                user_id=candidate.user_id,
                from_category=None,
                to_category=None,
                reason=f"Null queue backfill: no queue applies ({_describe(facts)})",
                action="deactivate",
            )
        return PlannedChange(
            user_id=candidate.user_id,
            from_category=None,
            to_category=target,
            reason=f"Null queue backfill: {_describe(facts)}",
        )


class SignatureConversionCleanupJob(ReconciliationJob):
    """Users still in the unsigned queue who have since signed."""

    name = "signature_cleanup"
    description = "Move signed users out of the unsigned_users queue"

    async def load_candidates(self, after: int, limit: int) -> list[Candidate]:
        return await self._scan_scores(
            UserCallScoreModel.current_queue_category == QueueCategory.UNSIGNED_USERS.value,
            UserCallScoreModel.is_active.is_(True),
            after=after,
            limit=limit,
        )

    def plan(self, candidate: Candidate, facts: GroundTruthFacts) -> PlannedChange | None:
        if not facts.has_signature:
            return None
        return PlannedChange(
            user_id=candidate.user_id,
            from_category=QueueCategory.UNSIGNED_USERS,
            to_category=derive_category(facts),
            reason=f"Signature cleanup: {_describe(facts)}",
        )


class OutstandingRequirementsCleanupJob(ReconciliationJob):
    """Users in the requirements queue with nothing left to chase."""

    name = "outstanding_requirements_cleanup"
    description = "Move users with no valid pending requirements out of outstanding_requirements"

    async def load_candidates(self, after: int, limit: int) -> list[Candidate]:
        return await self._scan_scores(
            UserCallScoreModel.current_queue_category == QueueCategory.OUTSTANDING_REQUIREMENTS.value,
            UserCallScoreModel.is_active.is_(True),
            after=after,
            limit=limit,
        )

    def plan(self, candidate: Candidate, facts: GroundTruthFacts) -> PlannedChange | None:
        target = derive_category(facts)
        if target == QueueCategory.OUTSTANDING_REQUIREMENTS:
            return None
        return PlannedChange(
            user_id=candidate.user_id,
            from_category=QueueCategory.OUTSTANDING_REQUIREMENTS,
            to_category=target,
            reason=f"Outstanding requirements cleanup: {_describe(facts)}",
        )


class NewUsersDiscoveryJob(ReconciliationJob):
    """Recently created users who have no score row yet."""

    name = "new_users_discovery"
    description = "Create queue entries for recently created users"

    def __init__(self, *args: Any, lookback: timedelta = timedelta(hours=24), **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._lookback = lookback

    async def load_candidates(self, after: int, limit: int) -> list[Candidate]:
        user_ids = await self._ground_truth.list_recent_user_ids(
            utcnow() - self._lookback,
            after_user_id=after,
            limit=limit,
        )
        async with self._transitions.session_factory() as session:
            existing = await ScoreRepository(session).existing_user_ids(user_ids)

        # Keep already-known users so the keyset cursor advances past them
        return [
            Candidate(
                user_id=user_id,
                current_category=None,
                is_active=False,
                has_score_row=user_id in existing,
            )
            for user_id in user_ids
        ]

    async def _process(self, candidate: Candidate, dry_run: bool) -> _ItemOutcome:
        if candidate.has_score_row:
            return _ItemOutcome(status="skipped")
        return await super()._process(candidate, dry_run)

    def plan(self, candidate: Candidate, facts: GroundTruthFacts) -> PlannedChange | None:
        target = derive_category(facts)
        if target is None:
            return None
        return PlannedChange(
            user_id=candidate.user_id,
            from_category=None,
            to_category=target,
            reason=f"New user discovery: {_describe(facts)}",
        )


class NewRequirementsDiscoveryJob(ReconciliationJob):
    """Users out of every queue whose ground truth now shows pending requirements.

    Only signed users with valid pending requirements are re-queued. Rows
    removed for good (frozen scores) are never scanned, and unsigned users
    who left the queue stay out until an agent or operator puts them back.
    """

    name = "new_requirements_discovery"
    description = "Re-queue inactive users who have new outstanding requirements"

    async def load_candidates(self, after: int, limit: int) -> list[Candidate]:
        return await self._scan_scores(
            UserCallScoreModel.current_queue_category.is_(None),
            UserCallScoreModel.is_active.is_(False),
            UserCallScoreModel.current_score < FROZEN_SCORE,
            after=after,
            limit=limit,
        )

    def plan(self, candidate: Candidate, facts: GroundTruthFacts) -> PlannedChange | None:
        if derive_category(facts) != QueueCategory.OUTSTANDING_REQUIREMENTS:
            return None
        return PlannedChange(
            user_id=candidate.user_id,
            from_category=None,
            to_category=QueueCategory.OUTSTANDING_REQUIREMENTS,
            reason=f"New requirements discovery: {_describe(facts)}",
        )


class ScoreAgingJob(ReconciliationJob):
    """Additive one-off aging for queued users older than the aging threshold.

    Needs no ground truth. Each row is aged at most once; the stamp written
    with the delta keeps re-runs and overlapping runs from aging it again.
    """

    name = "score_aging"
    description = "Push long-queued users back by the aging delta"

    def __init__(self, *args: Any, aging: ScoreAgingPolicy = DEFAULT_SCORE_AGING, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._aging = aging

    async def load_candidates(self, after: int, limit: int) -> list[Candidate]:
        return await self._scan_scores(
            UserCallScoreModel.is_active.is_(True),
            UserCallScoreModel.current_score < FROZEN_SCORE,
            UserCallScoreModel.last_aged_at.is_(None),
            UserCallScoreModel.created_at <= utcnow() - self._aging.after,
            after=after,
            limit=limit,
        )

    def plan(self, candidate: Candidate, facts: GroundTruthFacts | None = None) -> PlannedChange | None:
        if not self._aging.applies_to(candidate.current_score):
            return None
        return PlannedChange(
            user_id=candidate.user_id,
            from_category=candidate.current_category,
            to_category=candidate.current_category,
            reason=f"Score aging: +{self._aging.delta} after {self._aging.after.days} days",
            action="age",
        )

    async def _process(self, candidate: Candidate, dry_run: bool) -> _ItemOutcome:
        change = self.plan(candidate)
        if change is None:
            return _ItemOutcome(status="skipped")
        if dry_run:
            return _ItemOutcome(status="updated", change=change)

        try:
            update = await self._transitions.age_score(candidate.user_id, self._aging)
        except DialerEngineError as e:
            log.warning(
                "Score aging failed",
                job=self.name,
                user_id=candidate.user_id,
                error_code=e.error_code,
            )
            return _ItemOutcome(
                status="error",
                change=change,
                error=JobError(candidate.user_id, e.error_code, e.message),
            )
        if update is None:
            return _ItemOutcome(status="skipped")
        return _ItemOutcome(status="updated", change=change)


JOBS: dict[str, type[ReconciliationJob]] = {
    job.name: job
    for job in (
        NullQueueBackfillJob,
        SignatureConversionCleanupJob,
        OutstandingRequirementsCleanupJob,
        NewUsersDiscoveryJob,
        NewRequirementsDiscoveryJob,
        ScoreAgingJob,
    )
}


def build_job(
    name: str,
    transition_service: QueueTransitionService,
    ground_truth: GroundTruthReader,
    settings=None,
    **overrides: Any,
) -> ReconciliationJob:
    """Construct a job by name with limits taken from settings.

    Raises:
        ValidationError: Unknown job name
    """
    job_cls = JOBS.get(name)
    if job_cls is None:
        raise ValidationError(f"Unknown job: {name}", details={"available": sorted(JOBS)})

    kwargs: dict[str, Any] = {}
    if settings is not None:
        kwargs.update(
            default_batch_size=settings.jobs.default_batch_size,
            max_batch_size=settings.jobs.max_batch_size,
            time_budget_seconds=settings.jobs.time_budget_seconds,
            max_concurrency=settings.jobs.max_concurrency,
        )
        if job_cls is NewUsersDiscoveryJob:
            kwargs["lookback"] = timedelta(hours=settings.jobs.new_users_lookback_hours)
        elif job_cls is ScoreAgingJob:
            kwargs["aging"] = ScoringPolicy.from_settings(settings).aging
    kwargs.update(overrides)

    return job_cls(transition_service, ground_truth, **kwargs)


def available_jobs() -> Sequence[dict[str, str]]:
    return [{"name": name, "description": cls.description} for name, cls in sorted(JOBS.items())]
