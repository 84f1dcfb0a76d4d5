"""Conversion leak monitor.

Finds queue exits that should have produced a conversion but did not, for
example because ground truth lagged at transition time, and logs the missing
conversions after the fact.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from dialer_engine.core.log import get_logger
from dialer_engine.db.base import as_utc, utcnow
from dialer_engine.db.repositories.audit import TransitionAuditRepository
from dialer_engine.db.repositories.conversions import ConversionRepository
from dialer_engine.services.eligibility import QueueCategory
from dialer_engine.services.transition import QueueTransitionService

log = get_logger(__name__)

RECOVERY_SOURCE = "leak_recovery_monitor"

_QUEUE_CATEGORIES = [c.value for c in QueueCategory]


@dataclass
class ConversionLeak:
    """An audit row for a queue exit with no matching conversion."""

    audit_id: UUID
    user_id: int
    from_category: str
    to_category: str | None
    timestamp: datetime
    source: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "audit_id": str(self.audit_id),
            "user_id": self.user_id,
            "from_category": self.from_category,
            "to_category": self.to_category,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


@dataclass
class RecoveryReport:
    dry_run: bool
    leaks_found: int = 0
    recovered: int = 0
    not_eligible: int = 0
    failed: int = 0
    leaks: list[ConversionLeak] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "leaks_found": self.leaks_found,
            "recovered": self.recovered,
            "not_eligible": self.not_eligible,
            "failed": self.failed,
            "leaks": [leak.to_dict() for leak in self.leaks],
        }


class ConversionLeakMonitor:
    """Scan the audit trail for missed conversions and recover them.

    Args:
        transition_service: Used for its session factory and to log recovered conversions
        match_tolerance: A conversion this close to the audit timestamp counts as captured
        default_lookback: Window scanned when the caller gives none
    """

    def __init__(
        self,
        transition_service: QueueTransitionService,
        *,
        match_tolerance: timedelta = timedelta(minutes=5),
        default_lookback: timedelta = timedelta(hours=1),
    ) -> None:
        self._transitions = transition_service
        self._tolerance = match_tolerance
        self._default_lookback = default_lookback

    async def scan(self, lookback: timedelta | None = None, *, limit: int = 500) -> list[ConversionLeak]:
        """Find queue exits in the lookback window with no conversion."""
        since = utcnow() - (lookback or self._default_lookback)
        leaks: list[ConversionLeak] = []

        async with self._transitions.session_factory() as session:
            audit = TransitionAuditRepository(session)
            ledger = ConversionRepository(session)
            rows = await audit.find_unlogged_exits(since, _QUEUE_CATEGORIES, limit=limit)

            for row in rows:
                if (row.meta or {}).get("conversionCheckSkipped"):
                    continue
                timestamp = as_utc(row.timestamp)
                if await ledger.exists_near(row.user_id, timestamp, self._tolerance):
                    continue
                leaks.append(
                    ConversionLeak(
                        audit_id=row.id,
                        user_id=row.user_id,
                        from_category=row.from_queue_category,
                        to_category=row.to_queue_category,
                        timestamp=timestamp,
                        source=row.source,
                    )
                )

        if leaks:
            log.warning("Conversion leaks detected", count=len(leaks), since=since.isoformat())
        else:
            log.info("No conversion leaks detected", since=since.isoformat())
        return leaks

    async def recover(
        self,
        lookback: timedelta | None = None,
        *,
        dry_run: bool = False,
        limit: int = 500,
    ) -> RecoveryReport:
        """Log conversions for leaks that ground truth still confirms."""
        leaks = await self.scan(lookback, limit=limit)
        report = RecoveryReport(dry_run=dry_run, leaks_found=len(leaks), leaks=leaks)
        if dry_run:
            return report

        for leak in leaks:
            result = await self._transitions.record_recovered_conversion(
                leak.user_id,
                leak.from_category,
                leak.to_category,
                converted_at=leak.timestamp,
                reason=f"Recovered missed conversion for transition {leak.audit_id} ({leak.source})",
                source=RECOVERY_SOURCE,
            )
            if not result.success or result.conversion_error:
                report.failed += 1
            elif result.conversion_logged:
                report.recovered += 1
            else:
                report.not_eligible += 1

        log.info(
            "Conversion leak recovery finished",
            leaks_found=report.leaks_found,
            recovered=report.recovered,
            not_eligible=report.not_eligible,
            failed=report.failed,
        )
        return report

    async def health(self, hours: int = 24) -> dict[str, Any]:
        """Conversion capture rate over the last `hours`."""
        since = utcnow() - timedelta(hours=hours)
        async with self._transitions.session_factory() as session:
            stats = await TransitionAuditRepository(session).capture_stats(since, _QUEUE_CATEGORIES)
            conversions = await ConversionRepository(session).count_since(since)

        exits = stats["queue_exits"]
        logged = stats["conversions_logged"]
        capture_rate = round(logged / exits, 4) if exits else None

        return {
            "window_hours": hours,
            "queue_exits": exits,
            "conversions_logged": logged,
            "conversions_total": conversions,
            "capture_rate": capture_rate,
            "status": "healthy" if capture_rate is None or capture_rate > 0 else "degraded",
        }
