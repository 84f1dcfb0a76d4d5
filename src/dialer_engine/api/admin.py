"""Operator API.

Emergency queue corrections and conversion capture monitoring. All
endpoints require the admin bearer token.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from dialer_engine.api.security import require_admin_token
from dialer_engine.core.log import get_logger
from dialer_engine.dependencies import LeakMonitorDep, TransitionServiceDep

log = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin_token)])


# ============================================================================
# Request Models
# ============================================================================


class EmergencyTransitionRequest(BaseModel):
    """Operator correction that bypasses the conversion check."""

    user_id: int = Field(..., gt=0)
    from_category: str | None = Field(None, description="Category the user is in, null if none")
    to_category: str | None = Field(None, description="Target category, null removes the user")
    reason: str = Field(..., min_length=10, description="Why the correction is needed")
    operator_id: str = Field(..., min_length=1, description="Operator performing the correction")


class LeakRecoveryRequest(BaseModel):
    lookback_minutes: int | None = Field(None, gt=0, le=7 * 24 * 60)
    dry_run: bool = True


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/emergency-transition")
async def emergency_transition(
    request: EmergencyTransitionRequest,
    transitions: TransitionServiceDep,
) -> dict[str, Any]:
    """Force a queue change without the conversion check.

    The audit row carries the operator, the reason and an emergency flag.
    """
    result = await transitions.emergency_transition(
        request.user_id,
        request.from_category,
        request.to_category,
        request.reason,
        operator_id=request.operator_id,
    )
    log.warning(
        "Emergency transition processed",
        user_id=request.user_id,
        operator_id=request.operator_id,
        success=result.success,
    )
    return result.to_dict()


@router.get("/conversion-health")
async def conversion_health(
    monitor: LeakMonitorDep,
    hours: int = Query(24, ge=1, le=24 * 30, description="Window in hours"),
) -> dict[str, Any]:
    """Conversion capture rate over the window."""
    return await monitor.health(hours)


@router.post("/conversion-leaks/recover")
async def recover_conversion_leaks(
    monitor: LeakMonitorDep,
    request: LeakRecoveryRequest | None = None,
) -> dict[str, Any]:
    """Find queue exits with no conversion and log the ones ground truth confirms.

    Defaults to a dry run.
    """
    request = request or LeakRecoveryRequest()
    lookback = timedelta(minutes=request.lookback_minutes) if request.lookback_minutes else None
    report = await monitor.recover(lookback, dry_run=request.dry_run)
    return report.to_dict()
