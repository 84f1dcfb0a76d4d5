"""Outcome ingestion API.

Call, SMS and voice subsystems report contact outcomes here.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from dialer_engine.core.log import get_logger
from dialer_engine.dependencies import OutcomeServiceDep

log = get_logger(__name__)

router = APIRouter(prefix="/outcomes", tags=["Outcomes"])


# ============================================================================
# Request/Response Models
# ============================================================================


class OutcomeRequest(BaseModel):
    """Request model for reporting a contact outcome."""

    user_id: int = Field(..., gt=0, description="External user ID")
    outcome_type: str = Field(..., description="Outcome type, e.g. no_answer or going_to_complete")
    next_call_at: datetime | None = Field(
        None,
        description="Agent-agreed callback time (required for going_to_complete)",
    )
    agent_id: str | None = Field(None, description="Agent who handled the contact")
    metadata: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Endpoints
# ============================================================================


@router.post("")
async def report_outcome(request: OutcomeRequest, outcomes: OutcomeServiceDep) -> dict[str, Any]:
    """Record a contact outcome.

    Updates the user's score and next-call time, and removes the user from
    their queue when the outcome calls for it.

    Returns:
        Score update and, if the user was removed, the transition result
    """
    result = await outcomes.report_outcome(
        request.user_id,
        request.outcome_type,
        request.metadata,
        next_call_at=request.next_call_at,
        agent_id=request.agent_id,
    )
    return result.to_dict()
