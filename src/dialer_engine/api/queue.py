"""Queue query API.

Read-only views over the score store and the conversion and audit trails.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query

from dialer_engine.core.exceptions import RecordNotFoundError
from dialer_engine.db.repositories import (
    ConversionRepository,
    ScoreRepository,
    TransitionAuditRepository,
)
from dialer_engine.dependencies import SessionDep
from dialer_engine.services.eligibility import QueueCategory, parse_category
from dialer_engine.services.scoring import score_band

router = APIRouter(prefix="/queue", tags=["Queue"])


@router.get("/stats")
async def queue_stats(db: SessionDep) -> dict[str, Any]:
    """Row counts per queue category."""
    counts = await ScoreRepository(db).category_counts()
    by_category = {c.value: counts.get(c.value, 0) for c in QueueCategory}
    return {
        "by_category": by_category,
        "not_queued": counts.get(None, 0),
        "total": sum(counts.values()),
    }


@router.get("/users/{user_id}")
async def get_user_queue_state(user_id: int, db: SessionDep) -> dict[str, Any]:
    """Current category, score and next-call time for a user.

    Raises:
        RecordNotFoundError: User has no score row
    """
    row = await ScoreRepository(db).get_by_user_id(user_id)
    if row is None:
        raise RecordNotFoundError(f"No score row for user {user_id}", details={"user_id": user_id})
    data = row.to_dict()
    data["score_band"] = score_band(row.current_score)
    return data


@router.get("/users/{user_id}/conversions")
async def get_user_conversions(
    user_id: int,
    db: SessionDep,
    limit: int = Query(50, ge=1, le=500),
) -> dict[str, Any]:
    conversions = await ConversionRepository(db).list_for_user(user_id, limit=limit)
    return {"user_id": user_id, "conversions": [c.to_dict() for c in conversions]}


@router.get("/users/{user_id}/transitions")
async def get_user_transitions(
    user_id: int,
    db: SessionDep,
    limit: int = Query(50, ge=1, le=500),
) -> dict[str, Any]:
    """Audit history for a user, newest first."""
    entries = await TransitionAuditRepository(db).list_for_user(user_id, limit=limit)
    return {"user_id": user_id, "transitions": [e.to_dict() for e in entries]}


@router.get("/{category}/next")
async def next_callable_users(
    category: str,
    db: SessionDep,
    limit: int = Query(20, ge=1, le=200),
) -> dict[str, Any]:
    """Users who may be called now, highest priority (lowest score) first.

    Raises:
        ValidationError: Unknown category
        RecordNotFoundError: "null" or "none", which is not a queue
    """
    parsed = parse_category(category)
    if parsed is None:
        raise RecordNotFoundError(f"Queue not found: {category}", details={"category": category})
    rows = await ScoreRepository(db).get_callable(parsed.value, limit=limit)
    return {
        "category": parsed.value,
        "users": [
            {
                "user_id": row.user_id,
                "current_score": row.current_score,
                "score_band": score_band(row.current_score),
                "next_call_after": row.next_call_after.isoformat() if row.next_call_after else None,
                "last_outcome": row.last_outcome,
            }
            for row in rows
        ],
    }
