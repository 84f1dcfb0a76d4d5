"""Health check endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from dialer_engine import __version__
from dialer_engine.dependencies import ContainerDep, EngineContainer


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    version: str
    environment: str
    checks: dict[str, Any]


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    status: str
    checks: dict[str, str]


@router.get("/health")
async def health_check(container: ContainerDep) -> HealthResponse:
    """Perform health check.

    Components checked:
    - API: Always ok if reachable
    - Database: Connectivity test via SELECT 1
    - Ground truth: reader type and circuit breaker state
    """
    database = await _check_database(container)
    checks: dict[str, Any] = {
        "api": "ok",
        "database": database,
        "ground_truth": container.ground_truth.status(),
    }

    circuit = checks["ground_truth"].get("circuit", {})
    if database != "ok":
        status = "unhealthy"
    elif circuit.get("state") == "open":
        status = "degraded"
    else:
        status = "healthy"

    return HealthResponse(
        status=status,
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        environment=container.settings.environment,
        checks=checks,
    )


@router.get("/ready")
async def readiness_check(container: ContainerDep) -> ReadinessResponse:
    """Ready means the primary store answers."""
    db_status = await _check_database(container)
    checks = {"database": db_status if isinstance(db_status, str) else db_status.get("status", "error")}
    return ReadinessResponse(status="ready" if checks["database"] == "ok" else "not_ready", checks=checks)


async def _check_database(container: EngineContainer) -> str | dict[str, Any]:
    """Execute SELECT 1 against the primary store.

    Returns:
        "ok" if connected, error details otherwise
    """
    try:
        async with container.session_factory() as db:
            result = await db.execute(text("SELECT 1"))
            result.fetchone()
        return "ok"
    except (SQLAlchemyError, OSError) as e:
        return {
            "status": "error",
            "message": str(e),
        }
