"""Scheduled job trigger API.

Invoked by the external scheduler with the cron shared secret. Each call
runs one bounded batch; callers resume with the returned next_offset.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from dialer_engine.api.security import require_cron_secret
from dialer_engine.core.log import get_logger
from dialer_engine.dependencies import ContainerDep
from dialer_engine.services.jobs import JobRequest, available_jobs

log = get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["Jobs"], dependencies=[Depends(require_cron_secret)])


class JobRunRequest(BaseModel):
    """Request model for a job invocation."""

    offset: int | None = Field(None, ge=0, description="Resume after this user_id")
    batch_size: int | None = Field(None, gt=0, description="Rows to scan in this invocation")
    dry_run: bool = Field(False, description="Analyse without writing")


@router.get("")
async def list_jobs() -> dict[str, Any]:
    """List the available jobs."""
    return {"jobs": list(available_jobs())}


@router.post("/{job_name}")
async def run_job(
    job_name: str,
    container: ContainerDep,
    request: JobRunRequest | None = None,
) -> dict[str, Any]:
    """Run one batch of a discovery / backfill job.

    Args:
        job_name: Registered job name
        request: offset, batch_size and dry_run

    Returns:
        Job summary with next_offset for continuation
    """
    request = request or JobRunRequest()
    job = container.job(job_name)
    result = await job.run(
        JobRequest(offset=request.offset, batch_size=request.batch_size, dry_run=request.dry_run)
    )
    return result.to_dict()
