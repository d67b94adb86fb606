"""Job status routes."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.api.deps import get_database, get_task_runner
from pricewatch.db import jobs
from pricewatch.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


class JobStatusResponse(BaseModel):
    job_id: str
    kind: str  # check, digest
    status: str
    attempts: int = 0
    product_id: Optional[int] = None
    url: Optional[str] = None
    run_id: Optional[str] = None
    failure_reason: Optional[str] = None
    error_message: Optional[str] = None
    tier: Optional[str] = None
    method: Optional[str] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job(
    job_id: str,
    db: AsyncSession = Depends(get_database),
    runner: TaskRunner = Depends(get_task_runner),
):
    """
    Status of a queued job.

    Check jobs are read from the database; other jobs (digest triggers) from
    the queue's own record.
    """
    job = await jobs.get_check_job(db, job_id)
    if job:
        return JobStatusResponse(
            job_id=job.job_id,
            kind="check",
            status=job.status,
            attempts=job.attempts,
            product_id=job.product_id,
            url=job.url,
            failure_reason=job.failure_reason,
            error_message=job.error_message,
            tier=job.tier,
            method=job.method,
            created_at=job.created_at,
            finished_at=job.finished_at,
        )

    try:
        queued = await runner.queue.get_job(job_id)
    except Exception as e:
        logger.error(f"Could not read job {job_id} from queue: {e}")
        raise HTTPException(status_code=503, detail="Job queue unavailable")
    if not queued:
        raise HTTPException(status_code=404, detail="Job not found")

    payload = queued.get("payload") or {}
    return JobStatusResponse(
        job_id=job_id,
        kind=queued.get("queue", "unknown"),
        status=queued.get("state", "unknown"),
        attempts=queued.get("attempts", 0),
        run_id=payload.get("run_id"),
        error_message=queued.get("last_error"),
    )
