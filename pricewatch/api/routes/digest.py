"""Digest trigger and run status routes."""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.api.deps import get_database, get_task_runner
from pricewatch.db import jobs
from pricewatch.db.models import DigestRun
from pricewatch.worker.job_queue import QueueUnavailableError
from pricewatch.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/digest", tags=["digest"])


class TriggerDigestRequest(BaseModel):
    triggered_by: str = "manual"


class TriggerDigestResponse(BaseModel):
    job_id: str
    run_id: str


class DigestRunResponse(BaseModel):
    run_id: str
    trigger: str
    triggered_by: Optional[str] = None
    state: str
    slot_key: Optional[str]
    total_products: int
    succeeded_count: int
    failed_count: int
    error_message: Optional[str]
    report_sent_at: Optional[datetime]
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    children: Dict[str, int] = {}

    class Config:
        from_attributes = True


@router.post("/trigger", response_model=TriggerDigestResponse, status_code=202)
async def trigger_digest(
    request: TriggerDigestRequest = TriggerDigestRequest(),
    runner: TaskRunner = Depends(get_task_runner),
):
    """
    Start a manual digest run.

    Manual runs check every active product and send a report, but never move
    the scheduled last-send marker.
    """
    logger.info(f"Manual digest requested by {request.triggered_by}")
    try:
        job_id, run_id = await runner.trigger_digest("manual", triggered_by=request.triggered_by)
    except QueueUnavailableError as e:
        logger.error(f"Could not queue digest run: {e}")
        raise HTTPException(status_code=503, detail="Job queue unavailable")
    return TriggerDigestResponse(job_id=job_id, run_id=run_id)


@router.get("/runs", response_model=List[DigestRunResponse])
async def list_runs(
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_database),
):
    """Most recent digest runs."""
    result = await db.execute(select(DigestRun).order_by(DigestRun.created_at.desc()).limit(limit))
    return result.scalars().all()


@router.get("/runs/{run_id}", response_model=DigestRunResponse)
async def get_run(run_id: str, db: AsyncSession = Depends(get_database)):
    """Run state plus per-status counts of its check jobs."""
    run = await jobs.get_digest_run(db, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Digest run not found")

    response = DigestRunResponse.model_validate(run)
    response.children = await jobs.count_children_by_status(db, run.id)
    return response
