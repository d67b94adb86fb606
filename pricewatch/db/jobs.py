"""Persistence for check jobs and digest runs."""

import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence
from uuid import uuid4

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db.models import CheckJob, DigestRun

logger = logging.getLogger(__name__)

PENDING_STATUSES = ("queued", "running")
TERMINAL_STATUSES = ("succeeded", "failed")


def new_id() -> str:
    return uuid4().hex


# ---------------------------------------------------------------------------
# Check jobs
# ---------------------------------------------------------------------------

async def create_check_job(
    db: AsyncSession,
    product_id: Optional[int] = None,
    job_id: Optional[str] = None,
    url: Optional[str] = None,
    digest_run_id: Optional[int] = None,
) -> CheckJob:
    job = CheckJob(
        job_id=job_id or new_id(),
        product_id=product_id,
        url=url,
        digest_run_id=digest_run_id,
        status="queued",
    )
    db.add(job)
    await db.commit()
    await db.refresh(job)
    return job


async def get_check_job(db: AsyncSession, job_id: str) -> Optional[CheckJob]:
    result = await db.execute(select(CheckJob).where(CheckJob.job_id == job_id))
    return result.scalar_one_or_none()


async def claim_check_job(db: AsyncSession, job_id: str, lease_seconds: float) -> bool:
    """
    Move a job to ``running`` for this attempt.

    A queued job is claimed outright; a running job only once its previous
    attempt has held it for longer than ``lease_seconds`` (that worker died).
    Returns False when another live attempt owns the job or it is terminal.
    """
    now = datetime.utcnow()
    result = await db.execute(
        update(CheckJob)
        .where(
            CheckJob.job_id == job_id,
            or_(
                CheckJob.status == "queued",
                and_(
                    CheckJob.status == "running",
                    CheckJob.started_at < now - timedelta(seconds=lease_seconds),
                ),
            ),
        )
        .values(
            status="running",
            started_at=now,
            attempts=CheckJob.attempts + 1,
        )
    )
    await db.commit()
    return result.rowcount == 1


async def finish_check_job(
    db: AsyncSession,
    job_id: str,
    succeeded: bool,
    failure_reason: Optional[str] = None,
    error_message: Optional[str] = None,
    tier: Optional[str] = None,
    method: Optional[str] = None,
    product_id: Optional[int] = None,
) -> bool:
    """
    Move a job to its terminal state.

    Only a pending job transitions, so the first terminal write wins when a
    message is delivered twice. Returns True if this call made the transition.
    """
    values = {
        "status": "succeeded" if succeeded else "failed",
        "failure_reason": failure_reason,
        "error_message": error_message,
        "tier": tier,
        "method": method,
        "finished_at": datetime.utcnow(),
    }
    if product_id is not None:
        values["product_id"] = product_id
    result = await db.execute(
        update(CheckJob)
        .where(CheckJob.job_id == job_id, CheckJob.status.in_(PENDING_STATUSES))
        .values(**values)
    )
    await db.commit()
    return result.rowcount == 1


async def fail_pending_children(
    db: AsyncSession,
    digest_run_id: int,
    reason: str,
    message: str,
) -> int:
    """Mark every still-pending child of a run failed. Returns the count."""
    result = await db.execute(
        update(CheckJob)
        .where(
            CheckJob.digest_run_id == digest_run_id,
            CheckJob.status.in_(PENDING_STATUSES),
        )
        .values(
            status="failed",
            failure_reason=reason,
            error_message=message,
            finished_at=datetime.utcnow(),
        )
    )
    await db.commit()
    return result.rowcount


async def get_run_children(db: AsyncSession, digest_run_id: int) -> Sequence[CheckJob]:
    result = await db.execute(
        select(CheckJob)
        .where(CheckJob.digest_run_id == digest_run_id)
        .order_by(CheckJob.id)
    )
    return result.scalars().all()


async def count_children_by_status(db: AsyncSession, digest_run_id: int) -> dict[str, int]:
    result = await db.execute(
        select(CheckJob.status, func.count(CheckJob.id))
        .where(CheckJob.digest_run_id == digest_run_id)
        .group_by(CheckJob.status)
    )
    return {status: count for status, count in result.all()}


# ---------------------------------------------------------------------------
# Digest runs
# ---------------------------------------------------------------------------

async def create_digest_run(
    db: AsyncSession,
    trigger: str,
    slot_key: Optional[str] = None,
    previous_last_sent_at: Optional[str] = None,
    triggered_by: Optional[str] = None,
) -> DigestRun:
    """
    Insert a PENDING digest run.

    Raises IntegrityError when ``slot_key`` was already claimed.
    """
    run = DigestRun(
        run_id=new_id(),
        trigger=trigger,
        triggered_by=triggered_by,
        state="pending",
        slot_key=slot_key,
        previous_last_sent_at=previous_last_sent_at,
    )
    db.add(run)
    await db.commit()
    await db.refresh(run)
    return run


async def get_digest_run(db: AsyncSession, run_id: str) -> Optional[DigestRun]:
    result = await db.execute(select(DigestRun).where(DigestRun.run_id == run_id))
    return result.scalar_one_or_none()


async def get_digest_run_by_slot(db: AsyncSession, slot_key: str) -> Optional[DigestRun]:
    result = await db.execute(select(DigestRun).where(DigestRun.slot_key == slot_key))
    return result.scalar_one_or_none()


async def release_failed_slot(db: AsyncSession, slot_key: str) -> Optional[str]:
    """
    Free a slot held by a FAILED run so the slot can be claimed again.

    The failed run keeps its row; its slot key is suffixed with its own run id.
    Returns the failed run's id, or None when the slot is free or held by a
    run that has not failed.
    """
    run = await get_digest_run_by_slot(db, slot_key)
    if run is None or run.state != "failed":
        return None
    result = await db.execute(
        update(DigestRun)
        .where(DigestRun.id == run.id, DigestRun.state == "failed", DigestRun.slot_key == slot_key)
        .values(slot_key=f"{slot_key}~{run.run_id[:8]}")
    )
    await db.commit()
    return run.run_id if result.rowcount == 1 else None


async def update_digest_run(db: AsyncSession, run_id: str, **values) -> None:
    await db.execute(
        update(DigestRun).where(DigestRun.run_id == run_id).values(**values)
    )
    await db.commit()


async def delete_digest_run(db: AsyncSession, run_id: str) -> None:
    """Drop a run that never reached the queue, releasing its slot claim."""
    await db.execute(delete(DigestRun).where(DigestRun.run_id == run_id))
    await db.commit()
