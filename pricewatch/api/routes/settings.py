"""Digest schedule settings routes."""

import logging
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.api.deps import get_database
from pricewatch.config import settings
from pricewatch.db import repository
from pricewatch.worker.schedule import (
    ScheduleConfig,
    describe_schedule,
    next_send_time,
    to_cron_expression,
    to_local,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["settings"])


class EmailScheduleUpdate(BaseModel):
    frequency: Literal["daily", "weekly"] = "daily"
    hour: int = Field(9, ge=0, le=23)
    day_of_week: Optional[int] = Field(None, ge=1, le=7, description="ISO weekday, 1=Monday")


class EmailScheduleResponse(BaseModel):
    frequency: str
    hour: int
    day_of_week: Optional[int]
    cron: str
    description: str
    timezone: str
    last_sent_at: Optional[datetime]
    next_send_time: datetime


async def _schedule_response(db: AsyncSession) -> EmailScheduleResponse:
    config = await repository.get_schedule_config(db)
    last_sent_at = await repository.get_last_sent_at(db)
    tz_name = settings.schedule_timezone
    now_local = to_local(datetime.utcnow(), tz_name)

    return EmailScheduleResponse(
        frequency=config.frequency,
        hour=config.hour,
        day_of_week=config.weekday if config.frequency == "weekly" else None,
        cron=to_cron_expression(config),
        description=describe_schedule(config),
        timezone=tz_name,
        last_sent_at=last_sent_at,
        next_send_time=next_send_time(to_local(last_sent_at, tz_name), config, now_local),
    )


@router.get("/email-schedule", response_model=EmailScheduleResponse)
async def get_email_schedule(db: AsyncSession = Depends(get_database)):
    """Current digest schedule and the next send slot (in the schedule timezone)."""
    return await _schedule_response(db)


@router.put("/email-schedule", response_model=EmailScheduleResponse)
async def update_email_schedule(
    update: EmailScheduleUpdate,
    db: AsyncSession = Depends(get_database),
):
    """Replace the digest schedule. Takes effect on the next tick."""
    try:
        config = ScheduleConfig(
            frequency=update.frequency,
            hour=update.hour,
            day_of_week=update.day_of_week,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    await repository.set_schedule_config(db, config)
    logger.info(f"Digest schedule updated: {describe_schedule(config)} ({to_cron_expression(config)})")
    return await _schedule_response(db)
