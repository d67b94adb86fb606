"""Ad-hoc price check route."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.api.deps import get_database, get_task_runner
from pricewatch.api.routes.products import JobAccepted
from pricewatch.db import repository
from pricewatch.worker.job_queue import QueueUnavailableError
from pricewatch.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["checks"])


class CheckPriceRequest(BaseModel):
    product_id: int | None = None
    url: str | None = None

    @model_validator(mode="after")
    def require_target(self):
        if self.product_id is None and not self.url:
            raise ValueError("Either product_id or url is required")
        if self.url and not self.url.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return self


@router.post("/check-price", response_model=JobAccepted, status_code=202)
async def check_price(
    request: CheckPriceRequest,
    db: AsyncSession = Depends(get_database),
    runner: TaskRunner = Depends(get_task_runner),
):
    """
    Queue a single price check.

    A URL that is not tracked yet creates an inactive product on success.
    """
    if request.product_id is not None and not await repository.get_product(db, request.product_id):
        raise HTTPException(status_code=404, detail="Product not found")

    try:
        job_id = await runner.enqueue_check(product_id=request.product_id, url=request.url)
    except QueueUnavailableError as e:
        logger.error(f"Could not queue price check: {e}")
        raise HTTPException(status_code=503, detail="Job queue unavailable")
    return JobAccepted(job_id=job_id)
