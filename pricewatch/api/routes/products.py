"""Product management routes."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, field_validator
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.analysis.trends import TrendSummary, build_trend_summary, load_product_observations
from pricewatch.api.deps import get_database, get_task_runner
from pricewatch.db import repository
from pricewatch.db.models import Product
from pricewatch.worker.job_queue import QueueUnavailableError
from pricewatch.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])


def _validate_http_url(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if not v.startswith(("http://", "https://")):
        raise ValueError("URL must start with http:// or https://")
    return v


class ProductCreate(BaseModel):
    url: str
    name: str | None = None
    image_url: str | None = None
    active: bool = True

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _validate_http_url(v)


class ProductUpdate(BaseModel):
    url: str | None = None
    name: str | None = None
    image_url: str | None = None
    active: bool | None = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        return _validate_http_url(v)


class ProductResponse(BaseModel):
    id: int
    url: str
    name: str | None
    image_url: str | None
    active: bool
    last_success_at: datetime | None
    last_failed_at: datetime | None
    last_failure_reason: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class ObservationResponse(BaseModel):
    id: int
    price: int
    currency: str
    tier: str
    method: str
    captured_at: datetime

    class Config:
        from_attributes = True


class JobAccepted(BaseModel):
    job_id: str


async def _get_or_404(db: AsyncSession, product_id: int) -> Product:
    product = await repository.get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.get("", response_model=List[ProductResponse])
async def list_products(
    active: Optional[bool] = Query(None, description="Filter by active flag"),
    db: AsyncSession = Depends(get_database),
):
    """List all products."""
    query = select(Product).order_by(Product.created_at.desc())
    if active is not None:
        query = query.where(Product.active.is_(active))
    result = await db.execute(query)
    return result.scalars().all()


@router.post("", response_model=ProductResponse, status_code=201)
async def create_product(product_data: ProductCreate, db: AsyncSession = Depends(get_database)):
    """Add a product page to monitor."""
    if await repository.get_product_by_url(db, product_data.url):
        raise HTTPException(status_code=400, detail="Product already exists")

    product = Product(
        url=product_data.url,
        name=product_data.name,
        image_url=product_data.image_url,
        active=product_data.active,
    )
    db.add(product)
    await db.commit()
    await db.refresh(product)

    logger.info(f"Created product {product.id}: {product.url}")
    return product


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(product_id: int, db: AsyncSession = Depends(get_database)):
    """Get a product by ID."""
    return await _get_or_404(db, product_id)


@router.patch("/{product_id}", response_model=ProductResponse)
async def update_product(
    product_id: int,
    product_data: ProductUpdate,
    db: AsyncSession = Depends(get_database),
):
    """Update name, URL, image or the active flag."""
    product = await _get_or_404(db, product_id)
    changes = product_data.model_dump(exclude_unset=True)

    new_url = changes.get("url")
    if new_url and new_url != product.url:
        existing = await repository.get_product_by_url(db, new_url)
        if existing and existing.id != product.id:
            raise HTTPException(status_code=400, detail="Another product already uses this URL")

    for field, value in changes.items():
        if field in ("url", "active") and value is None:
            continue
        setattr(product, field, value)

    await db.commit()
    await db.refresh(product)
    return product


@router.delete("/{product_id}", status_code=204)
async def delete_product(product_id: int, db: AsyncSession = Depends(get_database)):
    """Delete a product and its observation history."""
    await _get_or_404(db, product_id)
    await db.execute(delete(Product).where(Product.id == product_id))
    await db.commit()
    logger.info(f"Deleted product {product_id}")
    return Response(status_code=204)


@router.get("/{product_id}/observations", response_model=List[ObservationResponse])
async def get_observations(
    product_id: int,
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_database),
):
    """Price observations for the last ``days`` days, newest first."""
    await _get_or_404(db, product_id)
    since = datetime.utcnow() - timedelta(days=days)
    return await repository.observations_since(db, product_id, since)


@router.get("/{product_id}/trends", response_model=TrendSummary)
async def get_trends(product_id: int, db: AsyncSession = Depends(get_database)):
    """Current price with rolling averages and percentage changes."""
    product = await _get_or_404(db, product_id)
    now = datetime.utcnow()
    observations = await load_product_observations(db, product.id, now)
    return build_trend_summary(product, observations, now)


@router.post("/{product_id}/check-price", response_model=JobAccepted, status_code=202)
async def check_product_price(
    product_id: int,
    db: AsyncSession = Depends(get_database),
    runner: TaskRunner = Depends(get_task_runner),
):
    """Queue a price check for one product."""
    product = await _get_or_404(db, product_id)
    try:
        job_id = await runner.enqueue_check(product_id=product.id)
    except QueueUnavailableError as e:
        logger.error(f"Could not queue check for product {product_id}: {e}")
        raise HTTPException(status_code=503, detail="Job queue unavailable")
    return JobAccepted(job_id=job_id)
