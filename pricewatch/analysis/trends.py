"""Price trend aggregation.

``compute_trends`` is pure: it only sees the observations passed in and the
supplied ``now``. ``load_trend_summaries`` feeds it from committed rows.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db import repository
from pricewatch.db.models import CheckJob, Product

logger = logging.getLogger(__name__)

WINDOW_DAYS = (7, 30, 90, 180)


class Observation(Protocol):
    price: int
    currency: str
    captured_at: datetime


@dataclass
class TrendStats:
    """Rolling statistics for one product."""
    current_price: Optional[int] = None
    previous_price: Optional[int] = None
    currency: Optional[str] = None
    vs_last_check: Optional[float] = None
    averages: Dict[int, Optional[int]] = field(default_factory=dict)
    vs_averages: Dict[int, Optional[float]] = field(default_factory=dict)


def percentage_change(current: Optional[int], reference: Optional[float]) -> Optional[float]:
    """(current - reference) / reference * 100, None when undefined."""
    if current is None or reference is None or reference == 0:
        return None
    return (current - reference) / reference * 100


def window_average(
    observations: Iterable[Observation],
    now: datetime,
    days: int,
) -> Optional[int]:
    """Mean price over [now - days, now], rounded half-up to a minor unit."""
    start = now - timedelta(days=days)
    prices = [o.price for o in observations if start <= o.captured_at <= now]
    if not prices:
        return None
    mean = Decimal(sum(prices)) / Decimal(len(prices))
    return int(mean.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_trends(
    observations: Sequence[Observation],
    now: datetime,
    windows: Sequence[int] = WINDOW_DAYS,
) -> TrendStats:
    """Current/previous prices plus windowed averages and deltas."""
    ordered = sorted(observations, key=lambda o: o.captured_at, reverse=True)
    stats = TrendStats()

    if ordered:
        stats.current_price = ordered[0].price
        stats.currency = ordered[0].currency
    if len(ordered) > 1:
        stats.previous_price = ordered[1].price

    stats.vs_last_check = percentage_change(stats.current_price, stats.previous_price)

    for days in windows:
        average = window_average(ordered, now, days)
        stats.averages[days] = average
        stats.vs_averages[days] = percentage_change(stats.current_price, average)

    return stats


class TrendSummary(BaseModel):
    """One digest row. A missing current price renders as unavailable."""

    product_id: int
    name: Optional[str] = None
    url: str
    image_url: Optional[str] = None
    currency: str = "USD"
    current_price: Optional[int] = None
    previous_price: Optional[int] = None
    last_checked: Optional[datetime] = None
    last_failed: Optional[datetime] = None
    check_status: Optional[str] = None  # this run's child outcome
    failure_reason: Optional[str] = None
    vs_last_check: Optional[float] = None
    avg_7d: Optional[int] = None
    vs_7d_avg: Optional[float] = None
    avg_30d: Optional[int] = None
    vs_30d_avg: Optional[float] = None
    avg_90d: Optional[int] = None
    vs_90d_avg: Optional[float] = None
    avg_180d: Optional[int] = None
    vs_180d_avg: Optional[float] = None

    @property
    def available(self) -> bool:
        return self.current_price is not None


def build_trend_summary(
    product: Product,
    observations: Sequence[Observation],
    now: datetime,
    check_job: Optional[CheckJob] = None,
) -> TrendSummary:
    stats = compute_trends(observations, now)
    return TrendSummary(
        product_id=product.id,
        name=product.name,
        url=product.url,
        image_url=product.image_url,
        currency=stats.currency or "USD",
        current_price=stats.current_price,
        previous_price=stats.previous_price,
        last_checked=product.last_success_at,
        last_failed=product.last_failed_at,
        check_status=check_job.status if check_job else None,
        failure_reason=check_job.failure_reason if check_job else None,
        vs_last_check=stats.vs_last_check,
        avg_7d=stats.averages.get(7),
        vs_7d_avg=stats.vs_averages.get(7),
        avg_30d=stats.averages.get(30),
        vs_30d_avg=stats.vs_averages.get(30),
        avg_90d=stats.averages.get(90),
        vs_90d_avg=stats.vs_averages.get(90),
        avg_180d=stats.averages.get(180),
        vs_180d_avg=stats.vs_averages.get(180),
    )


async def load_product_observations(
    db: AsyncSession,
    product_id: int,
    now: datetime,
) -> List[Observation]:
    """Latest two observations plus everything inside the widest window."""
    latest = await repository.latest_observations(db, product_id, limit=2)
    windowed = await repository.observations_since(
        db, product_id, now - timedelta(days=max(WINDOW_DAYS)), until=now
    )
    merged = {o.id: o for o in windowed}
    for o in latest:
        merged.setdefault(o.id, o)
    return list(merged.values())


async def load_trend_summaries(
    db: AsyncSession,
    products: Sequence[Product],
    now: datetime,
    check_jobs: Optional[Dict[int, CheckJob]] = None,
) -> List[TrendSummary]:
    """One summary per product, in the order given."""
    summaries = []
    for product in products:
        observations = await load_product_observations(db, product.id, now)
        job = check_jobs.get(product.id) if check_jobs else None
        summaries.append(build_trend_summary(product, observations, now, job))
    return summaries
