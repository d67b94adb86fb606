"""Repository functions for products, observations and settings."""

import json
import logging
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pricewatch.db.models import PriceObservation, Product, Setting
from pricewatch.worker.schedule import ScheduleConfig

logger = logging.getLogger(__name__)

SCHEDULE_KEY = "email_schedule"
LAST_SENT_KEY = "digest.last_sent_at"


def format_timestamp(value: datetime) -> str:
    """Serialize a naive UTC timestamp so it round-trips exactly."""
    return value.isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

async def get_active_products(db: AsyncSession) -> Sequence[Product]:
    result = await db.execute(
        select(Product).where(Product.active.is_(True)).order_by(Product.id)
    )
    return result.scalars().all()


async def get_product(db: AsyncSession, product_id: int) -> Optional[Product]:
    return await db.get(Product, product_id)


async def get_products(db: AsyncSession, product_ids: Sequence[int]) -> Sequence[Product]:
    if not product_ids:
        return []
    result = await db.execute(
        select(Product).where(Product.id.in_(product_ids)).order_by(Product.id)
    )
    return result.scalars().all()


async def get_product_by_url(db: AsyncSession, url: str) -> Optional[Product]:
    result = await db.execute(select(Product).where(Product.url == url))
    return result.scalar_one_or_none()


async def get_or_create_product_by_url(
    db: AsyncSession,
    url: str,
    name: Optional[str] = None,
    image_url: Optional[str] = None,
) -> Product:
    """
    Look up a product by URL, creating it when missing.

    Products discovered through an ad-hoc URL check are created inactive so
    they do not join digest runs until an admin enables them.
    """
    product = await get_product_by_url(db, url)
    if product is not None:
        return product

    product = Product(url=url, name=name, image_url=image_url, active=False)
    db.add(product)
    try:
        await db.commit()
    except IntegrityError:
        # Another worker created the same URL first
        await db.rollback()
        result = await db.execute(select(Product).where(Product.url == url))
        return result.scalar_one()

    await db.refresh(product)
    logger.info(f"Created inactive product {product.id} for {url}")
    return product


async def mark_success(
    db: AsyncSession,
    product_id: int,
    at: datetime,
    name: Optional[str] = None,
    image_url: Optional[str] = None,
) -> None:
    """Record a successful check. Name and image are only filled when empty."""
    product = await db.get(Product, product_id)
    if product is None:
        return
    product.last_success_at = at
    product.last_failure_reason = None
    if name and not product.name:
        product.name = name
    if image_url and not product.image_url:
        product.image_url = image_url
    await db.commit()


async def mark_failure(
    db: AsyncSession,
    product_id: int,
    at: datetime,
    reason: str,
) -> None:
    await db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(last_failed_at=at, last_failure_reason=reason)
    )
    await db.commit()


# ---------------------------------------------------------------------------
# Observations (append-only)
# ---------------------------------------------------------------------------

async def add_observation(
    db: AsyncSession,
    product_id: int,
    price: int,
    currency: str,
    tier: str,
    method: str,
    captured_at: Optional[datetime] = None,
) -> PriceObservation:
    observation = PriceObservation(
        product_id=product_id,
        price=price,
        currency=currency,
        tier=tier,
        method=method,
        captured_at=captured_at or datetime.utcnow(),
    )
    db.add(observation)
    await db.commit()
    await db.refresh(observation)
    return observation


async def observations_since(
    db: AsyncSession,
    product_id: int,
    since: datetime,
    until: Optional[datetime] = None,
) -> Sequence[PriceObservation]:
    """Observations captured within [since, until], newest first."""
    query = select(PriceObservation).where(
        PriceObservation.product_id == product_id,
        PriceObservation.captured_at >= since,
    )
    if until is not None:
        query = query.where(PriceObservation.captured_at <= until)
    result = await db.execute(
        query.order_by(PriceObservation.captured_at.desc(), PriceObservation.id.desc())
    )
    return result.scalars().all()


async def latest_observations(
    db: AsyncSession,
    product_id: int,
    limit: int = 2,
) -> Sequence[PriceObservation]:
    result = await db.execute(
        select(PriceObservation)
        .where(PriceObservation.product_id == product_id)
        .order_by(PriceObservation.captured_at.desc(), PriceObservation.id.desc())
        .limit(limit)
    )
    return result.scalars().all()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

async def get_setting(db: AsyncSession, key: str) -> Optional[str]:
    setting = await db.get(Setting, key)
    return setting.value if setting else None


async def set_setting(db: AsyncSession, key: str, value: str) -> None:
    setting = await db.get(Setting, key)
    if setting is None:
        db.add(Setting(key=key, value=value))
    else:
        setting.value = value
    await db.commit()


async def get_schedule_config(db: AsyncSession) -> ScheduleConfig:
    """Load the schedule, falling back to the default (daily at 09:00)."""
    raw = await get_setting(db, SCHEDULE_KEY)
    if not raw:
        return ScheduleConfig()
    try:
        return ScheduleConfig.from_dict(json.loads(raw))
    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid stored schedule config, using default: {e}")
        return ScheduleConfig()


async def set_schedule_config(db: AsyncSession, config: ScheduleConfig) -> None:
    await set_setting(db, SCHEDULE_KEY, json.dumps(config.to_dict()))


async def get_last_sent_at(db: AsyncSession) -> Optional[datetime]:
    return parse_timestamp(await get_setting(db, LAST_SENT_KEY))


async def compare_and_set_last_sent(
    db: AsyncSession,
    expected: Optional[datetime],
    new_value: datetime,
) -> bool:
    """
    Atomically move the last-send marker from ``expected`` to ``new_value``.

    Returns False when the stored marker no longer equals ``expected``,
    meaning another run advanced it first.
    """
    if expected is None:
        db.add(Setting(key=LAST_SENT_KEY, value=format_timestamp(new_value)))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return False
        return True

    result = await db.execute(
        update(Setting)
        .where(
            Setting.key == LAST_SENT_KEY,
            Setting.value == format_timestamp(expected),
        )
        .values(value=format_timestamp(new_value), updated_at=datetime.utcnow())
    )
    await db.commit()
    return result.rowcount == 1
