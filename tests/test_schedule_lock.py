"""Tests for schedule lock behavior."""

import pytest
import redis.asyncio as redis

from pricewatch.config import settings
from pricewatch.worker.schedule_lock import ScheduleLockManager

PREFIX = "pricewatch-test"


async def _redis_available() -> bool:
    try:
        client = await redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.close()
        return True
    except Exception:
        return False


@pytest.mark.asyncio
async def test_lock_acquire_release():
    if not await _redis_available():
        pytest.skip("Redis not available")

    manager = ScheduleLockManager(redis_url=settings.redis_url, key_prefix=PREFIX)
    await manager.force_unlock()

    tick_id = "test_tick_lock"
    token = await manager.acquire_lock(tick_id, ttl_seconds=30)
    assert token is not None

    info = await manager.get_lock_info()
    assert info is not None
    assert info.get("tick_id") == tick_id
    assert info.get("token") == token

    released = await manager.safe_unlock(tick_id, token=token)
    assert released is True

    info = await manager.get_lock_info()
    assert info is None
    await manager.close()


@pytest.mark.asyncio
async def test_second_tick_cannot_acquire():
    if not await _redis_available():
        pytest.skip("Redis not available")

    manager = ScheduleLockManager(redis_url=settings.redis_url, key_prefix=PREFIX)
    await manager.force_unlock()

    token = await manager.acquire_lock("tick_a", ttl_seconds=30)
    assert token is not None
    assert await manager.acquire_lock("tick_b", ttl_seconds=30) is None

    await manager.safe_unlock("tick_a", token=token)
    assert await manager.acquire_lock("tick_b", ttl_seconds=30) is not None
    await manager.force_unlock()
    await manager.close()


@pytest.mark.asyncio
async def test_lock_token_mismatch():
    if not await _redis_available():
        pytest.skip("Redis not available")

    manager = ScheduleLockManager(redis_url=settings.redis_url, key_prefix=PREFIX)
    await manager.force_unlock()

    tick_id = "test_tick_token"
    token = await manager.acquire_lock(tick_id, ttl_seconds=30)
    assert token is not None

    released = await manager.safe_unlock(tick_id, token="bad_token")
    assert released is False
    assert await manager.get_lock_info() is not None

    await manager.force_unlock()
    await manager.close()
