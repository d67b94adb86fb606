"""Redis-based distributed lock around the schedule tick."""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from pricewatch.config import settings

logger = logging.getLogger(__name__)


class ScheduleLockManager:
    """
    Mutual exclusion for the read-decide-claim section of a schedule tick.

    Features:
    - TTL-based expiration so a crashed holder cannot wedge the schedule
    - Token-based ownership verification on release
    - Lock info retrieval for diagnostics
    """

    def __init__(self, redis_url: Optional[str] = None, key_prefix: Optional[str] = None):
        """
        Initialize lock manager.

        Args:
            redis_url: Redis connection URL (defaults to settings)
            key_prefix: Key namespace (defaults to settings)
        """
        self.redis_url = redis_url or settings.redis_url
        self.lock_key = f"{key_prefix or settings.redis_key_prefix}:schedule:lock"
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def acquire_lock(
        self,
        tick_id: str,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[str]:
        """
        Acquire the schedule lock.

        Args:
            tick_id: Unique tick identifier
            ttl_seconds: Time-to-live in seconds

        Returns:
            Token string if lock acquired, None if already held
        """
        redis_client = await self._get_redis()
        ttl = ttl_seconds or settings.schedule_lock_ttl_seconds

        token = uuid4().hex
        lock_value = json.dumps({
            "tick_id": tick_id,
            "token": token,
            "started_at": datetime.utcnow().isoformat(),
        })

        acquired = await redis_client.set(self.lock_key, lock_value, nx=True, ex=ttl)
        if acquired:
            logger.debug(f"Acquired schedule lock for tick {tick_id[:16]}")
            return token

        existing_value = await redis_client.get(self.lock_key)
        if existing_value:
            try:
                existing_tick = json.loads(existing_value).get("tick_id", "unknown")
                logger.info(f"Schedule lock already held by tick {existing_tick[:16]}")
            except (json.JSONDecodeError, AttributeError):
                logger.warning(f"Schedule lock exists but value is invalid: {existing_value}")
        return None

    async def safe_unlock(self, tick_id: str, token: Optional[str]) -> bool:
        """
        Release the lock only if tick id and token match (atomic).

        Returns:
            True if released or already gone, False on mismatch
        """
        redis_client = await self._get_redis()

        # 0 = not found/already released, 1 = deleted, 2 = mismatch
        lua_script = """
        local lock_value = redis.call('GET', KEYS[1])
        if not lock_value then
            return 0
        end

        local cjson = require('cjson')
        local success, data = pcall(cjson.decode, lock_value)
        if not success then
            return 2
        end

        if data.tick_id == ARGV[1] and data.token == ARGV[2] then
            redis.call('DEL', KEYS[1])
            return 1
        else
            return 2
        end
        """

        if not token:
            logger.warning("Unlock requested without token; refusing (use force_unlock for recovery).")
            return False

        try:
            result = await redis_client.eval(lua_script, 1, self.lock_key, tick_id, token)
        except Exception as e:
            logger.error(f"Error executing safe_unlock Lua script: {e}")
            return False

        if result in (0, 1):
            logger.debug(f"Released schedule lock for tick {tick_id[:16]}")
            return True
        logger.warning(f"Attempted to release schedule lock with mismatched token: tick={tick_id[:16]}")
        return False

    async def force_unlock(self) -> bool:
        """Force unlock without token verification (admin recovery)."""
        redis_client = await self._get_redis()
        try:
            await redis_client.delete(self.lock_key)
            logger.warning("Force-cleared schedule lock")
            return True
        except Exception as e:
            logger.error(f"Failed to force unlock: {e}")
            return False

    async def get_lock_info(self) -> Optional[Dict[str, Any]]:
        """
        Get current lock information.

        Returns:
            Dict with tick_id, started_at, ttl, or None if no lock
        """
        redis_client = await self._get_redis()
        value = await redis_client.get(self.lock_key)
        if not value:
            return None
        ttl = await redis_client.ttl(self.lock_key)

        try:
            data = json.loads(value)
            return {
                "tick_id": data.get("tick_id"),
                "token": data.get("token"),
                "started_at": data.get("started_at"),
                "ttl_seconds": ttl if ttl > 0 else None,
            }
        except json.JSONDecodeError as e:
            logger.error(f"Invalid lock value format: {e}")
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}


# Global lock manager instance
schedule_lock_manager = ScheduleLockManager()
