"""Redis-backed durable job queue with at-least-once delivery.

Each named queue has a pending list and a processing list. ``reserve`` moves
a job id atomically from pending to processing (FIFO); ``ack`` removes it;
``nack`` retries it until ``max_attempts`` and then dead-letters it. A
reservation not refreshed by ``touch`` within the visibility timeout is moved
back to pending by ``requeue_stale``, so a crashed consumer's job is
redelivered.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import RedisError

from pricewatch import metrics
from pricewatch.config import settings

logger = logging.getLogger(__name__)


class QueueUnavailableError(Exception):
    """The queue backend could not accept a job."""


@dataclass
class QueuedJob:
    """A reserved job."""
    job_id: str
    queue: str
    payload: Dict[str, Any]
    attempts: int


class JobQueue(Protocol):
    async def enqueue(self, queue: str, payload: Dict[str, Any], job_id: Optional[str] = None) -> str: ...

    async def reserve(self, queue: str, timeout: float) -> Optional[QueuedJob]: ...

    async def ack(self, job: QueuedJob) -> None: ...

    async def nack(self, job: QueuedJob, error: str) -> bool: ...

    async def touch(self, job: QueuedJob) -> None: ...

    async def requeue_stale(self, queue: str, visibility_timeout: float) -> int: ...

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]: ...

    async def ping(self) -> None: ...


# Write the job and push it, unless the same job id is already waiting or
# reserved (a producer re-sending an undelivered job)
ENQUEUE_SCRIPT = """
local state = redis.call('HGET', KEYS[1], 'state')
if state == 'queued' or state == 'reserved' then
    return 0
end
redis.call('DEL', KEYS[1])
redis.call('HSET', KEYS[1], 'queue', ARGV[1], 'payload', ARGV[2], 'attempts', 0,
    'state', 'queued', 'enqueued_at', ARGV[3])
redis.call('EXPIRE', KEYS[1], ARGV[4])
redis.call('LPUSH', KEYS[2], ARGV[5])
return 1
"""

# Move a job in processing back to pending once its reservation is older than
# the visibility timeout. A job BLMOVEd but not yet marked reserved is timed
# from the first sweep that sees it.
REAP_SCRIPT = """
if redis.call('EXISTS', KEYS[3]) == 0 then
    redis.call('LREM', KEYS[1], 1, ARGV[1])
    return 0
end
local now = tonumber(ARGV[2])
local since
if redis.call('HGET', KEYS[3], 'state') == 'reserved' then
    since = tonumber(redis.call('HGET', KEYS[3], 'reserved_at'))
else
    redis.call('HSETNX', KEYS[3], 'orphaned_at', ARGV[2])
    since = tonumber(redis.call('HGET', KEYS[3], 'orphaned_at'))
end
if since and now - since < tonumber(ARGV[3]) then
    return 0
end
if redis.call('LREM', KEYS[1], 1, ARGV[1]) == 0 then
    return 0
end
redis.call('LPUSH', KEYS[2], ARGV[1])
redis.call('HSET', KEYS[3], 'state', 'queued', 'requeued_at', ARGV[2])
redis.call('HDEL', KEYS[3], 'reserved_at', 'orphaned_at')
return 1
"""


class RedisJobQueue:
    """Reliable queue on Redis lists plus one hash per job."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        prefix: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ):
        self.redis_url = redis_url or settings.redis_url
        self.prefix = prefix or settings.redis_key_prefix
        self.max_attempts = max_attempts or settings.queue_max_attempts
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

    def _pending_key(self, queue: str) -> str:
        return f"{self.prefix}:queue:{queue}:pending"

    def _processing_key(self, queue: str) -> str:
        return f"{self.prefix}:queue:{queue}:processing"

    def _dead_key(self, queue: str) -> str:
        return f"{self.prefix}:queue:{queue}:dead"

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    async def enqueue(
        self,
        queue: str,
        payload: Dict[str, Any],
        job_id: Optional[str] = None,
    ) -> str:
        """
        Persist the job and push it onto the pending list. Returns the job id.

        Enqueueing a job id that is still queued or reserved is a no-op.
        """
        redis_client = await self._get_redis()
        job_id = job_id or uuid4().hex

        try:
            pushed = await redis_client.eval(
                ENQUEUE_SCRIPT,
                2,
                self._job_key(job_id),
                self._pending_key(queue),
                queue,
                json.dumps(payload),
                str(time.time()),
                settings.queue_job_ttl_seconds,
                job_id,
            )
        except RedisError as e:
            metrics.queue_operations_total.labels(queue=queue, operation="enqueue_error").inc()
            raise QueueUnavailableError(f"Could not enqueue {queue} job {job_id}: {e}") from e

        if pushed != 1:
            logger.debug(f"{queue} job {job_id} already queued, not pushing again")
            return job_id

        metrics.queue_operations_total.labels(queue=queue, operation="enqueue").inc()
        logger.debug(f"Enqueued {queue} job {job_id}")
        return job_id

    async def reserve(self, queue: str, timeout: float) -> Optional[QueuedJob]:
        """Block up to ``timeout`` seconds for the oldest pending job."""
        redis_client = await self._get_redis()
        job_id = await redis_client.blmove(
            self._pending_key(queue),
            self._processing_key(queue),
            timeout,
            src="RIGHT",
            dest="LEFT",
        )
        if job_id is None:
            return None

        job_key = self._job_key(job_id)
        payload = await redis_client.hget(job_key, "payload")
        if payload is None:
            logger.warning(f"Dropping {queue} job {job_id}: job data expired")
            await redis_client.lrem(self._processing_key(queue), 1, job_id)
            return None

        async with redis_client.pipeline(transaction=True) as pipe:
            pipe.hincrby(job_key, "attempts", 1)
            pipe.hset(job_key, mapping={"state": "reserved", "reserved_at": time.time()})
            pipe.hdel(job_key, "orphaned_at")
            attempts, _, _ = await pipe.execute()
        metrics.queue_operations_total.labels(queue=queue, operation="reserve").inc()
        return QueuedJob(job_id=job_id, queue=queue, payload=json.loads(payload), attempts=attempts)

    async def touch(self, job: QueuedJob) -> None:
        """Extend the reservation (heartbeat for long-running jobs)."""
        redis_client = await self._get_redis()
        await redis_client.hset(self._job_key(job.job_id), "reserved_at", time.time())

    async def ack(self, job: QueuedJob) -> None:
        redis_client = await self._get_redis()
        job_key = self._job_key(job.job_id)
        async with redis_client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._processing_key(job.queue), 1, job.job_id)
            pipe.hset(job_key, mapping={"state": "completed", "finished_at": time.time()})
            pipe.expire(job_key, settings.queue_job_ttl_seconds)
            await pipe.execute()
        metrics.queue_operations_total.labels(queue=job.queue, operation="ack").inc()

    async def nack(self, job: QueuedJob, error: str) -> bool:
        """
        Release a failed job.

        Returns True if it was put back for another attempt, False if it
        exhausted its attempts and was dead-lettered.
        """
        redis_client = await self._get_redis()
        job_key = self._job_key(job.job_id)
        retry = job.attempts < self.max_attempts

        async with redis_client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._processing_key(job.queue), 1, job.job_id)
            if retry:
                pipe.hset(job_key, mapping={"state": "queued", "last_error": error[:500]})
                pipe.lpush(self._pending_key(job.queue), job.job_id)
            else:
                pipe.hset(job_key, mapping={
                    "state": "dead",
                    "last_error": error[:500],
                    "finished_at": time.time(),
                })
                pipe.lpush(self._dead_key(job.queue), job.job_id)
            await pipe.execute()

        metrics.queue_operations_total.labels(
            queue=job.queue, operation="retry" if retry else "dead_letter"
        ).inc()
        if retry:
            logger.warning(
                f"Retrying {job.queue} job {job.job_id} "
                f"(attempt {job.attempts}/{self.max_attempts}): {error}"
            )
        else:
            logger.error(f"Dead-lettered {job.queue} job {job.job_id} after {job.attempts} attempts: {error}")
        return retry

    async def requeue_stale(self, queue: str, visibility_timeout: float) -> int:
        """
        Move reservations older than ``visibility_timeout`` back to pending.

        The age check and the move run in one script, so a job a consumer is
        just reserving is never pulled out from under it.
        """
        redis_client = await self._get_redis()
        processing_key = self._processing_key(queue)
        job_ids = await redis_client.lrange(processing_key, 0, -1)
        now = time.time()
        requeued = 0

        for job_id in job_ids:
            moved = await redis_client.eval(
                REAP_SCRIPT,
                3,
                processing_key,
                self._pending_key(queue),
                self._job_key(job_id),
                job_id,
                str(now),
                str(visibility_timeout),
            )
            if moved == 1:
                requeued += 1
                logger.warning(f"Requeued stale {queue} job {job_id}")

        if requeued:
            metrics.queue_operations_total.labels(queue=queue, operation="requeue").inc(requeued)
        return requeued

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Queue-side view of a job (state, attempts, last error)."""
        redis_client = await self._get_redis()
        data = await redis_client.hgetall(self._job_key(job_id))
        if not data:
            return None
        data["payload"] = json.loads(data["payload"]) if data.get("payload") else None
        data["attempts"] = int(data.get("attempts", 0))
        return data

    async def ping(self) -> None:
        """Raise if Redis is unreachable."""
        redis_client = await self._get_redis()
        await redis_client.ping()

    async def depth(self, queue: str) -> Dict[str, int]:
        redis_client = await self._get_redis()
        return {
            "pending": await redis_client.llen(self._pending_key(queue)),
            "processing": await redis_client.llen(self._processing_key(queue)),
            "dead": await redis_client.llen(self._dead_key(queue)),
        }
