"""Queue consumers for the worker process."""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from pricewatch.config import settings
from pricewatch.db import jobs
from pricewatch.worker.job_queue import QueuedJob
from pricewatch.worker.messages import CHECK_QUEUE, DIGEST_QUEUE, CheckRequest, DigestRequest
from pricewatch.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

Handler = Callable[[QueuedJob], Awaitable[None]]


class WorkerPool:
    """
    Runs ``concurrency`` check consumers, one digest consumer and a reaper.

    Each check consumer handles one request at a time, so at most
    ``concurrency`` browser contexts are in use. ``stop()`` makes consumers
    finish their current job and exit.
    """

    def __init__(self, runner: TaskRunner, concurrency: Optional[int] = None):
        self.runner = runner
        self.concurrency = concurrency or settings.worker_concurrency
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def queue(self):
        return self.runner.queue

    def stop(self):
        if not self._stopping.is_set():
            logger.info("Worker stop requested; finishing in-flight jobs")
            self._stopping.set()

    async def run(self):
        """Run until ``stop()`` is called."""
        for i in range(self.concurrency):
            self._tasks.append(
                asyncio.create_task(self._consume(CHECK_QUEUE, self._handle_check, f"check-{i}"))
            )
        self._tasks.append(asyncio.create_task(self._consume(DIGEST_QUEUE, self._handle_digest, "digest-0")))
        self._tasks.append(asyncio.create_task(self._reap()))
        logger.info(f"Worker started: {self.concurrency} check consumers, 1 digest consumer")

        await asyncio.gather(*self._tasks)
        logger.info("Worker stopped")

    async def _handle_check(self, job: QueuedJob) -> None:
        await self.runner.check_price(CheckRequest.from_payload(job.payload))

    async def _handle_digest(self, job: QueuedJob) -> None:
        await self.runner.run_digest(DigestRequest.from_payload(job.payload))

    async def _heartbeat(self, job: QueuedJob) -> None:
        """Keep a long-running reservation from being reaped."""
        while True:
            await asyncio.sleep(settings.queue_heartbeat_interval_seconds)
            try:
                await self.queue.touch(job)
            except Exception as e:
                logger.warning(f"Heartbeat failed for {job.queue} job {job.job_id}: {e}")

    async def _consume(self, queue_name: str, handler: Handler, name: str) -> None:
        while not self._stopping.is_set():
            try:
                job = await self.queue.reserve(queue_name, settings.queue_reserve_timeout_seconds)
            except Exception as e:
                logger.error(f"[{name}] Failed to reserve from {queue_name}: {e}")
                await self._sleep(settings.queue_reserve_timeout_seconds)
                continue
            if job is None:
                continue

            heartbeat = asyncio.create_task(self._heartbeat(job))
            try:
                await handler(job)
            except Exception as e:
                logger.error(f"[{name}] {queue_name} job {job.job_id} failed: {e}", exc_info=True)
                retried = await self.queue.nack(job, str(e))
                if not retried:
                    await self._on_dead_letter(job, str(e))
            else:
                await self.queue.ack(job)
            finally:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass

    async def _on_dead_letter(self, job: QueuedJob, error: str) -> None:
        if job.queue == CHECK_QUEUE:
            async with self.runner.session_factory() as db:
                await jobs.finish_check_job(
                    db,
                    job.payload["job_id"],
                    succeeded=False,
                    failure_reason="retries_exhausted",
                    error_message=error[:500],
                )
        else:
            # The run row keeps its last persisted state for inspection
            logger.error(f"Digest run {job.payload.get('run_id')} abandoned after {job.attempts} attempts")

    async def _reap(self) -> None:
        while not self._stopping.is_set():
            for queue_name in (CHECK_QUEUE, DIGEST_QUEUE):
                try:
                    await self.queue.requeue_stale(queue_name, settings.queue_visibility_timeout_seconds)
                except Exception as e:
                    logger.error(f"Failed to requeue stale {queue_name} jobs: {e}")
            await self._sleep(settings.queue_reaper_interval_seconds)

    async def _sleep(self, seconds: float) -> None:
        """Sleep that ends early on stop."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
