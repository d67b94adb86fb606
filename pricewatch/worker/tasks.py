"""Background tasks: price checks, digest runs and the schedule tick."""

import logging
import time
from contextlib import suppress
from datetime import datetime
from typing import Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from pricewatch import metrics
from pricewatch.ai.html_extractor import HtmlStructuredExtractor
from pricewatch.ai.llm_service import llm_service
from pricewatch.config import settings
from pricewatch.db import jobs, repository
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.ingest.browser_pool import BrowserPool
from pricewatch.ingest.extractor import TieredExtractor
from pricewatch.ingest.fetchers.cloud import CloudBrowserFetcher
from pricewatch.ingest.fetchers.headless import HeadlessBrowserFetcher
from pricewatch.ingest.fetchers.static import StaticHTMLFetcher
from pricewatch.notify.report import ReportSender
from pricewatch.worker.digest import DigestOrchestrator
from pricewatch.worker.job_queue import JobQueue, QueueUnavailableError, RedisJobQueue
from pricewatch.worker.messages import CHECK_QUEUE, DIGEST_QUEUE, CheckRequest, DigestRequest
from pricewatch.worker.price_check import CheckOutcome, PriceCheckWorker
from pricewatch.worker.schedule import next_send_time, should_send, slot_key, to_local
from pricewatch.worker.schedule_lock import ScheduleLockManager, schedule_lock_manager

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Owns the long-lived components shared by the API and worker processes.

    The browser pool and HTTP clients are created lazily on first use, so the
    API process (which only enqueues) never launches a browser.
    """

    def __init__(
        self,
        session_factory=AsyncSessionLocal,
        queue: Optional[JobQueue] = None,
        lock_manager: Optional[ScheduleLockManager] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.lock_manager = lock_manager or schedule_lock_manager
        self.browser_pool: Optional[BrowserPool] = None
        self.static_fetcher: Optional[StaticHTMLFetcher] = None
        self.cloud_fetcher: Optional[CloudBrowserFetcher] = None
        self.report_sender: Optional[ReportSender] = None
        self.price_checker: Optional[PriceCheckWorker] = None
        self.orchestrator: Optional[DigestOrchestrator] = None

    async def initialize(self):
        """Initialize task runner."""
        if self.queue is None:
            self.queue = RedisJobQueue()

        self.browser_pool = BrowserPool()
        self.static_fetcher = StaticHTMLFetcher()
        self.cloud_fetcher = CloudBrowserFetcher()
        extractor = TieredExtractor(
            static=self.static_fetcher,
            rendered=HeadlessBrowserFetcher(self.browser_pool),
            structured=HtmlStructuredExtractor(),
            cloud=self.cloud_fetcher,
        )
        self.price_checker = PriceCheckWorker(extractor, self.session_factory)
        self.report_sender = ReportSender(queue=self.queue)
        self.orchestrator = DigestOrchestrator(
            self.queue, self.report_sender, session_factory=self.session_factory
        )
        logger.info(
            f"Task runner initialized (cloud tier {'enabled' if self.cloud_fetcher.is_configured() else 'disabled'}, "
            f"AI fallback {'enabled' if llm_service.is_configured else 'disabled'}, "
            f"report channel: {self.report_sender.channel})"
        )

    async def close(self):
        """Clean up resources."""
        if self.browser_pool:
            await self.browser_pool.close()
        if self.static_fetcher:
            await self.static_fetcher.close()
        if self.cloud_fetcher:
            await self.cloud_fetcher.close()
        if self.report_sender:
            await self.report_sender.close()
        await llm_service.close()
        if isinstance(self.queue, RedisJobQueue):
            await self.queue.close()
        await self.lock_manager.close()

    # ------------------------------------------------------------------
    # Queue consumers
    # ------------------------------------------------------------------

    async def check_price(self, request: CheckRequest) -> CheckOutcome:
        return await self.price_checker.handle(request)

    async def run_digest(self, request: DigestRequest) -> Optional[str]:
        return await self.orchestrator.run(request)

    # ------------------------------------------------------------------
    # Producers (API, scheduler)
    # ------------------------------------------------------------------

    async def enqueue_check(self, product_id: Optional[int] = None, url: Optional[str] = None) -> str:
        """
        Persist a check job and queue it.

        Raises:
            QueueUnavailableError: the request could not be queued; the job
                row is marked ``failed/enqueue_failed``
        """
        async with self.session_factory() as db:
            job = await jobs.create_check_job(db, product_id=product_id, url=url)

        request = CheckRequest(job_id=job.job_id, product_id=product_id, url=url)
        try:
            await self.queue.enqueue(CHECK_QUEUE, request.to_payload(), job_id=job.job_id)
        except QueueUnavailableError as e:
            async with self.session_factory() as db:
                await jobs.finish_check_job(
                    db, job.job_id, succeeded=False, failure_reason="enqueue_failed", error_message=str(e)[:500]
                )
            raise

        logger.info(f"Queued price check {job.job_id} (product_id={product_id}, url={url})")
        return job.job_id

    async def trigger_digest(
        self,
        trigger: str = "manual",
        slot: Optional[str] = None,
        previous_last_sent_at: Optional[str] = None,
        triggered_by: Optional[str] = None,
    ) -> Tuple[str, str]:
        """
        Create a digest run and queue it. Returns ``(job_id, run_id)``.

        Raises:
            IntegrityError: ``slot`` was already claimed by another run
            QueueUnavailableError: the run could not be queued; its row is
                removed so the slot can be claimed again
        """
        async with self.session_factory() as db:
            run = await jobs.create_digest_run(
                db,
                trigger,
                slot_key=slot,
                previous_last_sent_at=previous_last_sent_at,
                triggered_by=triggered_by,
            )

        request = DigestRequest(run_id=run.run_id, trigger=trigger)
        try:
            job_id = await self.queue.enqueue(DIGEST_QUEUE, request.to_payload())
        except QueueUnavailableError:
            async with self.session_factory() as db:
                await jobs.delete_digest_run(db, run.run_id)
            raise

        logger.info(f"Queued {trigger} digest run {run.run_id} (job {job_id})")
        return job_id, run.run_id

    async def _claim_slot(self, slot: str, last_sent_raw: Optional[str]) -> Optional[str]:
        """
        Trigger the scheduled run for ``slot``. Returns the new run id, or None
        when a live or finished run already owns the slot.

        A run that ended ``failed`` never advanced the last-send marker, so the
        slot stays due; its claim is released and the slot is claimed again.
        """
        for attempt in range(2):
            try:
                _, run_id = await self.trigger_digest(
                    "scheduled", slot=slot, previous_last_sent_at=last_sent_raw, triggered_by="scheduler"
                )
                return run_id
            except IntegrityError:
                if attempt:
                    return None
                async with self.session_factory() as db:
                    failed_run_id = await jobs.release_failed_slot(db, slot)
                if failed_run_id is None:
                    return None
                logger.warning(f"Schedule tick: slot {slot} held by failed run {failed_run_id}, retrying")
        return None

    async def scheduled_tick(self) -> str:
        """
        Evaluate the digest schedule once and trigger a run when a slot is due.

        The read-decide-claim section runs under the Redis schedule lock; the
        unique slot key on DigestRun keeps a slot from being claimed twice even
        if the lock expires mid-tick.

        Returns the decision: ``triggered``, ``not_due``, ``claimed`` (another
        tick owns this slot) or ``locked``.
        """
        tick_id = uuid4().hex
        metrics.scheduler_last_run_timestamp.set(time.time())

        token = await self.lock_manager.acquire_lock(tick_id)
        if not token:
            metrics.schedule_ticks_total.labels(decision="locked").inc()
            logger.info("Schedule tick skipped: another tick holds the lock")
            return "locked"

        try:
            async with self.session_factory() as db:
                config = await repository.get_schedule_config(db)
                last_sent_raw = await repository.get_setting(db, repository.LAST_SENT_KEY)

            last_sent_at = repository.parse_timestamp(last_sent_raw)
            tz_name = settings.schedule_timezone
            now_local = to_local(datetime.utcnow(), tz_name)
            last_local = to_local(last_sent_at, tz_name)

            if not should_send(now_local, last_local, config):
                decision = "not_due"
                logger.debug(
                    f"Schedule tick: not due (next slot {next_send_time(last_local, config, now_local)} {tz_name})"
                )
                return decision

            slot = slot_key(next_send_time(last_local, config, now_local))
            run_id = await self._claim_slot(slot, last_sent_raw)
            if run_id is None:
                decision = "claimed"
                logger.info(f"Schedule tick: slot {slot} already claimed")
                return decision

            decision = "triggered"
            logger.info(f"Schedule tick: triggered digest run {run_id} for slot {slot} ({tz_name})")
            return decision

        except Exception as e:
            decision = "error"
            logger.error(f"Schedule tick failed: {e}", exc_info=True)
            raise

        finally:
            metrics.schedule_ticks_total.labels(decision=decision).inc()
            released = False
            with suppress(Exception):
                released = await self.lock_manager.safe_unlock(tick_id, token=token)
            if not released:
                logger.warning(f"Failed to release schedule lock for tick {tick_id[:16]}")


# Global task runner instance
task_runner = TaskRunner()
