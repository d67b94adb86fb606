"""Digest run orchestration (fan-out / fan-in).

A run moves through

    pending -> fanning_out -> awaiting_children -> aggregating -> reporting -> done

and may only end ``failed`` from aggregating or reporting. Every transition is
persisted on the DigestRun row and the barrier is derived from the run's
CheckJob rows, so a redelivered DigestRequest resumes where the previous
attempt stopped.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Dict, List, Optional

from pricewatch import metrics
from pricewatch.analysis.trends import load_trend_summaries
from pricewatch.config import settings
from pricewatch.db import jobs, repository
from pricewatch.db.models import CheckJob, DigestRun
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.logging_config import get_logger
from pricewatch.notify.report import DigestReport, ReportSender
from pricewatch.worker.job_queue import JobQueue
from pricewatch.worker.messages import CHECK_QUEUE, CheckRequest, DigestRequest

logger = logging.getLogger(__name__)

PENDING = "pending"
FANNING_OUT = "fanning_out"
AWAITING_CHILDREN = "awaiting_children"
AGGREGATING = "aggregating"
REPORTING = "reporting"
DONE = "done"
FAILED = "failed"

TERMINAL_STATES = (DONE, FAILED)


class DigestOrchestrator:
    """Drives one digest run to a terminal state."""

    def __init__(
        self,
        queue: JobQueue,
        report_sender: ReportSender,
        session_factory=AsyncSessionLocal,
        poll_interval: Optional[float] = None,
        max_wait: Optional[float] = None,
    ):
        self.queue = queue
        self.report_sender = report_sender
        self.session_factory = session_factory
        self.poll_interval = poll_interval or settings.digest_poll_interval_seconds
        self.max_wait = settings.digest_max_wait_seconds if max_wait is None else max_wait

    async def run(self, request: DigestRequest) -> Optional[str]:
        """
        Run (or resume) a digest. Returns the terminal state, or None if the
        run row does not exist.
        """
        log = get_logger(__name__, run_id=request.run_id)

        async with self.session_factory() as db:
            run = await jobs.get_digest_run(db, request.run_id)
        if run is None:
            log.warning(f"Digest run {request.run_id} not found; dropping request")
            return None
        if run.state in TERMINAL_STATES:
            log.info(f"Digest run {run.run_id} already {run.state}, skipping redelivery")
            return run.state
        if run.state != PENDING:
            log.info(f"Resuming digest run {run.run_id} from {run.state}")

        if run.state == PENDING:
            await self._transition(run, FANNING_OUT, started_at=datetime.utcnow())

        if run.state == FANNING_OUT:
            total = await self._fan_out(run)
            if total == 0:
                return await self._finish_empty(run)
            await self._transition(run, AWAITING_CHILDREN, total_products=total)

        if run.state == AWAITING_CHILDREN:
            counts = await self._await_children(run)
            await self._transition(
                run,
                AGGREGATING,
                succeeded_count=counts.get("succeeded", 0),
                failed_count=counts.get("failed", 0),
            )

        report: Optional[DigestReport] = None
        if run.state in (AGGREGATING, REPORTING):
            try:
                report = await self._aggregate(run)
            except Exception as e:
                return await self._fail(run, f"Aggregation failed: {e}")
            if run.state == AGGREGATING:
                await self._transition(run, REPORTING)

        try:
            await self.report_sender.send(report)
        except Exception as e:
            return await self._fail(run, f"Report delivery failed: {e}")

        await self._transition(run, DONE, report_sent_at=datetime.utcnow(), completed_at=datetime.utcnow())
        await self._advance_marker(run)
        metrics.digest_runs_total.labels(trigger=run.trigger, state=DONE).inc()
        log.info(
            f"Digest run {run.run_id} done: {run.total_products} products, "
            f"{run.succeeded_count} succeeded, {run.failed_count} failed"
        )
        return DONE

    async def _transition(self, run: DigestRun, state: str, **values) -> None:
        async with self.session_factory() as db:
            await jobs.update_digest_run(db, run.run_id, state=state, **values)
        logger.debug(f"Digest run {run.run_id}: {run.state} -> {state}")
        run.state = state
        for key, value in values.items():
            setattr(run, key, value)

    async def _fan_out(self, run: DigestRun) -> int:
        """
        Create one check job per active product and enqueue them all.

        On resume, products that already have a child keep it and children
        still ``queued`` are sent again. The queue ignores a job id it still
        holds and the worker claims each job once.
        """
        async with self.session_factory() as db:
            existing = list(await jobs.get_run_children(db, run.id))
            covered = {child.product_id for child in existing}
            products = await repository.get_active_products(db)

            to_send: List[CheckRequest] = [
                CheckRequest(job_id=child.job_id, product_id=child.product_id, digest_run_id=run.run_id)
                for child in existing
                if child.status == "queued"
            ]
            for product in products:
                if product.id in covered:
                    continue
                child = await jobs.create_check_job(
                    db, product_id=product.id, url=product.url, digest_run_id=run.id
                )
                existing.append(child)
                to_send.append(
                    CheckRequest(job_id=child.job_id, product_id=product.id, digest_run_id=run.run_id)
                )

        for request in to_send:
            try:
                await self.queue.enqueue(CHECK_QUEUE, request.to_payload(), job_id=request.job_id)
            except Exception as e:
                logger.error(f"Failed to enqueue check {request.job_id} for run {run.run_id}: {e}")
                async with self.session_factory() as db:
                    await jobs.finish_check_job(
                        db,
                        request.job_id,
                        succeeded=False,
                        failure_reason="enqueue_failed",
                        error_message=str(e)[:500],
                    )

        logger.info(f"Digest run {run.run_id} fanned out {len(existing)} checks ({len(to_send)} enqueued)")
        return len(existing)

    async def _await_children(self, run: DigestRun) -> Dict[str, int]:
        """Block until no child is queued or running."""
        started = time.monotonic()
        while True:
            async with self.session_factory() as db:
                counts = await jobs.count_children_by_status(db, run.id)
            pending = sum(counts.get(status, 0) for status in jobs.PENDING_STATUSES)
            metrics.digest_children_pending.set(pending)
            if pending == 0:
                return counts

            if self.max_wait and time.monotonic() - started >= self.max_wait:
                async with self.session_factory() as db:
                    expired = await jobs.fail_pending_children(
                        db, run.id, "wait_ceiling", f"Still pending after {self.max_wait}s"
                    )
                logger.warning(f"Digest run {run.run_id} gave up on {expired} pending checks")
                continue

            logger.debug(f"Digest run {run.run_id} waiting on {pending} checks")
            await asyncio.sleep(self.poll_interval)

    async def _aggregate(self, run: DigestRun) -> DigestReport:
        now = datetime.utcnow()
        async with self.session_factory() as db:
            children = await jobs.get_run_children(db, run.id)
            by_product: Dict[int, CheckJob] = {
                child.product_id: child for child in children if child.product_id is not None
            }
            products = await repository.get_products(db, list(by_product))
            summaries = await load_trend_summaries(db, products, now, by_product)
        return DigestReport(run_id=run.run_id, trigger=run.trigger, generated_at=now, products=summaries)

    async def _finish_empty(self, run: DigestRun) -> str:
        logger.info(f"Digest run {run.run_id}: no active products, nothing to report")
        await self._transition(run, DONE, total_products=0, completed_at=datetime.utcnow())
        await self._advance_marker(run)
        metrics.digest_runs_total.labels(trigger=run.trigger, state=DONE).inc()
        return DONE

    async def _advance_marker(self, run: DigestRun) -> None:
        """Scheduled runs move the last-send marker; manual runs never do."""
        if run.trigger != "scheduled":
            return
        expected = repository.parse_timestamp(run.previous_last_sent_at)
        async with self.session_factory() as db:
            updated = await repository.compare_and_set_last_sent(db, expected, datetime.utcnow())
        if not updated:
            logger.warning(
                f"Digest run {run.run_id}: last-send marker changed since slot {run.slot_key} "
                f"was claimed; leaving it as is"
            )

    async def _fail(self, run: DigestRun, message: str) -> str:
        logger.error(f"Digest run {run.run_id} failed in {run.state}: {message}", exc_info=True)
        await self._transition(run, FAILED, error_message=message[:1000], completed_at=datetime.utcnow())
        metrics.digest_runs_total.labels(trigger=run.trigger, state=FAILED).inc()
        return FAILED
