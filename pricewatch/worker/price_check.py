"""Single-product price check job."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.db import jobs, repository
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.ingest.extractor import TieredExtractor
from pricewatch.logging_config import get_logger
from pricewatch.worker.messages import CheckRequest

logger = logging.getLogger(__name__)


@dataclass
class CheckOutcome:
    """Terminal result of one check request."""
    job_id: str
    success: bool
    product_id: Optional[int] = None
    url: Optional[str] = None
    price: Optional[int] = None
    currency: Optional[str] = None
    tier: Optional[str] = None
    method: Optional[str] = None
    failure_reason: Optional[str] = None
    error: Optional[str] = None
    duplicate: bool = False  # another delivery already owns or finished the job


class PriceCheckWorker:
    """
    Consumes CheckRequests.

    Extraction failures and incomplete records become a failed check job and
    a ``last_failed_at`` update; they are never raised. Only a store outage
    that prevents recording the terminal state propagates, so the queue
    redelivers the request.
    """

    def __init__(self, extractor: TieredExtractor, session_factory=AsyncSessionLocal):
        self.extractor = extractor
        self.session_factory = session_factory

    async def handle(self, request: CheckRequest) -> CheckOutcome:
        log = get_logger(__name__, job_id=request.job_id)

        async with self.session_factory() as db:
            job = await jobs.get_check_job(db, request.job_id)
            if job is not None and job.is_terminal:
                log.info(f"Check job {request.job_id} already {job.status}, skipping redelivery")
                return CheckOutcome(
                    job_id=request.job_id,
                    success=job.status == "succeeded",
                    product_id=job.product_id,
                    url=job.url,
                    failure_reason=job.failure_reason,
                    duplicate=True,
                )
            if job is None:
                try:
                    await jobs.create_check_job(
                        db, job_id=request.job_id, product_id=request.product_id, url=request.url
                    )
                except IntegrityError:
                    # A concurrent delivery created the row first
                    await db.rollback()
            claimed = await jobs.claim_check_job(
                db, request.job_id, lease_seconds=settings.queue_visibility_timeout_seconds
            )
            if not claimed:
                log.info(f"Check job {request.job_id} is held by another attempt, skipping duplicate delivery")
                return CheckOutcome(
                    job_id=request.job_id,
                    success=False,
                    product_id=request.product_id,
                    url=request.url,
                    duplicate=True,
                )

            product_id = request.product_id
            url = request.url
            if not url and product_id is not None:
                product = await repository.get_product(db, product_id)
                url = product.url if product else None

        if not url:
            log.warning(f"Check job {request.job_id} has no resolvable URL (product_id={product_id})")
            return await self._record_failure(
                request.job_id, product_id, None, "no_url", "No URL to check", None
            )

        extraction = await self.extractor.extract(url)

        if extraction.success:
            result = extraction.result
            try:
                return await self._record_success(request.job_id, product_id, url, result)
            except SQLAlchemyError as e:
                log.error(f"Failed to persist observation for {url}: {e}", exc_info=True)
                return await self._record_failure(
                    request.job_id, product_id, url, "persist_failed", str(e), result.tier.value
                )

        error = extraction.error
        return await self._record_failure(
            request.job_id, product_id, url, error.reason, error.message, error.tier
        )

    async def _record_success(self, job_id, product_id, url, result) -> CheckOutcome:
        async with self.session_factory() as db:
            if product_id is None:
                product = await repository.get_or_create_product_by_url(
                    db, url, name=result.title, image_url=result.image_url
                )
                product_id = product.id

            observation = await repository.add_observation(
                db,
                product_id=product_id,
                price=result.price,
                currency=result.currency,
                tier=result.tier.value,
                method=result.method,
            )
            await repository.mark_success(
                db, product_id, observation.captured_at, name=result.title, image_url=result.image_url
            )
            await jobs.finish_check_job(
                db,
                job_id,
                succeeded=True,
                tier=result.tier.value,
                method=result.method,
                product_id=product_id,
            )

        metrics.record_check(True)
        logger.info(
            f"Price check {job_id} succeeded for {url}: {result.price} {result.currency} "
            f"(tier={result.tier.value}, method={result.method})"
        )
        return CheckOutcome(
            job_id=job_id,
            success=True,
            product_id=product_id,
            url=url,
            price=result.price,
            currency=result.currency,
            tier=result.tier.value,
            method=result.method,
        )

    async def _record_failure(
        self,
        job_id: str,
        product_id: Optional[int],
        url: Optional[str],
        reason: str,
        message: str,
        tier: Optional[str],
    ) -> CheckOutcome:
        async with self.session_factory() as db:
            if product_id is None and url:
                product = await repository.get_product_by_url(db, url)
                product_id = product.id if product else None
            if product_id is not None:
                await repository.mark_failure(db, product_id, datetime.utcnow(), reason)
            await jobs.finish_check_job(
                db,
                job_id,
                succeeded=False,
                failure_reason=reason,
                error_message=message,
                tier=tier,
                product_id=product_id,
            )

        metrics.record_check(False, reason)
        logger.warning(f"Price check {job_id} failed for {url or 'unknown URL'}: {reason} ({message})")
        return CheckOutcome(
            job_id=job_id,
            success=False,
            product_id=product_id,
            url=url,
            tier=tier,
            failure_reason=reason,
            error=message,
        )
