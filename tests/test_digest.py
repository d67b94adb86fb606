"""Tests for digest run orchestration."""

from datetime import datetime

import pytest

from pricewatch.db import jobs, repository
from pricewatch.db.models import Product
from pricewatch.ingest.base import ExtractionOutcome, ExtractionResult, Tier
from pricewatch.ingest.errors import FetchTimeoutError
from pricewatch.worker.digest import DigestOrchestrator
from pricewatch.worker.messages import CHECK_QUEUE, CheckRequest, DigestRequest
from pricewatch.worker.price_check import PriceCheckWorker


class FakeExtractor:
    """Succeeds for every URL except those listed in ``failing``."""

    def __init__(self, failing=()):
        self.failing = set(failing)

    async def extract(self, url):
        if url in self.failing:
            return ExtractionOutcome(error=FetchTimeoutError(url, "timed out", "rendered"))
        return ExtractionOutcome(
            result=ExtractionResult(title="Item", price=1500, tier=Tier.STATIC, method="selectors")
        )


class FakeSender:
    def __init__(self, error=None):
        self.reports = []
        self.error = error

    async def send(self, report):
        if self.error:
            raise self.error
        self.reports.append(report)


async def _add_products(session_factory, count, active=True):
    urls = []
    async with session_factory() as db:
        for i in range(count):
            url = f"https://shop.example.com/{'on' if active else 'off'}/{i}"
            db.add(Product(url=url, active=active))
            urls.append(url)
        await db.commit()
    return urls


def _process_checks_inline(memory_queue, session_factory, extractor):
    worker = PriceCheckWorker(extractor, session_factory)

    async def handle(queue, payload):
        if queue == CHECK_QUEUE:
            await worker.handle(CheckRequest.from_payload(payload))

    memory_queue.on_enqueue = handle


async def _create_run(session_factory, trigger="manual", previous=None):
    async with session_factory() as db:
        run = await jobs.create_digest_run(db, trigger, previous_last_sent_at=previous)
    return run.run_id


async def _load_run(session_factory, run_id):
    async with session_factory() as db:
        return await jobs.get_digest_run(db, run_id)


@pytest.mark.asyncio
async def test_failures_still_produce_every_row(session_factory, memory_queue):
    urls = await _add_products(session_factory, 4)
    await _add_products(session_factory, 2, active=False)
    _process_checks_inline(memory_queue, session_factory, FakeExtractor(failing=urls[:1]))
    sender = FakeSender()
    orchestrator = DigestOrchestrator(memory_queue, sender, session_factory, poll_interval=0.01)
    run_id = await _create_run(session_factory)

    state = await orchestrator.run(DigestRequest(run_id=run_id))

    assert state == "done"
    assert len(sender.reports) == 1
    report = sender.reports[0]
    assert len(report.products) == 4
    assert report.unavailable_count == 1
    unavailable = [p for p in report.products if not p.available]
    assert unavailable[0].url == urls[0]
    assert unavailable[0].failure_reason == "timeout"

    run = await _load_run(session_factory, run_id)
    assert run.total_products == 4
    assert run.succeeded_count == 3
    assert run.failed_count == 1
    assert run.report_sent_at is not None

    async with session_factory() as db:
        assert await repository.get_last_sent_at(db) is None


@pytest.mark.asyncio
async def test_scheduled_run_advances_marker(session_factory, memory_queue):
    await _add_products(session_factory, 2)
    _process_checks_inline(memory_queue, session_factory, FakeExtractor())
    orchestrator = DigestOrchestrator(memory_queue, FakeSender(), session_factory, poll_interval=0.01)
    run_id = await _create_run(session_factory, trigger="scheduled")

    before = datetime.utcnow()
    state = await orchestrator.run(DigestRequest(run_id=run_id, trigger="scheduled"))

    assert state == "done"
    async with session_factory() as db:
        last_sent_at = await repository.get_last_sent_at(db)
    assert last_sent_at is not None
    assert last_sent_at >= before


@pytest.mark.asyncio
async def test_scheduled_run_does_not_overwrite_newer_marker(session_factory, memory_queue):
    await _add_products(session_factory, 1)
    _process_checks_inline(memory_queue, session_factory, FakeExtractor())
    current = datetime(2026, 1, 3, 9, 0, 1)
    async with session_factory() as db:
        await repository.compare_and_set_last_sent(db, None, current)
    stale = repository.format_timestamp(datetime(2026, 1, 2, 9, 0, 1))
    orchestrator = DigestOrchestrator(memory_queue, FakeSender(), session_factory, poll_interval=0.01)
    run_id = await _create_run(session_factory, trigger="scheduled", previous=stale)

    state = await orchestrator.run(DigestRequest(run_id=run_id, trigger="scheduled"))

    assert state == "done"
    async with session_factory() as db:
        assert await repository.get_last_sent_at(db) == current


@pytest.mark.asyncio
async def test_no_active_products_finishes_without_report(session_factory, memory_queue):
    await _add_products(session_factory, 1, active=False)
    sender = FakeSender()
    orchestrator = DigestOrchestrator(memory_queue, sender, session_factory, poll_interval=0.01)
    run_id = await _create_run(session_factory, trigger="scheduled")

    state = await orchestrator.run(DigestRequest(run_id=run_id, trigger="scheduled"))

    assert state == "done"
    assert sender.reports == []
    assert memory_queue.enqueued(CHECK_QUEUE) == []
    async with session_factory() as db:
        assert await repository.get_last_sent_at(db) is not None


@pytest.mark.asyncio
async def test_enqueue_failure_marks_children_failed(session_factory, memory_queue):
    await _add_products(session_factory, 3)
    memory_queue.fail_enqueue = True
    sender = FakeSender()
    orchestrator = DigestOrchestrator(memory_queue, sender, session_factory, poll_interval=0.01)
    run_id = await _create_run(session_factory)

    state = await orchestrator.run(DigestRequest(run_id=run_id))

    assert state == "done"
    assert len(sender.reports[0].products) == 3
    assert all(p.failure_reason == "enqueue_failed" for p in sender.reports[0].products)


@pytest.mark.asyncio
async def test_report_failure_fails_run(session_factory, memory_queue):
    await _add_products(session_factory, 1)
    _process_checks_inline(memory_queue, session_factory, FakeExtractor())
    sender = FakeSender(error=RuntimeError("webhook returned 500"))
    orchestrator = DigestOrchestrator(memory_queue, sender, session_factory, poll_interval=0.01)
    run_id = await _create_run(session_factory, trigger="scheduled")

    state = await orchestrator.run(DigestRequest(run_id=run_id, trigger="scheduled"))

    assert state == "failed"
    run = await _load_run(session_factory, run_id)
    assert "webhook returned 500" in run.error_message
    async with session_factory() as db:
        assert await repository.get_last_sent_at(db) is None
        # Observations from the run are kept
        product = (await repository.get_active_products(db))[0]
        assert len(await repository.latest_observations(db, product.id)) == 1


@pytest.mark.asyncio
async def test_wait_ceiling_fails_stuck_children(session_factory, memory_queue):
    await _add_products(session_factory, 2)
    sender = FakeSender()
    orchestrator = DigestOrchestrator(
        memory_queue, sender, session_factory, poll_interval=0.01, max_wait=0.02
    )
    run_id = await _create_run(session_factory)

    state = await orchestrator.run(DigestRequest(run_id=run_id))

    assert state == "done"
    assert len(memory_queue.enqueued(CHECK_QUEUE)) == 2
    products = sender.reports[0].products
    assert len(products) == 2
    assert all(p.failure_reason == "wait_ceiling" for p in products)


@pytest.mark.asyncio
async def test_redelivered_finished_run_is_not_resent(session_factory, memory_queue):
    await _add_products(session_factory, 1)
    _process_checks_inline(memory_queue, session_factory, FakeExtractor())
    sender = FakeSender()
    orchestrator = DigestOrchestrator(memory_queue, sender, session_factory, poll_interval=0.01)
    run_id = await _create_run(session_factory)

    await orchestrator.run(DigestRequest(run_id=run_id))
    state = await orchestrator.run(DigestRequest(run_id=run_id))

    assert state == "done"
    assert len(sender.reports) == 1


@pytest.mark.asyncio
async def test_resume_from_awaiting_children(session_factory, memory_queue):
    urls = await _add_products(session_factory, 2)
    run_id = await _create_run(session_factory)
    async with session_factory() as db:
        run = await jobs.get_digest_run(db, run_id)
        products = await repository.get_active_products(db)
        for product in products:
            child = await jobs.create_check_job(db, product_id=product.id, url=product.url, digest_run_id=run.id)
            await jobs.finish_check_job(db, child.job_id, succeeded=False, failure_reason="network_error")
        await jobs.update_digest_run(db, run_id, state="awaiting_children", total_products=2)
    sender = FakeSender()
    orchestrator = DigestOrchestrator(memory_queue, sender, session_factory, poll_interval=0.01)

    state = await orchestrator.run(DigestRequest(run_id=run_id))

    assert state == "done"
    assert memory_queue.enqueued(CHECK_QUEUE) == []
    assert sorted(p.url for p in sender.reports[0].products) == sorted(urls)


@pytest.mark.asyncio
async def test_unknown_run_is_dropped(session_factory, memory_queue):
    orchestrator = DigestOrchestrator(memory_queue, FakeSender(), session_factory, poll_interval=0.01)

    assert await orchestrator.run(DigestRequest(run_id="missing")) is None


@pytest.mark.asyncio
async def test_resumed_fan_out_does_not_push_queued_child_twice(session_factory, memory_queue):
    await _add_products(session_factory, 1)
    run_id = await _create_run(session_factory)
    async with session_factory() as db:
        run = await jobs.get_digest_run(db, run_id)
        product = (await repository.get_active_products(db))[0]
        child = await jobs.create_check_job(db, product_id=product.id, url=product.url, digest_run_id=run.id)
        await jobs.update_digest_run(db, run_id, state="fanning_out")
    request = CheckRequest(job_id=child.job_id, product_id=product.id, digest_run_id=run_id)
    await memory_queue.enqueue(CHECK_QUEUE, request.to_payload(), job_id=child.job_id)
    orchestrator = DigestOrchestrator(
        memory_queue, FakeSender(), session_factory, poll_interval=0.01, max_wait=0.02
    )

    state = await orchestrator.run(DigestRequest(run_id=run_id))

    assert state == "done"
    assert [payload["job_id"] for payload in memory_queue.enqueued(CHECK_QUEUE)] == [child.job_id]
