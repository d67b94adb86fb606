"""Tests for the schedule tick and job producers."""

from datetime import datetime

import pytest
from sqlalchemy import select

from pricewatch.db import jobs, repository
from pricewatch.db.models import CheckJob, DigestRun, Product
from pricewatch.ingest.base import ExtractionOutcome, ExtractionResult, Tier
from pricewatch.worker.digest import DigestOrchestrator
from pricewatch.worker.job_queue import QueueUnavailableError
from pricewatch.worker.messages import CHECK_QUEUE, DIGEST_QUEUE, CheckRequest, DigestRequest
from pricewatch.worker.price_check import PriceCheckWorker
from pricewatch.worker.schedule import ScheduleConfig
from pricewatch.worker.tasks import TaskRunner


class FakeLock:
    def __init__(self, held=False):
        self.held = held
        self.released = []

    async def acquire_lock(self, tick_id, ttl_seconds=None):
        if self.held:
            return None
        self.held = True
        return f"token-{tick_id}"

    async def safe_unlock(self, tick_id, token):
        self.held = False
        self.released.append(tick_id)
        return True

    async def close(self):
        pass


class PricedExtractor:
    async def extract(self, url):
        return ExtractionOutcome(
            result=ExtractionResult(title="Item", price=1500, tier=Tier.STATIC, method="selectors")
        )


class BrokenSender:
    async def send(self, report):
        raise RuntimeError("smtp down")


async def _due_every_day(session_factory):
    # Midnight UTC has always passed, so a fresh schedule is due
    async with session_factory() as db:
        await repository.set_schedule_config(db, ScheduleConfig(frequency="daily", hour=0))


@pytest.mark.asyncio
async def test_due_tick_claims_slot_and_queues_digest(session_factory, memory_queue):
    await _due_every_day(session_factory)
    lock = FakeLock()
    runner = TaskRunner(session_factory, queue=memory_queue, lock_manager=lock)

    decision = await runner.scheduled_tick()

    assert decision == "triggered"
    queued = memory_queue.enqueued(DIGEST_QUEUE)
    assert len(queued) == 1
    assert queued[0]["trigger"] == "scheduled"
    async with session_factory() as db:
        run = await jobs.get_digest_run(db, queued[0]["run_id"])
    assert run.slot_key == datetime.utcnow().strftime("%Y-%m-%dT00:00")
    assert run.previous_last_sent_at is None
    assert lock.held is False


@pytest.mark.asyncio
async def test_repeated_tick_does_not_claim_slot_twice(session_factory, memory_queue):
    await _due_every_day(session_factory)
    runner = TaskRunner(session_factory, queue=memory_queue, lock_manager=FakeLock())

    first = await runner.scheduled_tick()
    second = await runner.scheduled_tick()

    assert first == "triggered"
    assert second == "claimed"
    assert len(memory_queue.enqueued(DIGEST_QUEUE)) == 1


@pytest.mark.asyncio
async def test_tick_reclaims_slot_of_failed_run(session_factory, memory_queue):
    await _due_every_day(session_factory)
    async with session_factory() as db:
        db.add(Product(url="https://shop.example.com/kettle", active=True))
        await db.commit()
    worker = PriceCheckWorker(PricedExtractor(), session_factory)

    async def process_checks(queue, payload):
        if queue == CHECK_QUEUE:
            await worker.handle(CheckRequest.from_payload(payload))

    memory_queue.on_enqueue = process_checks
    runner = TaskRunner(session_factory, queue=memory_queue, lock_manager=FakeLock())
    orchestrator = DigestOrchestrator(memory_queue, BrokenSender(), session_factory, poll_interval=0.01)

    assert await runner.scheduled_tick() == "triggered"
    failed_run_id = memory_queue.enqueued(DIGEST_QUEUE)[0]["run_id"]
    assert await orchestrator.run(DigestRequest(run_id=failed_run_id, trigger="scheduled")) == "failed"

    assert await runner.scheduled_tick() == "triggered"

    slot = datetime.utcnow().strftime("%Y-%m-%dT00:00")
    async with session_factory() as db:
        holder = await jobs.get_digest_run_by_slot(db, slot)
        failed_run = await jobs.get_digest_run(db, failed_run_id)
        runs = (await db.execute(select(DigestRun))).scalars().all()
    assert len(runs) == 2
    assert holder.run_id != failed_run_id
    assert holder.state == "pending"
    assert holder.triggered_by == "scheduler"
    assert failed_run.state == "failed"
    assert failed_run.slot_key == f"{slot}~{failed_run_id[:8]}"
    assert len(memory_queue.enqueued(DIGEST_QUEUE)) == 2

    # The replacement run is live, so the slot stays claimed
    assert await runner.scheduled_tick() == "claimed"


@pytest.mark.asyncio
async def test_tick_skips_when_lock_held(session_factory, memory_queue):
    await _due_every_day(session_factory)
    runner = TaskRunner(session_factory, queue=memory_queue, lock_manager=FakeLock(held=True))

    assert await runner.scheduled_tick() == "locked"
    assert memory_queue.enqueued(DIGEST_QUEUE) == []


@pytest.mark.asyncio
async def test_tick_not_due_after_todays_send(session_factory, memory_queue):
    await _due_every_day(session_factory)
    async with session_factory() as db:
        await repository.compare_and_set_last_sent(db, None, datetime.utcnow())
    runner = TaskRunner(session_factory, queue=memory_queue, lock_manager=FakeLock())

    assert await runner.scheduled_tick() == "not_due"
    assert memory_queue.enqueued(DIGEST_QUEUE) == []


@pytest.mark.asyncio
async def test_tick_releases_slot_when_queue_down(session_factory, memory_queue):
    await _due_every_day(session_factory)
    lock = FakeLock()
    runner = TaskRunner(session_factory, queue=memory_queue, lock_manager=lock)
    memory_queue.fail_enqueue = True

    with pytest.raises(QueueUnavailableError):
        await runner.scheduled_tick()
    assert lock.held is False

    memory_queue.fail_enqueue = False
    assert await runner.scheduled_tick() == "triggered"


@pytest.mark.asyncio
async def test_enqueue_check_persists_job(session_factory, memory_queue):
    runner = TaskRunner(session_factory, queue=memory_queue, lock_manager=FakeLock())

    job_id = await runner.enqueue_check(url="https://shop.example.com/x")

    queued = memory_queue.enqueued(CHECK_QUEUE)
    assert queued == [{"job_id": job_id, "product_id": None, "url": "https://shop.example.com/x", "digest_run_id": None}]
    async with session_factory() as db:
        job = await jobs.get_check_job(db, job_id)
    assert job.status == "queued"


@pytest.mark.asyncio
async def test_enqueue_check_failure_marks_job_failed(session_factory, memory_queue):
    runner = TaskRunner(session_factory, queue=memory_queue, lock_manager=FakeLock())
    memory_queue.fail_enqueue = True

    with pytest.raises(QueueUnavailableError):
        await runner.enqueue_check(url="https://shop.example.com/y")

    async with session_factory() as db:
        result = await db.execute(
            select(CheckJob).where(CheckJob.url == "https://shop.example.com/y")
        )
        job = result.scalar_one()
    assert job.status == "failed"
    assert job.failure_reason == "enqueue_failed"
