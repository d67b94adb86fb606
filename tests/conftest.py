"""Shared fixtures: a throwaway SQLite database and an in-memory queue."""

from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pricewatch.db.models import Base
from pricewatch.worker.job_queue import QueuedJob, QueueUnavailableError


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pricewatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


class InMemoryQueue:
    """JobQueue stand-in. ``on_enqueue`` lets a test process jobs inline."""

    def __init__(self):
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.pending: Dict[str, List[str]] = {}
        self.acked: List[str] = []
        self.fail_enqueue = False
        self.on_enqueue: Optional[Callable[[str, Dict[str, Any]], Awaitable[None]]] = None

    def enqueued(self, queue: str) -> List[Dict[str, Any]]:
        return [self.jobs[job_id]["payload"] for job_id in self.pending.get(queue, [])]

    async def enqueue(self, queue: str, payload: Dict[str, Any], job_id: Optional[str] = None) -> str:
        if self.fail_enqueue:
            raise QueueUnavailableError("queue down")
        job_id = job_id or uuid4().hex
        if self.jobs.get(job_id, {}).get("state") in ("queued", "reserved"):
            return job_id
        self.jobs[job_id] = {"queue": queue, "payload": payload, "state": "queued", "attempts": 0}
        self.pending.setdefault(queue, []).append(job_id)
        if self.on_enqueue is not None:
            await self.on_enqueue(queue, payload)
        return job_id

    async def reserve(self, queue: str, timeout: float) -> Optional[QueuedJob]:
        ids = self.pending.get(queue)
        if not ids:
            return None
        job_id = ids.pop(0)
        job = self.jobs[job_id]
        job["attempts"] += 1
        job["state"] = "reserved"
        return QueuedJob(job_id=job_id, queue=queue, payload=job["payload"], attempts=job["attempts"])

    async def ack(self, job: QueuedJob) -> None:
        self.jobs[job.job_id]["state"] = "completed"
        self.acked.append(job.job_id)

    async def nack(self, job: QueuedJob, error: str) -> bool:
        self.jobs[job.job_id]["state"] = "dead"
        return False

    async def touch(self, job: QueuedJob) -> None:
        pass

    async def requeue_stale(self, queue: str, visibility_timeout: float) -> int:
        return 0

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.jobs.get(job_id)

    async def ping(self) -> None:
        if self.fail_enqueue:
            raise QueueUnavailableError("queue down")


@pytest.fixture
def memory_queue():
    return InMemoryQueue()
