"""API tests against a throwaway database and an in-memory queue."""

import httpx
import pytest
import pytest_asyncio

from pricewatch.api.deps import get_database, get_task_runner
from pricewatch.main import app
from pricewatch.worker.messages import CHECK_QUEUE
from pricewatch.worker.tasks import TaskRunner


class NoLock:
    async def acquire_lock(self, tick_id, ttl_seconds=None):
        return "token"

    async def safe_unlock(self, tick_id, token):
        return True

    async def close(self):
        pass


@pytest_asyncio.fixture
async def client(session_factory, memory_queue):
    async def get_test_database():
        async with session_factory() as session:
            yield session

    runner = TaskRunner(session_factory, queue=memory_queue, lock_manager=NoLock())
    app.dependency_overrides[get_database] = get_test_database
    app.dependency_overrides[get_task_runner] = lambda: runner

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health_reports_components(client, memory_queue):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["components"] == {"database": "ok", "queue": "ok"}

    memory_queue.fail_enqueue = True
    response = await client.get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "degraded"


@pytest.mark.asyncio
async def test_product_crud(client):
    response = await client.post("/api/products", json={"url": "https://shop.example.com/a", "name": "A"})
    assert response.status_code == 201
    product_id = response.json()["id"]

    duplicate = await client.post("/api/products", json={"url": "https://shop.example.com/a"})
    assert duplicate.status_code == 400

    response = await client.patch(f"/api/products/{product_id}", json={"active": False})
    assert response.json()["active"] is False

    response = await client.get("/api/products", params={"active": "true"})
    assert response.json() == []

    assert (await client.delete(f"/api/products/{product_id}")).status_code == 204
    assert (await client.get(f"/api/products/{product_id}")).status_code == 404


@pytest.mark.asyncio
async def test_invalid_product_url_rejected(client):
    response = await client.post("/api/products", json={"url": "ftp://shop.example.com/a"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_check_price_queues_job(client, memory_queue):
    response = await client.post("/api/check-price", json={"url": "https://shop.example.com/b"})

    assert response.status_code == 202
    job_id = response.json()["job_id"]
    assert memory_queue.enqueued(CHECK_QUEUE)[0]["job_id"] == job_id

    status = await client.get(f"/api/jobs/{job_id}")
    assert status.json()["kind"] == "check"
    assert status.json()["status"] == "queued"


@pytest.mark.asyncio
async def test_check_price_validation(client):
    assert (await client.post("/api/check-price", json={})).status_code == 422
    assert (await client.post("/api/check-price", json={"product_id": 42})).status_code == 404


@pytest.mark.asyncio
async def test_check_price_queue_down(client, memory_queue):
    memory_queue.fail_enqueue = True

    response = await client.post("/api/check-price", json={"url": "https://shop.example.com/c"})

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_trigger_digest_and_read_run(client):
    response = await client.post("/api/digest/trigger")
    assert response.status_code == 202
    body = response.json()

    run = await client.get(f"/api/digest/runs/{body['run_id']}")
    assert run.json()["state"] == "pending"
    assert run.json()["trigger"] == "manual"

    job = await client.get(f"/api/jobs/{body['job_id']}")
    assert job.json()["kind"] == "digest"
    assert job.json()["run_id"] == body["run_id"]

    assert (await client.get("/api/jobs/unknown")).status_code == 404


@pytest.mark.asyncio
async def test_trigger_digest_records_requester(client):
    response = await client.post("/api/digest/trigger", json={"triggered_by": "alice"})
    assert response.status_code == 202
    run_id = response.json()["run_id"]

    run = await client.get(f"/api/digest/runs/{run_id}")
    assert run.json()["triggered_by"] == "alice"

    runs = await client.get("/api/digest/runs")
    assert [r["triggered_by"] for r in runs.json()] == ["alice"]


@pytest.mark.asyncio
async def test_email_schedule_settings(client):
    response = await client.get("/api/settings/email-schedule")
    assert response.json()["cron"] == "0 9 * * *"

    response = await client.put(
        "/api/settings/email-schedule",
        json={"frequency": "weekly", "hour": 18, "day_of_week": 5},
    )
    assert response.status_code == 200
    assert response.json()["description"] == "Every Friday at 18:00"
    assert response.json()["cron"] == "0 18 * * 5"

    bad = await client.put("/api/settings/email-schedule", json={"frequency": "daily", "hour": 24})
    assert bad.status_code == 422
