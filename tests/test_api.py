"""Tests for the HTTP layer (submission, status, health)."""

import asyncio
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from reelqueue.api.main import create_app
from reelqueue.models import ReelQueueConfig
from reelqueue.queue import QueueMessage, SQLiteQueue


@pytest.fixture
def config(tmp_path):
    return ReelQueueConfig.from_dict({"publish": {"output_dir": str(tmp_path / "outputs")}})


@pytest.fixture
async def client(config, store, queue):
    app = create_app(config, store=store, queue=queue)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "queue_connected": True}


async def test_submit_returns_202_and_queues(client, queue):
    response = await client.post("/jobs", json={"source_reference": "https://example.com/video"})
    assert response.status_code == 202
    data = response.json()
    assert data["job_id"] == 1
    assert data["state"] == "queued"
    assert data["result_reference"] is None

    delivery = queue.claim("c1")
    assert QueueMessage.decode(delivery.body).job_id == 1


@pytest.mark.parametrize("key", ["youtubeUrl", "url"])
async def test_submit_accepts_legacy_keys(client, key):
    response = await client.post("/jobs", json={key: "https://example.com/video"})
    assert response.status_code == 202


@pytest.mark.parametrize(
    "body",
    [{}, {"source_reference": ""}, {"source_reference": "not a url"}, {"source_reference": 5}],
)
async def test_submit_bad_input_400(client, store, body):
    response = await client.post("/jobs", json=body)
    assert response.status_code == 400
    assert store.list_jobs() == []


async def test_submit_malformed_json_400(client):
    response = await client.post(
        "/jobs", content=b"{not json", headers={"content-type": "application/json"}
    )
    assert response.status_code == 400


async def test_submit_queue_down_503(config, store, queue_path):
    app = create_app(config, store=store, queue=SQLiteQueue(queue_path))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        health = await ac.get("/health")
        assert health.json()["queue_connected"] is False

        response = await ac.post("/jobs", json={"source_reference": "https://example.com/video"})
        assert response.status_code == 503
    assert store.list_jobs() == []


async def test_list_newest_first(client):
    for i in range(3):
        await client.post("/jobs", json={"source_reference": f"https://example.com/{i}"})
    response = await client.get("/jobs")
    assert response.status_code == 200
    assert [job["job_id"] for job in response.json()] == [3, 2, 1]


async def test_get_job(client, store):
    await client.post("/jobs", json={"source_reference": "https://example.com/video"})
    store.mark_processing(1)
    store.mark_completed(1, "/outputs/job_1_short.mp4")

    response = await client.get("/jobs/1")
    assert response.status_code == 200
    data = response.json()
    assert data["state"] == "completed"
    assert data["result_reference"] == "/outputs/job_1_short.mp4"


async def test_get_missing_404(client):
    response = await client.get("/jobs/42")
    assert response.status_code == 404


async def test_delete(client):
    await client.post("/jobs", json={"source_reference": "https://example.com/video"})
    response = await client.delete("/jobs/1")
    assert response.status_code == 200
    assert (await client.get("/jobs/1")).status_code == 404
    assert (await client.delete("/jobs/1")).status_code == 404


async def test_outputs_served(client, config):
    out_dir = Path(config.publish.output_dir)
    out_dir.mkdir(parents=True)
    (out_dir / "job_1_short.mp4").write_bytes(b"clip")

    response = await client.get("/outputs/job_1_short.mp4")
    assert response.status_code == 200
    assert response.content == b"clip"


async def _eventually(predicate, timeout_s=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate():
        assert loop.time() < deadline, "condition not reached in time"
        await asyncio.sleep(0.02)


async def test_queue_reconnected_after_drop(tmp_path, store, queue_path):
    config = ReelQueueConfig.from_dict(
        {
            "queue": {"db_path": queue_path, "reconnect_delay_s": 0.05},
            "publish": {"output_dir": str(tmp_path / "outputs")},
        }
    )
    app = create_app(config, store=store)

    async with app.router.lifespan_context(app):
        await _eventually(lambda: app.state.queue.is_connected)
        app.state.queue.close()
        await _eventually(lambda: app.state.queue.is_connected)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.post("/jobs", json={"source_reference": "https://example.com/video"})

    assert response.status_code == 202
    assert store.get(1) is not None


async def test_store_available_once_reachable(tmp_path, queue):
    db_dir = tmp_path / "not-yet"
    config = ReelQueueConfig.from_dict(
        {
            "store": {"database_url": f"sqlite:///{db_dir / 'jobs.db'}", "reconnect_delay_s": 0.05},
            "publish": {"output_dir": str(tmp_path / "outputs")},
        }
    )
    app = create_app(config, queue=queue)

    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            assert (await ac.get("/jobs")).status_code == 503

            db_dir.mkdir()
            await _eventually(lambda: app.state.store is not None)

            response = await ac.get("/jobs")

    assert response.status_code == 200
    assert response.json() == []
