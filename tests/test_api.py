import httpx
import pytest
import pytest_asyncio

from jobqueue.api import create_app


@pytest_asyncio.fixture
async def client(manager):
    await manager.create_queue("posts")
    app = create_app(manager, manage_lifecycle=False)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_healthz(client):
    r = await client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["ok"] is True


@pytest.mark.asyncio
async def test_submit_and_fetch_a_job(client):
    r = await client.post(
        "/queues/posts/jobs",
        json={"type": "post_scheduling", "payload": {"post_id": "1"}, "owner": {"user_id": "u1"}},
    )
    assert r.status_code == 200
    job_id = r.json()["job_id"]
    assert r.json()["state"] == "waiting"

    r = await client.get(f"/queues/posts/jobs/{job_id}")
    assert r.status_code == 200
    body = r.json()
    assert body["type"] == "post_scheduling"
    assert body["owner"] == {"user_id": "u1", "workspace_id": None}
    assert body["attempts_made"] == 0


@pytest.mark.asyncio
async def test_unknown_queue_and_job_are_404(client):
    assert (await client.post("/queues/nope/jobs", json={"type": "t", "payload": {}})).status_code == 404
    assert (await client.get("/queues/nope/stats")).status_code == 404
    assert (await client.get("/queues/posts/jobs/404")).status_code == 404
    assert (await client.post("/queues/posts/jobs/404/retry")).status_code == 404


@pytest.mark.asyncio
async def test_rejected_submissions_are_422(client):
    assert (await client.post("/queues/posts/jobs", json={"type": "", "payload": {}})).status_code == 422
    r = await client.post("/queues/posts/jobs", json={"type": "t", "payload": {}, "priority": 2**30})
    assert r.status_code == 422
    r = await client.post("/queues/posts/jobs", json={"type": "t", "payload": {}, "options": {"attempts": 0}})
    assert r.status_code == 422
    stats = (await client.get("/queues/posts/stats")).json()
    assert stats["total"] == 0


@pytest.mark.asyncio
async def test_retrying_a_job_that_has_not_failed_is_409(client):
    job_id = (await client.post("/queues/posts/jobs", json={"type": "t", "payload": {}})).json()["job_id"]
    r = await client.post(f"/queues/posts/jobs/{job_id}/retry")
    assert r.status_code == 409
    assert r.json()["state"] == "waiting"


@pytest.mark.asyncio
async def test_pause_resume_and_stats(client):
    await client.post("/queues/posts/jobs", json={"type": "t", "payload": {}})
    assert (await client.post("/queues/posts/pause")).json()["paused"] is True
    stats = (await client.get("/queues/posts/stats")).json()
    assert stats["paused"] == 1
    assert stats["paused_flag"] is True
    await client.post("/queues/posts/resume")
    stats = (await client.get("/queues/posts/stats")).json()
    assert stats["waiting"] == 1
    assert stats["paused_flag"] is False

    listing = (await client.get("/queues")).json()
    assert listing["posts"]["waiting"] == 1


@pytest.mark.asyncio
async def test_delete_and_clean(client):
    job_id = (await client.post("/queues/posts/jobs", json={"type": "t", "payload": {}})).json()["job_id"]
    assert (await client.delete(f"/queues/posts/jobs/{job_id}")).json() == {"removed": True}
    assert (await client.delete(f"/queues/posts/jobs/{job_id}")).json() == {"removed": False}

    assert (await client.post("/queues/posts/clean", json={"state": "failed"})).json() == {"cleaned": 0}
    assert (await client.post("/queues/posts/clean", json={"state": "waiting"})).status_code == 422
    assert (await client.post("/queues/posts/retry-failed")).json() == {"retried": 0}


@pytest.mark.asyncio
async def test_list_jobs_by_state(client):
    await client.post("/queues/posts/jobs", json={"type": "t", "payload": {"n": 1}, "options": {"delay": 60}})
    delayed = (await client.get("/queues/posts/jobs", params={"state": "delayed"})).json()
    assert [j["payload"] for j in delayed] == [{"n": 1}]
    assert (await client.get("/queues/posts/jobs", params={"state": "bogus"})).status_code == 422


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_queue_gauges(client):
    await client.post("/queues/posts/jobs", json={"type": "t", "payload": {}})
    r = await client.get("/metrics")
    assert r.status_code == 200
    assert 'jobqueue_queue_jobs{queue="posts",state="waiting"} 1.0' in r.text
