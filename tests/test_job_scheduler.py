from datetime import datetime, timedelta, timezone

import pytest

from jobqueue.config import ANALYTICS_COLLECTION, MEDIA_PROCESSING, NOTIFICATION_DISPATCH, POST_SCHEDULING
from jobqueue.job_scheduler import BULK_PRIORITY, JobScheduler
from jobqueue.models import COMPLETED, DELAYED, FAILED, WAITING, Job
from jobqueue.payloads import (
    POST_SCHEDULING_JOB,
    HealthCheckPayload,
    PostSchedulingPayload,
    QueueCleanupPayload,
)


def post(post_id="p1", when=None):
    return {
        "post_id": post_id,
        "content": {"text": "hello"},
        "platforms": ["twitter"],
        "scheduled_for": (when or datetime.now(timezone.utc)).isoformat(),
        "user_id": "u1",
        "workspace_id": "w1",
        "account_ids": {"twitter": "acc-1"},
    }


@pytest.mark.asyncio
async def test_initialize_starts_workers_and_schedules_recurring_jobs(manager):
    published = []

    async def publish(job, payload: PostSchedulingPayload):
        published.append(payload.post_id)

    scheduler = JobScheduler(manager)
    await scheduler.initialize({POST_SCHEDULING: {POST_SCHEDULING_JOB: (publish, PostSchedulingPayload)}})

    assert scheduler.initialized
    assert set(scheduler.workers) == {POST_SCHEDULING, NOTIFICATION_DISPATCH}
    assert MEDIA_PROCESSING in manager.queues
    assert len(await manager.admin.get_repeatable_jobs(ANALYTICS_COLLECTION)) == 3
    assert len(await manager.admin.get_repeatable_jobs(NOTIFICATION_DISPATCH)) == 2
    assert (await manager.get_queue_stats(ANALYTICS_COLLECTION)).delayed == 3

    await scheduler.initialize()
    assert len(await manager.admin.get_repeatable_jobs(ANALYTICS_COLLECTION)) == 3


@pytest.mark.asyncio
async def test_schedule_post_runs_the_registered_handler(manager, eventually):
    published = []

    async def publish(job, payload: PostSchedulingPayload):
        published.append((payload.post_id, job.owner.user_id))
        return {"published": payload.platforms}

    scheduler = JobScheduler(manager)
    await scheduler.initialize(
        {POST_SCHEDULING: {POST_SCHEDULING_JOB: (publish, PostSchedulingPayload)}}, schedule_recurring=False
    )
    job_id = await scheduler.schedule_post(post())
    assert job_id == "post_p1"

    async def done():
        job = await manager.get_job(POST_SCHEDULING, job_id)
        return job if job.state == COMPLETED else None

    job = await eventually(done)
    assert published == [("p1", "u1")]
    assert job.return_value == {"published": ["twitter"]}


@pytest.mark.asyncio
async def test_scheduling_the_same_post_twice_keeps_one_job(manager):
    scheduler = JobScheduler(manager)
    await scheduler.initialize(schedule_recurring=False)
    later = datetime.now(timezone.utc) + timedelta(hours=2)
    first = await scheduler.schedule_post(post(when=later))
    second = await scheduler.schedule_post(post(when=later))
    assert first == second
    stats = await manager.get_queue_stats(POST_SCHEDULING)
    assert stats.delayed == 1


@pytest.mark.asyncio
async def test_invalid_post_is_rejected(manager):
    scheduler = JobScheduler(manager)
    await scheduler.initialize(schedule_recurring=False)
    bad = post()
    bad["platforms"] = []
    with pytest.raises(ValueError):
        await scheduler.schedule_post(bad)


@pytest.mark.asyncio
async def test_bulk_posts_yield_to_single_posts(manager):
    scheduler = JobScheduler(manager)
    await scheduler.initialize(schedule_recurring=False)
    await manager.pause_queue(POST_SCHEDULING)
    bulk_id = await scheduler.schedule_bulk_posts(
        {"posts": [post("a"), post("b")], "user_id": "u1", "workspace_id": "w1", "batch_id": "b1"}
    )
    single_id = await scheduler.schedule_post(post("c"))

    assert bulk_id == "bulk_b1"
    bulk = await manager.get_job(POST_SCHEDULING, bulk_id)
    assert bulk.priority == BULK_PRIORITY
    assert bulk.max_attempts == 2
    order = [j.id for j in await manager.get_queue(POST_SCHEDULING).get_jobs(WAITING)]
    assert order == [single_id, bulk_id]


@pytest.mark.asyncio
async def test_notification_and_analytics_ids(manager):
    scheduler = JobScheduler(manager)
    await scheduler.initialize(schedule_recurring=False)
    await manager.pause_queue(NOTIFICATION_DISPATCH)
    note_id = await scheduler.schedule_notification(
        {
            "notification": {"id": "n1", "user_id": "u1", "title": "Post published"},
            "channels": ["in_app", "email"],
            "scheduled_for": (datetime.now(timezone.utc) + timedelta(minutes=5)).isoformat(),
        }
    )
    analytics_id = await scheduler.schedule_analytics_collection(
        {
            "user_id": "u1",
            "workspace_id": "w1",
            "accounts": [{"platform": "twitter", "account_id": "acc-1"}],
            "date_range": {"start": "2024-01-01T00:00:00Z", "end": "2024-01-31T00:00:00Z"},
            "metrics": ["impressions"],
        }
    )
    assert note_id == "notification_n1"
    assert (await manager.get_job(NOTIFICATION_DISPATCH, note_id)).state == DELAYED
    assert analytics_id.startswith("analytics_") and analytics_id.endswith("_u1")


@pytest.mark.asyncio
async def test_cancel_and_retry_through_the_scheduler(manager):
    scheduler = JobScheduler(manager)
    await scheduler.initialize(schedule_recurring=False)
    job_id = await scheduler.schedule_post(post(when=datetime.now(timezone.utc) + timedelta(days=1)))
    assert await scheduler.cancel_job(POST_SCHEDULING, job_id)
    assert not await scheduler.cancel_job(POST_SCHEDULING, job_id)
    stats = await scheduler.get_job_stats()
    assert stats[POST_SCHEDULING].total == 0


@pytest.mark.asyncio
async def test_queue_without_handler_fails_its_jobs(manager, eventually):
    scheduler = JobScheduler(manager)
    await scheduler.initialize(schedule_recurring=False)
    await manager.add_job(NOTIFICATION_DISPATCH, {"type": "unknown_kind", "payload": {}})

    async def failed():
        return (await manager.get_queue_stats(NOTIFICATION_DISPATCH)).failed == 1

    await eventually(failed)
    job = (await manager.get_queue(NOTIFICATION_DISPATCH).get_jobs(FAILED))[0]
    assert job.attempts_made == 1
    assert "no handler" in job.failed_reason


@pytest.mark.asyncio
async def test_builtin_cleanup_and_health_check(manager):
    scheduler = JobScheduler(manager)
    await scheduler.initialize(schedule_recurring=False)
    await manager.add_job(POST_SCHEDULING, {"type": "t", "payload": {}})
    job = Job(id="x", queue_name=NOTIFICATION_DISPATCH, type="health_check", payload={})

    health = await scheduler._run_health_check(job, HealthCheckPayload(waiting_threshold=0))
    assert not health.result["healthy"]
    assert health.result["issues"] == [f"{POST_SCHEDULING}: 1 jobs waiting"]

    cleanup = await scheduler._run_queue_cleanup(job, QueueCleanupPayload(older_than=0))
    assert cleanup.success
    assert cleanup.result["total"] == 0
    assert set(cleanup.result["cleaned"]) == set(manager.queues)


@pytest.mark.asyncio
async def test_shutdown_is_idempotent(manager):
    scheduler = JobScheduler(manager)
    await scheduler.shutdown()
    await scheduler.initialize(schedule_recurring=False)
    await scheduler.shutdown(grace=0.1)
    assert not scheduler.initialized
    assert scheduler.workers == {}
    await scheduler.shutdown()
