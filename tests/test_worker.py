import asyncio
import threading
import time

import pytest
from fakeredis.aioredis import FakeRedis

from jobqueue.broker import BrokerClient
from jobqueue.exceptions import BrokerUnavailable, ProcessorNotRegistered, UnrecoverableError
from jobqueue.models import COMPLETED, FAILED, WAITING, JobResult


def completed_count(manager, queue):
    async def check():
        return (await manager.get_queue_stats(queue)).completed
    return check


async def job_in_state(manager, queue, job_id, state):
    job = await manager.get_job(queue, job_id)
    return job if job is not None and job.state == state else None


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_the_queue_limit(make_manager, eventually):
    manager = make_manager(concurrency={"bounded": 3})
    running = 0
    peak = 0

    async def proc(job):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.05)
        running -= 1
        return {"n": job.payload["n"]}

    manager.register_processor("bounded", proc)
    await manager.start()
    for i in range(10):
        await manager.add_job("bounded", {"type": "t", "payload": {"n": i}})

    async def all_done():
        return (await manager.get_queue_stats("bounded")).completed == 10

    await eventually(all_done)
    assert peak == 3
    assert manager.workers["bounded"].concurrency == 3


@pytest.mark.asyncio
async def test_failed_attempts_are_retried_until_success(manager, eventually):
    calls = []

    async def flaky(job):
        calls.append(job.attempts_made)
        if len(calls) < 3:
            raise RuntimeError("upstream timeout")
        return "published"

    manager.register_processor("posts", flaky)
    await manager.start()
    handle = await manager.add_job("posts", {"type": "post_scheduling", "payload": {}}, {"attempts": 3})

    job = await eventually(lambda: job_in_state(manager, "posts", handle.id, COMPLETED))
    assert calls == [0, 1, 2]
    assert job.attempts_made == 3
    assert job.return_value == "published"


@pytest.mark.asyncio
async def test_exhausted_job_fails_with_the_last_error(manager, eventually):
    async def broken(job):
        raise ValueError(f"bad attempt {job.attempts_made + 1}")

    manager.register_processor("posts", broken)
    await manager.start()
    handle = await manager.add_job("posts", {"type": "t", "payload": {}}, {"attempts": 2})

    job = await eventually(lambda: job_in_state(manager, "posts", handle.id, FAILED))
    assert job.attempts_made == 2
    assert job.failed_reason == "ValueError: bad attempt 2"
    assert job.finished_on is not None


@pytest.mark.asyncio
async def test_unrecoverable_error_skips_remaining_attempts(manager, eventually):
    calls = 0

    async def reject(job):
        nonlocal calls
        calls += 1
        raise UnrecoverableError("account disconnected")

    manager.register_processor("posts", reject)
    await manager.start()
    handle = await manager.add_job("posts", {"type": "t", "payload": {}}, {"attempts": 5})

    job = await eventually(lambda: job_in_state(manager, "posts", handle.id, FAILED))
    assert calls == 1
    assert job.attempts_made == 1
    assert job.failed_reason == "account disconnected"


@pytest.mark.asyncio
async def test_unsuccessful_result_is_treated_as_a_failure(manager, eventually):
    async def refuse(job):
        return JobResult(success=False, error="rate limited")

    manager.register_processor("posts", refuse)
    await manager.start()
    handle = await manager.add_job("posts", {"type": "t", "payload": {}}, {"attempts": 2})

    job = await eventually(lambda: job_in_state(manager, "posts", handle.id, FAILED))
    assert job.attempts_made == 2
    assert job.failed_reason == "rate limited"


@pytest.mark.asyncio
async def test_result_shaped_mapping_reports_its_outcome(manager, eventually):
    async def refuse(job):
        return {"success": False, "error": "downstream 500"}

    async def accept(job):
        return {"success": True, "result": {"post_id": "p1"}}

    manager.register_processor("posts", refuse)
    manager.register_processor("notify", accept)
    await manager.start()
    refused = await manager.add_job("posts", {"type": "t", "payload": {}}, {"attempts": 1})
    accepted = await manager.add_job("notify", {"type": "t", "payload": {}})

    job = await eventually(lambda: job_in_state(manager, "posts", refused.id, FAILED))
    assert job.failed_reason == "downstream 500"
    job = await eventually(lambda: job_in_state(manager, "notify", accepted.id, COMPLETED))
    assert job.return_value == {"post_id": "p1"}


@pytest.mark.asyncio
async def test_retry_backoff_delays_the_next_attempt(manager, eventually):
    async def broken(job):
        raise RuntimeError("nope")

    manager.register_processor("posts", broken)
    await manager.start()
    handle = await manager.add_job(
        "posts",
        {"type": "t", "payload": {}},
        {"attempts": 2, "backoff": {"type": "fixed", "delay": 30}},
    )

    async def delayed():
        return (await manager.get_queue_stats("posts")).delayed == 1

    await eventually(delayed)
    job = await manager.get_job("posts", handle.id)
    assert job.attempts_made == 1
    assert job.failed_reason == "RuntimeError: nope"


@pytest.mark.asyncio
async def test_expired_lease_stalls_the_job_and_it_runs_again(make_manager, eventually):
    manager = make_manager(worker={"lease_duration": 0.1})
    cancelled = threading.Event()

    async def slow_first(job):
        if job.attempts_made == 0:
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.set()
                raise
        return "ok"

    manager.register_processor("media", slow_first)
    await manager.start()
    handle = await manager.add_job("media", {"type": "t", "payload": {}}, {"attempts": 3})

    job = await eventually(lambda: job_in_state(manager, "media", handle.id, COMPLETED))
    assert cancelled.is_set()
    assert job.stalled_count == 1
    assert job.attempts_made == 2


@pytest.mark.asyncio
async def test_stall_on_the_last_attempt_fails_the_job(make_manager, eventually):
    manager = make_manager(worker={"lease_duration": 0.05})

    async def hang(job):
        await asyncio.sleep(5)

    manager.register_processor("media", hang)
    await manager.start()
    handle = await manager.add_job("media", {"type": "t", "payload": {}}, {"attempts": 1})

    job = await eventually(lambda: job_in_state(manager, "media", handle.id, FAILED))
    assert job.stalled_count == 1
    assert "stalled" in job.failed_reason


@pytest.mark.asyncio
async def test_shutdown_returns_unfinished_jobs_to_waiting(make_manager, server, eventually):
    manager = make_manager()
    started = asyncio.Event()

    async def long_running(job):
        started.set()
        await asyncio.sleep(10)

    manager.register_processor("media", long_running)
    await manager.start()
    handle = await manager.add_job("media", {"type": "t", "payload": {}}, {"attempts": 3})
    await asyncio.wait_for(started.wait(), timeout=2)

    await manager.shutdown(grace=0.05)

    inspector = BrokerClient(client=FakeRedis(server=server, decode_responses=True), prefix="test")
    job = await inspector.get_job("media", handle.id)
    assert job.state == WAITING
    assert job.attempts_made == 1
    assert job.stalled_count == 1
    assert (await inspector.counts("media"))["active"] == 0


@pytest.mark.asyncio
async def test_shutdown_waits_for_jobs_that_finish_within_grace(make_manager, server):
    manager = make_manager()
    started = asyncio.Event()

    async def short(job):
        started.set()
        await asyncio.sleep(0.05)
        return "done"

    manager.register_processor("media", short)
    await manager.start()
    handle = await manager.add_job("media", {"type": "t", "payload": {}})
    await asyncio.wait_for(started.wait(), timeout=2)

    await manager.shutdown(grace=2)

    inspector = BrokerClient(client=FakeRedis(server=server, decode_responses=True), prefix="test")
    assert (await inspector.get_job("media", handle.id)).state == COMPLETED


@pytest.mark.asyncio
async def test_paused_queue_is_not_worked_until_resumed(manager, eventually):
    async def proc(job):
        return "ok"

    manager.register_processor("notify", proc)
    await manager.start()
    await manager.pause_queue("notify")
    await manager.add_job("notify", {"type": "t", "payload": {}})
    await asyncio.sleep(0.1)

    stats = await manager.get_queue_stats("notify")
    assert stats.paused == 1
    assert stats.completed == 0

    await manager.resume_queue("notify")
    assert await eventually(completed_count(manager, "notify")) == 1


@pytest.mark.asyncio
async def test_delayed_job_runs_after_its_delay(manager, eventually):
    async def proc(job):
        return "ok"

    manager.register_processor("notify", proc)
    await manager.start()
    handle = await manager.add_job("notify", {"type": "t", "payload": {}}, {"delay": 0.15})

    job = await eventually(lambda: job_in_state(manager, "notify", handle.id, COMPLETED))
    assert job.processed_on >= job.created_at + 0.15


@pytest.mark.asyncio
async def test_higher_priority_runs_first(manager, eventually):
    order = []

    async def proc(job):
        order.append(job.payload["name"])

    manager.register_processor("single", proc)
    await manager.create_queue("single")
    await manager.pause_queue("single")
    await manager.add_job("single", {"type": "t", "payload": {"name": "bulk"}, "priority": 5})
    await manager.add_job("single", {"type": "t", "payload": {"name": "first"}})
    await manager.add_job("single", {"type": "t", "payload": {"name": "second"}})
    await manager.start()
    await manager.resume_queue("single")

    await eventually(lambda: _equals(completed_count(manager, "single"), 3))
    assert order == ["first", "second", "bulk"]


async def _equals(check, expected):
    return await check() == expected


@pytest.mark.asyncio
async def test_progress_is_recorded_on_the_job(manager, eventually):
    async def proc(job):
        await job.update_progress({"uploaded": 50})
        return "ok"

    manager.register_processor("media", proc)
    await manager.start()
    handle = await manager.add_job("media", {"type": "t", "payload": {}})

    job = await eventually(lambda: job_in_state(manager, "media", handle.id, COMPLETED))
    assert job.progress == {"uploaded": 50}


@pytest.mark.asyncio
async def test_sync_processor_is_supported(manager, eventually):
    def proc(job):
        return job.payload["a"] + job.payload["b"]

    manager.register_processor("math", proc)
    await manager.start()
    handle = await manager.add_job("math", {"type": "sum", "payload": {"a": 2, "b": 3}})

    job = await eventually(lambda: job_in_state(manager, "math", handle.id, COMPLETED))
    assert job.return_value == 5


@pytest.mark.asyncio
async def test_remove_on_complete_keeps_only_the_newest(manager, eventually):
    async def proc(job):
        return "ok"

    manager.register_processor("single", proc)
    await manager.start()
    for _ in range(4):
        await manager.add_job("single", {"type": "t", "payload": {}}, {"remove_on_complete": 2})

    async def drained():
        stats = await manager.get_queue_stats("single")
        return stats.waiting == 0 and stats.active == 0 and stats.completed == 2

    await eventually(drained)


@pytest.mark.asyncio
async def test_worker_survives_broker_outage(manager, monkeypatch, eventually):
    real_claim = manager.broker.claim
    failures = {"left": 3}

    async def flaky_claim(queue, lease):
        if failures["left"]:
            failures["left"] -= 1
            raise BrokerUnavailable("connection refused")
        return await real_claim(queue, lease)

    monkeypatch.setattr(manager.broker, "claim", flaky_claim)

    async def proc(job):
        return "ok"

    manager.register_processor("notify", proc)
    await manager.add_job("notify", {"type": "t", "payload": {}})
    await manager.start()

    assert await eventually(completed_count(manager, "notify")) == 1
    assert failures["left"] == 0


@pytest.mark.asyncio
async def test_lost_connection_surfaces_as_broker_unavailable(manager, server):
    await manager.create_queue("notify")
    assert manager.broker.available

    server.connected = False
    started = time.monotonic()
    with pytest.raises(BrokerUnavailable):
        await manager.add_job("notify", {"type": "t", "payload": {}})
    assert time.monotonic() - started < 1.0
    assert not manager.broker.available

    server.connected = True
    handle = await manager.add_job("notify", {"type": "t", "payload": {}})
    assert manager.broker.available
    assert (await manager.get_job("notify", handle.id)).state == WAITING


@pytest.mark.asyncio
async def test_worker_requires_a_processor(manager):
    with pytest.raises(ProcessorNotRegistered):
        await manager.create_worker("nobody-home")


@pytest.mark.asyncio
async def test_queue_created_after_start_gets_a_worker(manager, eventually):
    async def proc(job):
        return "late"

    await manager.start()
    manager.register_processor("late", proc)
    await manager.create_queue("late")
    assert "late" in manager.workers
    await manager.add_job("late", {"type": "t", "payload": {}})
    assert await eventually(completed_count(manager, "late")) == 1
