import asyncio
import time

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from jobqueue.broker import BrokerClient
from jobqueue.config import load_config
from jobqueue.manager import QueueManager

FAST_WORKER = {
    "lease_duration": 2.0,
    "stall_check_interval": 0.05,
    "poll_interval": 0.01,
    "shutdown_grace": 1.0,
    "cancel_grace": 0.1,
    "reconnect_backoff_base": 0.01,
    "reconnect_backoff_cap": 0.05,
}


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def redis(server):
    return FakeRedis(server=server, decode_responses=True)


@pytest.fixture
def broker(redis):
    return BrokerClient(client=redis, prefix="test")


def build_config(worker=None, **overrides):
    return load_config(
        worker={**FAST_WORKER, **(worker or {})},
        default_job_options={"backoff": {"type": "fixed", "delay": 0}},
        **overrides,
    )


@pytest_asyncio.fixture
async def make_manager(broker):
    made = []

    def _make(worker=None, observers=None, **overrides):
        m = QueueManager(build_config(worker, **overrides), broker=broker, observers=observers or [])
        made.append(m)
        return m

    yield _make
    for m in made:
        await m.shutdown(grace=0.5)


@pytest_asyncio.fixture
async def manager(make_manager):
    return make_manager()


@pytest.fixture
def eventually():
    async def _eventually(check, timeout=3.0, interval=0.01):
        deadline = time.monotonic() + timeout
        while True:
            result = await check()
            if result:
                return result
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)

    return _eventually
