"""Redis-backed broker client.

This is the only module that talks to Redis. Per queue it keeps one sorted set
per job state plus a hash per job:

    <prefix>:<queue>:wait        eligible jobs, score = priority * 2**32 + seq
    <prefix>:<queue>:active      claimed jobs, score = lease deadline
    <prefix>:<queue>:delayed     score = due time
    <prefix>:<queue>:completed   score = finish time
    <prefix>:<queue>:failed      score = finish time
    <prefix>:<queue>:meta        hash, "paused" flag
    <prefix>:<queue>:repeat      hash, repeatable job definitions
    <prefix>:<queue>:job:<id>    hash, the job record
    <prefix>:<queue>:events      pub-sub channel

Each transition runs as a MULTI/EXEC transaction under WATCH, so a job id is
in exactly one state set at any time and two workers can never claim the same
job: the loser's EXEC aborts and it retries against the new state.
"""
from __future__ import annotations

import functools
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from .config import RedisSettings
from .exceptions import BrokerUnavailable, InvalidJobState, JobNotFound, LeaseLost, ValidationError
from .models import ACTIVE, COMPLETED, DELAYED, FAILED, PAUSED, WAITING, Job
from .scheduler import priority_score

log = logging.getLogger("jobqueue.broker")

T = TypeVar("T")

PROMOTE_BATCH = 1000


@dataclass(frozen=True)
class QueueKeys:
    prefix: str
    queue: str

    def _k(self, suffix: str) -> str:
        return f"{self.prefix}:{self.queue}:{suffix}"

    @property
    def wait(self) -> str:
        return self._k("wait")

    @property
    def active(self) -> str:
        return self._k("active")

    @property
    def delayed(self) -> str:
        return self._k("delayed")

    @property
    def completed(self) -> str:
        return self._k("completed")

    @property
    def failed(self) -> str:
        return self._k("failed")

    @property
    def meta(self) -> str:
        return self._k("meta")

    @property
    def repeat(self) -> str:
        return self._k("repeat")

    @property
    def ids(self) -> str:
        return self._k("id")

    @property
    def seq(self) -> str:
        return self._k("seq")

    @property
    def events(self) -> str:
        return self._k("events")

    def job(self, job_id: str) -> str:
        return self._k(f"job:{job_id}")

    def state_set(self, state: str) -> str:
        return {
            WAITING: self.wait,
            PAUSED: self.wait,
            ACTIVE: self.active,
            DELAYED: self.delayed,
            COMPLETED: self.completed,
            FAILED: self.failed,
        }[state]


def _broker_call(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Map Redis connectivity errors to BrokerUnavailable and track connection state."""

    @functools.wraps(fn)
    async def wrapper(self: "BrokerClient", *args: Any, **kwargs: Any) -> T:
        try:
            result = await fn(self, *args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self._mark_down(exc)
            raise BrokerUnavailable(str(exc)) from exc
        self._mark_up()
        return result

    return wrapper


class BrokerClient:
    def __init__(self, settings: Optional[RedisSettings] = None, *, prefix: str = "jobqueue", client: Optional[Redis] = None) -> None:
        self.settings = settings or RedisSettings()
        self.prefix = prefix
        self._redis = client if client is not None else self._connect(self.settings)
        self._available = True

    @staticmethod
    def _connect(settings: RedisSettings) -> Redis:
        return Redis(
            host=settings.host,
            port=settings.port,
            password=settings.password,
            db=settings.db,
            decode_responses=True,
            socket_connect_timeout=settings.connect_timeout,
            socket_timeout=settings.socket_timeout,
            retry=Retry(ExponentialBackoff(cap=settings.socket_timeout, base=0.1), settings.retries),
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            health_check_interval=30,
        )

    def keys(self, queue: str) -> QueueKeys:
        return QueueKeys(self.prefix, queue)

    @property
    def available(self) -> bool:
        return self._available

    def _mark_down(self, exc: Exception) -> None:
        if self._available:
            log.error(
                "broker connection lost",
                extra={"event": "broker_unavailable", "error": str(exc)},
            )
        self._available = False

    def _mark_up(self) -> None:
        if not self._available:
            log.info(
                "broker reconnected",
                extra={"event": "broker_reconnected", "host": self.settings.host, "port": self.settings.port},
            )
        self._available = True

    async def _transaction(self, fn: Callable[[Any], Awaitable[T]], *watch_keys: str) -> T:
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(*watch_keys)
                    return await fn(pipe)
                except WatchError:
                    continue

    # -----------------------
    # Connection
    # -----------------------

    @_broker_call
    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()

    # -----------------------
    # Submission
    # -----------------------

    @_broker_call
    async def next_id(self, queue: str) -> str:
        return str(await self._redis.incr(self.keys(queue).ids))

    @_broker_call
    async def add(self, job: Job, delay: float = 0.0) -> Tuple[str, bool]:
        """Persist a new job. Returns (state, created); an existing id is left untouched."""

        k = self.keys(job.queue_name)
        jk = k.job(job.id)

        async def _add(pipe: Any) -> Tuple[str, bool]:
            if await pipe.exists(jk):
                return await pipe.hget(jk, "state") or WAITING, False
            seq = await pipe.incr(k.seq)
            job.state = DELAYED if delay > 0 else WAITING
            pipe.multi()
            pipe.hset(jk, mapping=job.to_hash())
            if job.state == DELAYED:
                pipe.zadd(k.delayed, {job.id: time.time() + delay})
            else:
                pipe.zadd(k.wait, {job.id: priority_score(job.priority, seq)})
            await pipe.execute()
            return job.state, True

        return await self._transaction(_add, jk)

    # -----------------------
    # Worker transitions
    # -----------------------

    @_broker_call
    async def claim(self, queue: str, lease_duration: float) -> Optional[Job]:
        """Atomically move the best waiting job to active. None when empty or paused."""

        k = self.keys(queue)
        token = uuid.uuid4().hex

        async def _claim(pipe: Any) -> Tuple[bool, Optional[Job]]:
            if await pipe.hget(k.meta, "paused"):
                return True, None
            ids = await pipe.zrange(k.wait, 0, 0)
            if not ids:
                return True, None
            job_id = ids[0]
            jk = k.job(job_id)
            if not await pipe.exists(jk):
                # orphaned id without a record
                pipe.multi()
                pipe.zrem(k.wait, job_id)
                await pipe.execute()
                log.warning("dropped job id without record", extra={"queue": queue, "job_id": job_id})
                return False, None
            t = time.time()
            pipe.multi()
            pipe.zrem(k.wait, job_id)
            pipe.zadd(k.active, {job_id: t + lease_duration})
            pipe.hset(jk, mapping={"state": ACTIVE, "token": token, "processed_on": t})
            pipe.hgetall(jk)
            results = await pipe.execute()
            return True, Job.from_hash(queue, results[-1])

        while True:
            done, job = await self._transaction(_claim, k.meta, k.wait)
            if done:
                return job

    async def _check_lease(self, pipe: Any, k: QueueKeys, job_id: str, token: str) -> None:
        if await pipe.zscore(k.active, job_id) is None or await pipe.hget(k.job(job_id), "token") != token:
            raise LeaseLost(job_id)

    @_broker_call
    async def complete(
        self,
        queue: str,
        job_id: str,
        token: str,
        return_value: Any,
        attempts_made: int,
        remove: bool = False,
    ) -> None:
        k = self.keys(queue)
        jk = k.job(job_id)

        async def _complete(pipe: Any) -> None:
            await self._check_lease(pipe, k, job_id, token)
            t = time.time()
            pipe.multi()
            pipe.zrem(k.active, job_id)
            if remove:
                pipe.delete(jk)
            else:
                pipe.zadd(k.completed, {job_id: t})
                pipe.hset(
                    jk,
                    mapping={
                        "state": COMPLETED,
                        "finished_on": t,
                        "attempts_made": attempts_made,
                        "return_value": json.dumps(return_value, default=str),
                    },
                )
                pipe.hdel(jk, "token")
            await pipe.execute()

        await self._transaction(_complete, jk)

    @_broker_call
    async def retry_later(self, queue: str, job_id: str, token: str, delay: float, error: str, attempts_made: int) -> str:
        """Record a failed attempt and re-enqueue. Returns the new state."""

        k = self.keys(queue)
        jk = k.job(job_id)

        async def _retry(pipe: Any) -> str:
            await self._check_lease(pipe, k, job_id, token)
            seq = await pipe.incr(k.seq)
            priority = await pipe.hget(jk, "priority")
            state = DELAYED if delay > 0 else WAITING
            pipe.multi()
            pipe.zrem(k.active, job_id)
            if state == DELAYED:
                pipe.zadd(k.delayed, {job_id: time.time() + delay})
            else:
                pipe.zadd(k.wait, {job_id: priority_score(int(priority) if priority else None, seq)})
            pipe.hset(jk, mapping={"state": state, "attempts_made": attempts_made, "failed_reason": error})
            pipe.hdel(jk, "token")
            await pipe.execute()
            return state

        return await self._transaction(_retry, jk)

    @_broker_call
    async def fail(self, queue: str, job_id: str, token: str, error: str, attempts_made: int, remove: bool = False) -> None:
        k = self.keys(queue)
        jk = k.job(job_id)

        async def _fail(pipe: Any) -> None:
            await self._check_lease(pipe, k, job_id, token)
            t = time.time()
            pipe.multi()
            pipe.zrem(k.active, job_id)
            if remove:
                pipe.delete(jk)
            else:
                pipe.zadd(k.failed, {job_id: t})
                pipe.hset(
                    jk,
                    mapping={"state": FAILED, "finished_on": t, "attempts_made": attempts_made, "failed_reason": error},
                )
                pipe.hdel(jk, "token")
            await pipe.execute()

        await self._transaction(_fail, jk)

    @_broker_call
    async def stall(self, queue: str, job_id: str, reason: str, token: Optional[str] = None) -> Optional[Tuple[str, int]]:
        """Take an active job back. The stall counts as an attempt.

        Without `token` only an expired lease is taken back. Returns
        (new_state, attempts_made), or None when the job is not active, no
        longer held under `token`, or (without `token`) its lease is still live.
        """

        k = self.keys(queue)
        jk = k.job(job_id)

        async def _stall(pipe: Any) -> Optional[Tuple[str, int]]:
            deadline = await pipe.zscore(k.active, job_id)
            if deadline is None:
                return None
            if token is None and deadline > time.time():
                return None
            cur_token, attempts, max_attempts, priority, stalled = await pipe.hmget(
                jk, "token", "attempts_made", "max_attempts", "priority", "stalled_count"
            )
            if token is not None and cur_token != token:
                return None
            attempts_made = int(attempts or 0) + 1
            t = time.time()
            seq = await pipe.incr(k.seq)
            mapping: Dict[str, Any] = {"attempts_made": attempts_made, "stalled_count": int(stalled or 0) + 1}
            pipe.multi()
            pipe.zrem(k.active, job_id)
            pipe.hdel(jk, "token")
            if attempts_made >= int(max_attempts or 1):
                state = FAILED
                mapping.update(state=FAILED, finished_on=t, failed_reason=reason)
                pipe.zadd(k.failed, {job_id: t})
            else:
                state = WAITING
                mapping.update(state=WAITING)
                pipe.zadd(k.wait, {job_id: priority_score(int(priority) if priority else None, seq)})
            pipe.hset(jk, mapping=mapping)
            await pipe.execute()
            return state, attempts_made

        return await self._transaction(_stall, jk, k.active)

    @_broker_call
    async def reclaim_expired(self, queue: str, reason: str) -> List[Tuple[str, str, int]]:
        """Stall every active job whose lease deadline has passed."""

        k = self.keys(queue)
        expired = await self._redis.zrangebyscore(k.active, "-inf", time.time())
        reclaimed = []
        for job_id in expired:
            outcome = await self.stall(queue, job_id, reason)
            if outcome is not None:
                reclaimed.append((job_id, outcome[0], outcome[1]))
        return reclaimed

    @_broker_call
    async def promote_delayed(self, queue: str) -> List[str]:
        """Move delayed jobs whose time has come to the wait set."""

        k = self.keys(queue)
        t = time.time()
        candidates = await self._redis.zrangebyscore(k.delayed, "-inf", t, start=0, num=PROMOTE_BATCH)
        if not candidates:
            return []

        async def _promote(pipe: Any) -> List[str]:
            due = []
            for job_id in candidates:
                score = await pipe.zscore(k.delayed, job_id)
                if score is not None and score <= t:
                    due.append(job_id)
            if not due:
                return []
            priorities = [await pipe.hget(k.job(job_id), "priority") for job_id in due]
            last_seq = await pipe.incrby(k.seq, len(due))
            first_seq = last_seq - len(due) + 1
            pipe.multi()
            for i, job_id in enumerate(due):
                p = priorities[i]
                pipe.zrem(k.delayed, job_id)
                pipe.zadd(k.wait, {job_id: priority_score(int(p) if p else None, first_seq + i)})
                pipe.hset(k.job(job_id), "state", WAITING)
            await pipe.execute()
            return due

        return await self._transaction(_promote, k.delayed)

    @_broker_call
    async def next_delayed_due(self, queue: str) -> Optional[float]:
        head = await self._redis.zrange(self.keys(queue).delayed, 0, 0, withscores=True)
        return float(head[0][1]) if head else None

    @_broker_call
    async def update_progress(self, queue: str, job_id: str, token: str, progress: Any) -> None:
        k = self.keys(queue)
        jk = k.job(job_id)

        async def _progress(pipe: Any) -> None:
            await self._check_lease(pipe, k, job_id, token)
            pipe.multi()
            pipe.hset(jk, "progress", json.dumps(progress, default=str))
            await pipe.execute()

        await self._transaction(_progress, jk)

    # -----------------------
    # Inspection / administration
    # -----------------------

    @_broker_call
    async def get_job(self, queue: str, job_id: str) -> Optional[Job]:
        h = await self._redis.hgetall(self.keys(queue).job(job_id))
        return Job.from_hash(queue, h) if h else None

    @_broker_call
    async def get_jobs(self, queue: str, state: str, start: int = 0, end: int = -1) -> List[Job]:
        k = self.keys(queue)
        try:
            key = k.state_set(state)
        except KeyError:
            raise ValidationError(f"unknown job state: {state}") from None
        ids = await self._redis.zrange(key, start, end)
        if not ids:
            return []
        async with self._redis.pipeline(transaction=False) as pipe:
            for job_id in ids:
                pipe.hgetall(k.job(job_id))
            records = await pipe.execute()
        return [Job.from_hash(queue, h) for h in records if h]

    @_broker_call
    async def remove(self, queue: str, job_id: str) -> bool:
        """Delete a job that is not active. False when it is active or unknown."""

        k = self.keys(queue)
        jk = k.job(job_id)

        async def _remove(pipe: Any) -> bool:
            if not await pipe.exists(jk):
                return False
            if await pipe.zscore(k.active, job_id) is not None:
                return False
            pipe.multi()
            for key in (k.wait, k.delayed, k.completed, k.failed):
                pipe.zrem(key, job_id)
            pipe.delete(jk)
            await pipe.execute()
            return True

        return await self._transaction(_remove, jk, k.active)

    @_broker_call
    async def counts(self, queue: str) -> Dict[str, int]:
        k = self.keys(queue)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zcard(k.wait)
            pipe.zcard(k.active)
            pipe.zcard(k.delayed)
            pipe.zcard(k.completed)
            pipe.zcard(k.failed)
            pipe.hget(k.meta, "paused")
            waiting, active, delayed, completed, failed, paused = await pipe.execute()
        return {
            "waiting": 0 if paused else waiting,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
            "paused": waiting if paused else 0,
        }

    @_broker_call
    async def pause(self, queue: str) -> None:
        await self._redis.hset(self.keys(queue).meta, "paused", "1")

    @_broker_call
    async def resume(self, queue: str) -> None:
        await self._redis.hdel(self.keys(queue).meta, "paused")

    @_broker_call
    async def is_paused(self, queue: str) -> bool:
        return bool(await self._redis.hget(self.keys(queue).meta, "paused"))

    @_broker_call
    async def clean(self, queue: str, state: str, grace: float, limit: Optional[int] = None) -> int:
        """Delete terminal jobs of `state` that finished more than `grace` seconds ago."""

        if state not in (COMPLETED, FAILED):
            raise ValidationError(f"only completed or failed jobs can be cleaned, not {state}")
        k = self.keys(queue)
        key = k.state_set(state)
        cutoff = time.time() - grace

        async def _clean(pipe: Any) -> int:
            if limit:
                ids = await pipe.zrangebyscore(key, "-inf", cutoff, start=0, num=limit)
            else:
                ids = await pipe.zrangebyscore(key, "-inf", cutoff)
            if not ids:
                return 0
            pipe.multi()
            pipe.zrem(key, *ids)
            pipe.delete(*[k.job(job_id) for job_id in ids])
            await pipe.execute()
            return len(ids)

        return await self._transaction(_clean, key)

    @_broker_call
    async def trim(self, queue: str, state: str, keep: int) -> int:
        """Keep only the newest `keep` jobs of a terminal state."""

        k = self.keys(queue)
        key = k.state_set(state)

        async def _trim(pipe: Any) -> int:
            excess = await pipe.zcard(key) - keep
            if excess <= 0:
                return 0
            ids = await pipe.zrange(key, 0, excess - 1)
            pipe.multi()
            pipe.zrem(key, *ids)
            pipe.delete(*[k.job(job_id) for job_id in ids])
            await pipe.execute()
            return len(ids)

        return await self._transaction(_trim, key)

    @_broker_call
    async def retry_failed_job(self, queue: str, job_id: str) -> None:
        """Move a terminally failed job back to waiting. attempts_made is kept."""

        k = self.keys(queue)
        jk = k.job(job_id)

        async def _retry(pipe: Any) -> None:
            if not await pipe.exists(jk):
                raise JobNotFound(job_id, queue)
            if await pipe.zscore(k.failed, job_id) is None:
                raise InvalidJobState(job_id, await pipe.hget(jk, "state"), FAILED)
            priority = await pipe.hget(jk, "priority")
            seq = await pipe.incr(k.seq)
            pipe.multi()
            pipe.zrem(k.failed, job_id)
            pipe.zadd(k.wait, {job_id: priority_score(int(priority) if priority else None, seq)})
            pipe.hset(jk, "state", WAITING)
            pipe.hdel(jk, "finished_on", "failed_reason", "return_value")
            await pipe.execute()

        await self._transaction(_retry, jk, k.failed)

    # -----------------------
    # Repeatable job definitions
    # -----------------------

    @_broker_call
    async def add_repeatable(self, queue: str, key: str, definition: Dict[str, Any]) -> None:
        await self._redis.hset(self.keys(queue).repeat, key, json.dumps(definition))

    @_broker_call
    async def get_repeatable(self, queue: str, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._redis.hget(self.keys(queue).repeat, key)
        return json.loads(raw) if raw else None

    @_broker_call
    async def get_repeatables(self, queue: str) -> Dict[str, Dict[str, Any]]:
        raw = await self._redis.hgetall(self.keys(queue).repeat)
        return {key: json.loads(v) for key, v in raw.items()}

    @_broker_call
    async def remove_repeatable(self, queue: str, key: str) -> bool:
        return bool(await self._redis.hdel(self.keys(queue).repeat, key))

    # -----------------------
    # Pub-sub
    # -----------------------

    @_broker_call
    async def publish(self, queue: str, message: str) -> None:
        await self._redis.publish(self.keys(queue).events, message)

    @_broker_call
    async def subscribe(self, queue: str) -> "Subscription":
        sub = Subscription(self, self._redis.pubsub(), self.keys(queue).events)
        await sub.open()
        return sub


class Subscription:
    """A pub-sub subscription to one queue's event channel."""

    def __init__(self, broker: BrokerClient, pubsub: PubSub, channel: str) -> None:
        self._broker = broker
        self._pubsub = pubsub
        self.channel = channel

    async def open(self) -> None:
        await self._pubsub.subscribe(self.channel)

    async def get(self, timeout: float) -> Optional[str]:
        """Next message on the channel, or None after `timeout` seconds."""

        try:
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self._broker._mark_down(exc)
            raise BrokerUnavailable(str(exc)) from exc
        if message is None or message.get("type") != "message":
            return None
        return message["data"]

    async def close(self) -> None:
        try:
            await self._pubsub.unsubscribe(self.channel)
        except (RedisConnectionError, RedisTimeoutError):
            pass
        finally:
            await self._pubsub.aclose()
