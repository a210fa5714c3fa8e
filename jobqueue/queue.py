from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel

from . import events
from .broker import BrokerClient
from .config import JobOptions
from .events import EventBus
from .exceptions import ValidationError
from .models import COMPLETED, WAITING, Job, JobHandle, JobSpec, QueueStats, now
from .registry import ProcessorRegistry
from .scheduler import (
    check_priority,
    delay_until,
    first_repeat_at,
    next_repeat_at,
    repeat_job_id,
    repeat_key,
    to_timestamp,
)

log = logging.getLogger("jobqueue.queue")

# stored with each job; the rest of JobOptions only matters at submission
_STORED_OPTIONS = {"attempts", "backoff", "remove_on_complete", "remove_on_fail"}


def _normalize_payload(payload: Any) -> Any:
    if payload is None:
        raise ValidationError("job payload is required")
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    try:
        json.dumps(payload)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"job payload is not JSON serialisable: {exc}") from exc
    return payload


class Queue:
    """A named channel of jobs: the entry point for submitting and administering work."""

    def __init__(
        self,
        name: str,
        broker: BrokerClient,
        bus: EventBus,
        defaults: Optional[JobOptions] = None,
        concurrency: int = 1,
        registry: Optional[ProcessorRegistry] = None,
    ) -> None:
        self.name = name
        self.broker = broker
        self.bus = bus
        self.defaults = defaults or JobOptions()
        self.concurrency = concurrency
        self.registry = registry
        self._wake_listeners: List[Callable[[], None]] = []

    def __repr__(self) -> str:
        return f"Queue({self.name!r}, concurrency={self.concurrency})"

    def add_wake_listener(self, cb: Callable[[], None]) -> None:
        self._wake_listeners.append(cb)

    def _notify(self) -> None:
        for cb in self._wake_listeners:
            cb()

    # -----------------------
    # Submission
    # -----------------------

    async def add(
        self,
        job: Union[JobSpec, Mapping[str, Any]],
        options: Union[JobOptions, Mapping[str, Any], None] = None,
    ) -> JobHandle:
        spec = job if isinstance(job, JobSpec) else JobSpec.from_mapping(job)
        if not isinstance(spec.type, str) or not spec.type.strip():
            raise ValidationError("job type is required")
        payload = _normalize_payload(spec.payload)
        try:
            opts = self.defaults.merged(options)
        except ValueError as exc:
            raise ValidationError(f"invalid job options: {exc}") from exc
        priority = spec.priority if spec.priority is not None else opts.priority
        if priority is not None:
            check_priority(priority)
        scheduled_for = to_timestamp(spec.scheduled_for)
        if self.registry is not None:
            self.registry.validate_payload(self.name, spec.type, payload)

        t = now()
        record = Job(
            id="",
            queue_name=self.name,
            type=spec.type,
            payload=payload,
            owner=spec.owner,
            created_at=t,
            scheduled_for=scheduled_for,
            priority=priority,
            max_attempts=opts.attempts,
            options=opts.model_dump(mode="json", include=_STORED_OPTIONS),
        )

        if opts.repeat is not None:
            key = repeat_key(spec.type, opts.job_id, opts.repeat.every)
            await self.broker.add_repeatable(
                self.name, key, {"type": spec.type, "every": opts.repeat.every, "limit": opts.repeat.limit}
            )
            due = first_repeat_at(opts.repeat.every, t, opts.repeat.immediately)
            record.id = repeat_job_id(key, due)
            record.scheduled_for = due
            record.repeat_key = key
            return await self._enqueue(record, delay_until(due, t))

        record.id = opts.job_id or await self.broker.next_id(self.name)
        delay = delay_until(scheduled_for, t) if scheduled_for is not None else opts.delay
        return await self._enqueue(record, delay)

    async def _enqueue(self, job: Job, delay: float) -> JobHandle:
        state, created = await self.broker.add(job, delay)
        if not created:
            log.info("job already exists", extra={"queue": self.name, "job_id": job.id, "state": state})
            return JobHandle(id=job.id, queue_name=self.name, state=state)

        owner = job.owner
        log.info(
            "job added",
            extra={
                "event": "job_added",
                "queue": self.name,
                "job_id": job.id,
                "job_type": job.type,
                "state": state,
                "user_id": owner.user_id if owner else None,
                "workspace_id": owner.workspace_id if owner else None,
            },
        )
        await self.bus.publish(self.name, events.ADDED, job.id, job_type=job.type, state=state, delay_s=delay)
        if state == WAITING:
            self._notify()
        return JobHandle(id=job.id, queue_name=self.name, state=state)

    async def schedule_next_repeat(self, job: Job) -> Optional[JobHandle]:
        """Enqueue the occurrence after `job` if its repeat series is still registered."""

        if not job.repeat_key:
            return None
        definition = await self.broker.get_repeatable(self.name, job.repeat_key)
        if definition is None:
            return None
        limit = definition.get("limit")
        if limit and job.repeat_count + 1 >= limit:
            return None
        t = now()
        due = next_repeat_at(job.scheduled_for or t, float(definition["every"]), t)
        nxt = Job(
            id=repeat_job_id(job.repeat_key, due),
            queue_name=self.name,
            type=job.type,
            payload=job.payload,
            owner=job.owner,
            created_at=t,
            scheduled_for=due,
            priority=job.priority,
            max_attempts=job.max_attempts,
            options=job.options,
            repeat_key=job.repeat_key,
            repeat_count=job.repeat_count + 1,
        )
        return await self._enqueue(nxt, delay_until(due, t))

    # -----------------------
    # Inspection
    # -----------------------

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.broker.get_job(self.name, job_id)

    async def get_jobs(self, state: str, start: int = 0, end: int = -1) -> List[Job]:
        return await self.broker.get_jobs(self.name, state, start, end)

    async def stats(self) -> QueueStats:
        return QueueStats(**await self.broker.counts(self.name))

    async def is_paused(self) -> bool:
        return await self.broker.is_paused(self.name)

    # -----------------------
    # Administration
    # -----------------------

    async def remove_job(self, job_id: str) -> bool:
        """Remove a job that has not started. Active jobs are left alone and False is returned."""

        removed = await self.broker.remove(self.name, job_id)
        if removed:
            log.info("job removed", extra={"event": "job_removed", "queue": self.name, "job_id": job_id})
            await self.bus.publish(self.name, events.REMOVED, job_id)
        else:
            log.info("job not removed; active or unknown", extra={"queue": self.name, "job_id": job_id})
        return removed

    async def pause(self) -> None:
        await self.broker.pause(self.name)
        log.info("queue paused", extra={"event": "queue_paused", "queue": self.name})
        await self.bus.publish(self.name, events.PAUSED)

    async def resume(self) -> None:
        await self.broker.resume(self.name)
        log.info("queue resumed", extra={"event": "queue_resumed", "queue": self.name})
        await self.bus.publish(self.name, events.RESUMED)
        self._notify()

    async def clean(self, grace: float = 0, state: str = COMPLETED, limit: Optional[int] = None) -> int:
        """Purge completed or failed jobs that finished more than `grace` seconds ago."""

        cleaned = await self.broker.clean(self.name, state, grace, limit)
        log.info(
            "queue cleaned",
            extra={"event": "queue_cleaned", "queue": self.name, "state": state, "count": cleaned},
        )
        await self.bus.publish(self.name, events.CLEANED, state=state, grace_s=grace, count=cleaned)
        return cleaned

    async def retry_job(self, job_id: str) -> None:
        """Move a failed job back to waiting without resetting its attempt counter."""

        await self.broker.retry_failed_job(self.name, job_id)
        log.info("job retried", extra={"event": "job_retried", "queue": self.name, "job_id": job_id})
        await self.bus.publish(self.name, events.RETRIED, job_id)
        self._notify()

    async def get_repeatables(self) -> Dict[str, Dict[str, Any]]:
        return await self.broker.get_repeatables(self.name)

    async def remove_repeatable(self, key: str) -> bool:
        removed = await self.broker.remove_repeatable(self.name, key)
        if removed:
            log.info("repeatable job removed", extra={"queue": self.name, "reason": key})
        return removed
