from __future__ import annotations

import asyncio
import functools
import logging
import time
from typing import Any, Dict, Optional, Tuple

from . import events
from .config import WorkerSettings
from .exceptions import BrokerUnavailable, JobQueueError, LeaseLost, UnrecoverableError
from .models import COMPLETED, FAILED, WAITING, Job, JobMetrics, JobResult
from .queue import Queue
from .registry import Processor, call_processor
from .scheduler import backoff_s, reconnect_delay, should_retry

log = logging.getLogger("jobqueue.worker")

STALL_LEASE_EXPIRED = "job stalled: lease expired"
STALL_RECLAIMED = "job stalled: lease expired on another worker"
STALL_SHUTDOWN = "job stalled: worker shutdown"


class WorkerPool:
    """Runs the jobs of one queue with at most `concurrency` in flight.

    Each slot is an asyncio task that claims a job, runs the processor under a
    lease, and records the outcome. A maintenance task promotes due delayed
    jobs and reclaims jobs whose lease expired elsewhere.
    """

    def __init__(
        self,
        queue: Queue,
        processor: Processor,
        settings: Optional[WorkerSettings] = None,
        concurrency: Optional[int] = None,
    ) -> None:
        self.queue = queue
        self.name = queue.name
        self.broker = queue.broker
        self.bus = queue.bus
        self.processor = processor
        self.settings = settings or WorkerSettings()
        self.concurrency = concurrency or queue.concurrency
        self._wakeup = asyncio.Event()
        self._closing = False
        self._slots: list = []
        self._maintenance: Optional[asyncio.Task] = None
        self._inflight: Dict[str, Tuple[Job, asyncio.Task, asyncio.Event]] = {}
        queue.add_wake_listener(self.wake)

    @property
    def running(self) -> bool:
        return bool(self._slots) and not self._closing

    @property
    def active_count(self) -> int:
        return len(self._inflight)

    def wake(self) -> None:
        self._wakeup.set()

    async def start(self) -> None:
        if self._slots:
            return
        self._slots = [
            asyncio.create_task(self._slot_loop(i), name=f"{self.name}-slot-{i}") for i in range(self.concurrency)
        ]
        self._maintenance = asyncio.create_task(self._maintenance_loop(), name=f"{self.name}-maintenance")
        log.info(
            "worker ready",
            extra={"event": "worker_ready", "queue": self.name, "concurrency": self.concurrency},
        )

    async def _wait(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    # -----------------------
    # Slots
    # -----------------------

    async def _slot_loop(self, slot: int) -> None:
        failures = 0
        while not self._closing:
            try:
                job = await self.broker.claim(self.name, self.settings.lease_duration)
            except BrokerUnavailable as exc:
                failures += 1
                delay = reconnect_delay(
                    failures, self.settings.reconnect_backoff_base, self.settings.reconnect_backoff_cap
                )
                log.warning(
                    "broker unavailable; pausing pulls",
                    extra={"queue": self.name, "slot": slot, "error": str(exc), "count": failures},
                )
                await self._wait(delay)
                continue
            failures = 0
            if job is None:
                await self._wait(self.settings.poll_interval)
                continue
            await self._process(job, slot)

    async def _process(self, job: Job, slot: int) -> None:
        lost = asyncio.Event()
        job.bind(lost, functools.partial(self._report_progress, job))
        attempt = job.attempts_made + 1

        if job.repeat_key:
            try:
                await self.queue.schedule_next_repeat(job)
            except JobQueueError as exc:
                log.warning(
                    "could not schedule next repeat",
                    extra={"queue": self.name, "job_id": job.id, "error": str(exc)},
                )

        owner = job.owner
        log.info(
            "job started",
            extra={
                "event": "job_started",
                "queue": self.name,
                "job_id": job.id,
                "job_type": job.type,
                "slot": slot,
                "attempts": attempt,
                "user_id": owner.user_id if owner else None,
                "workspace_id": owner.workspace_id if owner else None,
            },
        )
        await self.bus.publish(self.name, events.STARTED, job.id, job_type=job.type, attempts=attempt)

        started = time.monotonic()
        task = asyncio.create_task(self._invoke(job))
        self._inflight[job.id] = (job, task, lost)
        try:
            done, _ = await asyncio.wait({task}, timeout=self.settings.lease_duration)
            if task not in done:
                await self._expire_lease(job, task, lost)
                return
            if task.cancelled():
                # lease already released by close() or the reaper
                return
            result = task.result()
            if result.metrics is None:
                result.metrics = JobMetrics(duration=time.monotonic() - started, timestamp=time.time())
            try:
                if result.success:
                    await self._on_success(job, result)
                else:
                    await self._on_failure(job, result)
            except LeaseLost:
                log.warning(
                    "job lease lost; outcome discarded",
                    extra={"queue": self.name, "job_id": job.id, "attempts": attempt},
                )
            except BrokerUnavailable as exc:
                log.error(
                    "could not record job outcome; job will be reclaimed after its lease",
                    extra={"queue": self.name, "job_id": job.id, "error": str(exc)},
                )
        finally:
            self._inflight.pop(job.id, None)

    async def _invoke(self, job: Job) -> JobResult:
        try:
            outcome = await call_processor(self.processor, job)
        except UnrecoverableError as exc:
            return JobResult(success=False, error=str(exc), retryable=False)
        except Exception as exc:
            log.warning(
                "processor raised",
                exc_info=True,
                extra={"queue": self.name, "job_id": job.id, "job_type": job.type},
            )
            return JobResult(success=False, error=f"{type(exc).__name__}: {exc}")
        return JobResult.coerce(outcome)

    async def _on_success(self, job: Job, result: JobResult) -> None:
        opts = job.job_options()
        attempts = job.attempts_made + 1
        await self.broker.complete(
            self.name,
            job.id,
            job.lease_token or "",
            result.result,
            attempts,
            remove=opts.remove_on_complete is True,
        )
        await self._apply_retention(COMPLETED, opts.remove_on_complete)
        duration = result.metrics.duration if result.metrics else None
        log.info(
            "job succeeded",
            extra={
                "event": "job_completed",
                "queue": self.name,
                "job_id": job.id,
                "job_type": job.type,
                "status": "succeeded",
                "attempts": attempts,
                "duration_s": duration,
            },
        )
        await self.bus.publish(
            self.name,
            events.COMPLETED,
            job.id,
            job_type=job.type,
            attempts=attempts,
            duration_s=duration,
            result=result.result,
        )

    async def _on_failure(self, job: Job, result: JobResult) -> None:
        opts = job.job_options()
        attempts = job.attempts_made + 1
        error = result.error or "job processing failed"
        duration = result.metrics.duration if result.metrics else None
        extra: Dict[str, Any] = {
            "queue": self.name,
            "job_id": job.id,
            "job_type": job.type,
            "attempts": attempts,
            "duration_s": duration,
            "error": error,
        }

        if result.retryable and should_retry(attempts, job.max_attempts):
            delay = backoff_s(attempts, opts.backoff)
            state = await self.broker.retry_later(self.name, job.id, job.lease_token or "", delay, error, attempts)
            log.warning("job failed; retry scheduled", extra={**extra, "event": "job_retrying", "state": state})
            await self.bus.publish(
                self.name,
                events.RETRYING,
                job.id,
                job_type=job.type,
                attempts=attempts,
                state=state,
                error=error,
                retry_in_s=delay,
                duration_s=duration,
            )
            if state == WAITING:
                self.wake()
            return

        # terminal failure
        await self.broker.fail(
            self.name, job.id, job.lease_token or "", error, attempts, remove=opts.remove_on_fail is True
        )
        await self._apply_retention(FAILED, opts.remove_on_fail)
        log.error("job failed permanently", extra={**extra, "event": "job_failed", "state": FAILED})
        await self.bus.publish(
            self.name, events.FAILED, job.id, job_type=job.type, attempts=attempts, error=error, duration_s=duration
        )

    async def _apply_retention(self, state: str, keep: Any) -> None:
        if isinstance(keep, bool):
            return
        try:
            await self.broker.trim(self.name, state, keep)
        except JobQueueError as exc:
            log.warning("retention trim failed", extra={"queue": self.name, "state": state, "error": str(exc)})

    async def _report_progress(self, job: Job, progress: Any) -> None:
        await self.broker.update_progress(self.name, job.id, job.lease_token or "", progress)
        await self.bus.publish(self.name, events.PROGRESS, job.id, job_type=job.type, progress=progress)

    # -----------------------
    # Stalls
    # -----------------------

    async def _expire_lease(self, job: Job, task: asyncio.Task, lost: asyncio.Event) -> None:
        lost.set()
        task.cancel()
        await self._stall(job.id, STALL_LEASE_EXPIRED, job.lease_token)
        await asyncio.wait({task}, timeout=self.settings.cancel_grace)

    async def _stall(self, job_id: str, reason: str, token: Optional[str]) -> None:
        try:
            outcome = await self.broker.stall(self.name, job_id, reason, token=token)
        except BrokerUnavailable as exc:
            log.error("could not release stalled job", extra={"queue": self.name, "job_id": job_id, "error": str(exc)})
            return
        if outcome is not None:
            await self._announce_stall(job_id, outcome[0], outcome[1], reason)

    async def _announce_stall(self, job_id: str, state: str, attempts: int, reason: str) -> None:
        log.warning(
            "job stalled",
            extra={"event": "job_stalled", "queue": self.name, "job_id": job_id, "state": state, "attempts": attempts, "reason": reason},
        )
        await self.bus.publish(self.name, events.STALLED, job_id, state=state, attempts=attempts, reason=reason)
        if state == FAILED:
            await self.bus.publish(self.name, events.FAILED, job_id, attempts=attempts, error=reason)
        elif state == WAITING:
            self.wake()

    def _release_local(self, job_id: str, token: Optional[str]) -> None:
        entry = self._inflight.get(job_id)
        # a different token means the job was claimed again since
        if entry is not None and entry[0].lease_token == token:
            _, task, lost = entry
            lost.set()
            task.cancel()

    # -----------------------
    # Maintenance
    # -----------------------

    async def _maintenance_loop(self) -> None:
        failures = 0
        next_reclaim = 0.0
        while not self._closing:
            timeout = self.settings.poll_interval
            try:
                if await self.broker.promote_delayed(self.name):
                    self.wake()
                if time.monotonic() >= next_reclaim:
                    next_reclaim = time.monotonic() + self.settings.stall_check_interval
                    held = {job_id: entry[0].lease_token for job_id, entry in self._inflight.items()}
                    for job_id, state, attempts in await self.broker.reclaim_expired(self.name, STALL_RECLAIMED):
                        if job_id in held:
                            self._release_local(job_id, held[job_id])
                        await self._announce_stall(job_id, state, attempts, STALL_RECLAIMED)
                due = await self.broker.next_delayed_due(self.name)
                if due is not None:
                    timeout = min(timeout, max(0.0, due - time.time()))
                failures = 0
            except BrokerUnavailable:
                failures += 1
                timeout = reconnect_delay(
                    failures, self.settings.reconnect_backoff_base, self.settings.reconnect_backoff_cap
                )
            await asyncio.sleep(timeout)

    # -----------------------
    # Shutdown
    # -----------------------

    async def close(self, grace: Optional[float] = None) -> None:
        """Stop pulling at once, give in-flight jobs `grace` seconds, then stall what is left."""

        if self._closing:
            return
        grace = self.settings.shutdown_grace if grace is None else grace
        self._closing = True
        self._wakeup.set()

        if self._maintenance is not None:
            self._maintenance.cancel()
            await asyncio.gather(self._maintenance, return_exceptions=True)

        if self._slots:
            _, pending = await asyncio.wait(self._slots, timeout=grace)
            if pending:
                for job_id, (job, task, lost) in list(self._inflight.items()):
                    lost.set()
                    task.cancel()
                    await self._stall(job_id, STALL_SHUTDOWN, job.lease_token)
                for t in pending:
                    t.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        log.info("worker closed", extra={"event": "worker_closed", "queue": self.name})
