from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Type, Union

from pydantic import BaseModel

from .config import ANALYTICS_COLLECTION, MEDIA_PROCESSING, NOTIFICATION_DISPATCH, POST_SCHEDULING
from .exceptions import JobQueueError, ProcessorAlreadyRegistered, ProcessorNotRegistered
from .manager import QueueManager
from .models import COMPLETED, FAILED, Job, JobResult, JobSpec, OwnerContext, QueueStats
from .payloads import (
    ANALYTICS_COLLECTION_JOB,
    BULK_POST_SCHEDULING_JOB,
    HEALTH_CHECK_JOB,
    NOTIFICATION_DISPATCH_JOB,
    POST_SCHEDULING_JOB,
    QUEUE_CLEANUP_JOB,
    SCHEDULED_ANALYTICS_JOB,
    AnalyticsCollectionPayload,
    BulkPostSchedulingPayload,
    HealthCheckPayload,
    NotificationDispatchPayload,
    PostSchedulingPayload,
    QueueCleanupPayload,
    ScheduledAnalyticsPayload,
)
from .registry import Handler
from .worker import WorkerPool

log = logging.getLogger("jobqueue.job_scheduler")

MANAGED_QUEUES = (POST_SCHEDULING, ANALYTICS_COLLECTION, NOTIFICATION_DISPATCH, MEDIA_PROCESSING)

HOUR = 60 * 60
DAY = 24 * HOUR

# bulk work yields to interactive posts
BULK_PRIORITY = 5

HandlerSpec = Union[Handler, Tuple[Handler, Type[BaseModel]]]


@dataclass(frozen=True)
class RecurringJob:
    queue: str
    job_type: str
    job_id: str
    payload: BaseModel
    every: float
    remove_on_complete: int
    remove_on_fail: int


RECURRING_JOBS = (
    RecurringJob(ANALYTICS_COLLECTION, SCHEDULED_ANALYTICS_JOB, "hourly_analytics",
                 ScheduledAnalyticsPayload(frequency="hourly"), HOUR, 5, 3),
    RecurringJob(ANALYTICS_COLLECTION, SCHEDULED_ANALYTICS_JOB, "daily_analytics",
                 ScheduledAnalyticsPayload(frequency="daily"), DAY, 7, 3),
    RecurringJob(ANALYTICS_COLLECTION, SCHEDULED_ANALYTICS_JOB, "weekly_analytics",
                 ScheduledAnalyticsPayload(frequency="weekly"), 7 * DAY, 4, 2),
    RecurringJob(NOTIFICATION_DISPATCH, QUEUE_CLEANUP_JOB, "queue_cleanup",
                 QueueCleanupPayload(), DAY, 3, 1),
    RecurringJob(NOTIFICATION_DISPATCH, HEALTH_CHECK_JOB, "health_check",
                 HealthCheckPayload(), 15 * 60, 10, 5),
)

SYSTEM_OWNER = OwnerContext(user_id="system")


def _unpack(spec: HandlerSpec) -> Tuple[Handler, Optional[Type[BaseModel]]]:
    if isinstance(spec, tuple):
        return spec[0], spec[1]
    return spec, None


class JobScheduler:
    """Application-facing entry points for the dashboard's background work."""

    def __init__(self, manager: QueueManager) -> None:
        self.manager = manager
        self.workers: Dict[str, WorkerPool] = {}
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(
        self,
        handlers: Optional[Mapping[str, Mapping[str, HandlerSpec]]] = None,
        schedule_recurring: bool = True,
    ) -> None:
        """Register handlers, start a worker pool per managed queue and set up recurring jobs.

        `handlers` maps queue name -> job type -> handler or (handler, payload model).
        """

        if self._initialized:
            return
        log.info("job scheduler initializing", extra={"event": "job_scheduler_initializing"})

        self._register_builtin_handlers()
        for queue_name, by_type in (handlers or {}).items():
            for job_type, spec in by_type.items():
                handler, model = _unpack(spec)
                self.manager.register_handler(queue_name, job_type, handler, model)

        await self.manager.start()
        for queue_name in MANAGED_QUEUES:
            try:
                self.workers[queue_name] = await self.manager.create_worker(queue_name)
            except ProcessorNotRegistered as exc:
                # producers still enqueue; another process may run the workers
                await self.manager.create_queue(queue_name)
                log.warning("worker not started", extra={"queue": queue_name, "error": str(exc)})

        if schedule_recurring:
            await self._schedule_recurring_jobs()

        self._initialized = True
        log.info(
            "job scheduler initialized",
            extra={"event": "job_scheduler_initialized", "count": len(self.workers)},
        )

    def _register_builtin_handlers(self) -> None:
        builtins = (
            (QUEUE_CLEANUP_JOB, self._run_queue_cleanup, QueueCleanupPayload),
            (HEALTH_CHECK_JOB, self._run_health_check, HealthCheckPayload),
        )
        for job_type, handler, model in builtins:
            try:
                self.manager.register_handler(NOTIFICATION_DISPATCH, job_type, handler, model)
            except ProcessorAlreadyRegistered as exc:
                log.warning("built-in handler not registered", extra={"job_type": job_type, "error": str(exc)})

    async def _schedule_recurring_jobs(self) -> None:
        for rec in RECURRING_JOBS:
            try:
                handle = await self.manager.add_job(
                    rec.queue,
                    JobSpec(type=rec.job_type, payload=rec.payload, owner=SYSTEM_OWNER),
                    {
                        "job_id": rec.job_id,
                        "repeat": {"every": rec.every},
                        "remove_on_complete": rec.remove_on_complete,
                        "remove_on_fail": rec.remove_on_fail,
                    },
                )
                log.info(
                    "recurring job scheduled",
                    extra={"queue": rec.queue, "job_id": handle.id, "job_type": rec.job_type},
                )
            except JobQueueError as exc:
                log.error(
                    "could not schedule recurring job",
                    extra={"queue": rec.queue, "job_type": rec.job_type, "error": str(exc)},
                )

    # -----------------------
    # Built-in maintenance jobs
    # -----------------------

    async def _run_queue_cleanup(self, job: Job, payload: QueueCleanupPayload) -> JobResult:
        state = COMPLETED if payload.operation == "clean_completed" else FAILED
        cleaned: Dict[str, int] = {}
        for name in self.manager.admin.queue_names():
            cleaned[name] = await self.manager.clean_queue(name, payload.older_than, state, payload.max_jobs)
        return JobResult(success=True, result={"state": state, "cleaned": cleaned, "total": sum(cleaned.values())})

    async def _run_health_check(self, job: Job, payload: HealthCheckPayload) -> JobResult:
        stats = await self.manager.get_all_queue_stats()
        issues = []
        for name, s in stats.items():
            if s.failed > payload.failed_threshold:
                issues.append(f"{name}: {s.failed} failed jobs")
            if s.waiting > payload.waiting_threshold:
                issues.append(f"{name}: {s.waiting} jobs waiting")
        if issues and payload.alert_on_issues:
            log.warning(
                "queue health check found issues",
                extra={"event": "health_check_issues", "count": len(issues), "reason": "; ".join(issues)},
            )
        return JobResult(
            success=True,
            result={"healthy": not issues, "issues": issues, "stats": {n: s.as_dict() for n, s in stats.items()}},
        )

    # -----------------------
    # Public API for scheduling jobs
    # -----------------------

    async def schedule_post(self, data: Union[PostSchedulingPayload, Mapping[str, Any]]) -> str:
        payload = PostSchedulingPayload.model_validate(data)
        handle = await self.manager.add_job(
            POST_SCHEDULING,
            JobSpec(
                type=POST_SCHEDULING_JOB,
                payload=payload,
                owner=OwnerContext(payload.user_id, payload.workspace_id),
                scheduled_for=payload.scheduled_for,
                priority=0,
            ),
            {"job_id": f"post_{payload.post_id}", "attempts": 3},
        )
        log.info(
            "post scheduled",
            extra={"event": "post_scheduled", "job_id": handle.id, "user_id": payload.user_id, "state": handle.state},
        )
        return handle.id

    async def schedule_bulk_posts(self, data: Union[BulkPostSchedulingPayload, Mapping[str, Any]]) -> str:
        payload = BulkPostSchedulingPayload.model_validate(data)
        handle = await self.manager.add_job(
            POST_SCHEDULING,
            JobSpec(
                type=BULK_POST_SCHEDULING_JOB,
                payload=payload,
                owner=OwnerContext(payload.user_id, payload.workspace_id),
                priority=BULK_PRIORITY,
            ),
            {"job_id": f"bulk_{payload.batch_id}", "attempts": 2},
        )
        log.info(
            "bulk posts scheduled",
            extra={"event": "bulk_posts_scheduled", "job_id": handle.id, "count": len(payload.posts)},
        )
        return handle.id

    async def schedule_analytics_collection(
        self, data: Union[AnalyticsCollectionPayload, Mapping[str, Any]]
    ) -> str:
        payload = AnalyticsCollectionPayload.model_validate(data)
        handle = await self.manager.add_job(
            ANALYTICS_COLLECTION,
            JobSpec(
                type=ANALYTICS_COLLECTION_JOB,
                payload=payload,
                owner=OwnerContext(payload.user_id, payload.workspace_id),
                priority=payload.priority or 0,
            ),
            {"job_id": f"analytics_{int(time.time() * 1000)}_{payload.user_id}", "attempts": 3},
        )
        log.info(
            "analytics collection scheduled",
            extra={"event": "analytics_collection_scheduled", "job_id": handle.id, "count": len(payload.accounts)},
        )
        return handle.id

    async def schedule_notification(self, data: Union[NotificationDispatchPayload, Mapping[str, Any]]) -> str:
        payload = NotificationDispatchPayload.model_validate(data)
        note = payload.notification
        handle = await self.manager.add_job(
            NOTIFICATION_DISPATCH,
            JobSpec(
                type=NOTIFICATION_DISPATCH_JOB,
                payload=payload,
                owner=OwnerContext(note.user_id, note.workspace_id),
                scheduled_for=payload.scheduled_for,
                priority=payload.priority or 0,
            ),
            {"job_id": f"notification_{note.id}", "attempts": 3},
        )
        log.info(
            "notification scheduled",
            extra={"event": "notification_scheduled", "job_id": handle.id, "user_id": note.user_id},
        )
        return handle.id

    # -----------------------
    # Job management
    # -----------------------

    async def cancel_job(self, queue_name: str, job_id: str) -> bool:
        queue = await self.manager.create_queue(queue_name)
        cancelled = await queue.remove_job(job_id)
        log.info(
            "job cancel requested",
            extra={"event": "job_cancelled", "queue": queue_name, "job_id": job_id, "status": str(cancelled)},
        )
        return cancelled

    async def retry_job(self, queue_name: str, job_id: str) -> None:
        await self.manager.create_queue(queue_name)
        await self.manager.retry_job(queue_name, job_id)

    async def get_job_stats(self) -> Dict[str, QueueStats]:
        return await self.manager.get_all_queue_stats()

    async def shutdown(self, grace: Optional[float] = None) -> None:
        if not self._initialized:
            return
        log.info(
            "job scheduler shutting down",
            extra={"event": "job_scheduler_shutting_down", "count": len(self.workers)},
        )
        await self.manager.shutdown(grace)
        self.workers.clear()
        self._initialized = False
        log.info("job scheduler shutdown complete", extra={"event": "job_scheduler_shutdown_complete"})
