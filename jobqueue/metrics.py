from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram

from . import events
from .events import QueueEvent
from .exceptions import JobQueueError

if TYPE_CHECKING:
    from .manager import QueueManager

log = logging.getLogger("jobqueue.metrics")

# -----------------------
# Prometheus metrics
# -----------------------
JOBS_SUBMITTED = Counter("jobqueue_jobs_submitted_total", "Total jobs submitted", ["queue"])
JOBS_FINISHED = Counter(
    "jobqueue_jobs_finished_total", "Job attempts finished", ["queue", "status"]
)  # completed|retrying|failed
JOBS_STALLED = Counter("jobqueue_jobs_stalled_total", "Jobs whose lease expired", ["queue"])
JOB_RUNTIME_S = Histogram("jobqueue_job_runtime_seconds", "Job runtime seconds", ["queue"])
QUEUE_DEPTH = Gauge("jobqueue_queue_jobs", "Jobs per queue and state", ["queue", "state"])


class MetricsObserver:
    """Event observer that feeds the Prometheus counters."""

    def __call__(self, ev: QueueEvent) -> None:
        if ev.event == events.ADDED:
            JOBS_SUBMITTED.labels(queue=ev.queue).inc()
        elif ev.event in (events.COMPLETED, events.RETRYING, events.FAILED):
            JOBS_FINISHED.labels(queue=ev.queue, status=ev.event).inc()
            duration = ev.data.get("duration_s")
            if duration is not None and duration >= 0:
                JOB_RUNTIME_S.labels(queue=ev.queue).observe(duration)
        elif ev.event == events.STALLED:
            JOBS_STALLED.labels(queue=ev.queue).inc()


async def refresh_queue_gauges(manager: "QueueManager") -> None:
    stats = await manager.get_all_queue_stats()
    for queue, counts in stats.items():
        for state, n in counts.as_dict().items():
            QUEUE_DEPTH.labels(queue=queue, state=state).set(n)


async def metrics_loop(manager: "QueueManager", interval: float = 2.0) -> None:
    """Continuously update gauges from broker stats."""

    while True:
        try:
            await refresh_queue_gauges(manager)
        except JobQueueError as exc:
            # Metrics must never crash the service
            log.debug("queue gauge refresh failed", extra={"error": str(exc)})
        await asyncio.sleep(interval)
