from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .exceptions import JobQueueError, QueueNotFound
from .models import COMPLETED, FAILED, QueueStats
from .queue import Queue

log = logging.getLogger("jobqueue.admin")


class QueueAdmin:
    """Operator actions and aggregated stats over the queues known to this process.

    Counts always come from the broker, so they stay correct when several
    processes share the same store.
    """

    def __init__(self, queues: Callable[[], Dict[str, Queue]]) -> None:
        self._queues = queues

    def _queue(self, queue_name: str) -> Queue:
        try:
            return self._queues()[queue_name]
        except KeyError:
            raise QueueNotFound(queue_name) from None

    async def get_queue_stats(self, queue_name: str) -> QueueStats:
        return await self._queue(queue_name).stats()

    async def get_all_queue_stats(self) -> Dict[str, QueueStats]:
        return {name: await q.stats() for name, q in list(self._queues().items())}

    async def pause_queue(self, queue_name: str) -> None:
        await self._queue(queue_name).pause()

    async def resume_queue(self, queue_name: str) -> None:
        await self._queue(queue_name).resume()

    async def clean_queue(
        self, queue_name: str, grace: float = 0, state: str = COMPLETED, limit: Optional[int] = None
    ) -> int:
        return await self._queue(queue_name).clean(grace, state, limit)

    async def retry_job(self, queue_name: str, job_id: str) -> None:
        """Send a failed job back to waiting. attempts_made is not reset."""

        await self._queue(queue_name).retry_job(job_id)

    async def retry_failed_jobs(self, queue_name: str, limit: int = 100) -> int:
        queue = self._queue(queue_name)
        failed = await queue.get_jobs(FAILED, 0, limit - 1) if limit > 0 else []
        retried = 0
        errors = 0
        for job in failed:
            try:
                await queue.retry_job(job.id)
                retried += 1
            except JobQueueError as exc:
                errors += 1
                log.warning(
                    "failed job could not be retried",
                    extra={"queue": queue_name, "job_id": job.id, "error": str(exc)},
                )
        log.info(
            "failed jobs retried",
            extra={"event": "failed_jobs_retried", "queue": queue_name, "count": retried, "status": f"{errors} errors"},
        )
        return retried

    async def get_repeatable_jobs(self, queue_name: str) -> Dict[str, Dict[str, Any]]:
        return await self._queue(queue_name).get_repeatables()

    async def remove_repeatable(self, queue_name: str, key: str) -> bool:
        return await self._queue(queue_name).remove_repeatable(key)

    def queue_names(self) -> List[str]:
        return list(self._queues())
