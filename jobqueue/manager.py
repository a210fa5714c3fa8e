from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, Union

from prometheus_client import start_http_server
from pydantic import BaseModel

from .admin import QueueAdmin
from .broker import BrokerClient
from .config import JobOptions, QueueManagerConfig
from .event_log import EventLogger
from .events import EventBus, LoggingObserver, Observer
from .exceptions import BrokerUnavailable, ValidationError
from .metrics import MetricsObserver, metrics_loop
from .models import COMPLETED, Job, JobHandle, JobSpec, QueueStats
from .queue import Queue
from .registry import Handler, Processor, ProcessorRegistry
from .worker import WorkerPool

log = logging.getLogger("jobqueue.manager")


class QueueManager:
    """Owns the broker connection, queues, worker pools and event subscriptions of a process.

    Build one at application startup and hand it to the modules that submit
    or process work.
    """

    def __init__(
        self,
        config: Optional[QueueManagerConfig] = None,
        *,
        broker: Optional[BrokerClient] = None,
        registry: Optional[ProcessorRegistry] = None,
        bus: Optional[EventBus] = None,
        observers: Optional[List[Observer]] = None,
    ) -> None:
        self.config = config or QueueManagerConfig()
        self.broker = broker or BrokerClient(self.config.redis, prefix=self.config.key_prefix)
        self.registry = registry or ProcessorRegistry()
        self.bus = bus or EventBus(self.broker)
        if observers is None:
            observers = [LoggingObserver(), MetricsObserver()]
            if self.config.event_log.enabled:
                observers.append(EventLogger(self.config.event_log))
        self._observers = observers
        self._queues: Dict[str, Queue] = {}
        self._workers: Dict[str, WorkerPool] = {}
        self._started = False
        self._metrics_task: Optional[asyncio.Task] = None
        self.admin = QueueAdmin(lambda: self._queues)

    @property
    def queues(self) -> Dict[str, Queue]:
        return dict(self._queues)

    @property
    def workers(self) -> Dict[str, WorkerPool]:
        return dict(self._workers)

    # -----------------------
    # Lifecycle
    # -----------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        try:
            await self.broker.ping()
            log.info(
                "broker connected",
                extra={"event": "queue_redis_connected", "queue": f"{self.config.redis.host}:{self.config.redis.port}"},
            )
        except BrokerUnavailable as exc:
            log.error("broker unreachable at startup; workers will retry", extra={"error": str(exc)})
        if self.config.metrics_port:
            start_http_server(self.config.metrics_port)
            self._metrics_task = asyncio.create_task(metrics_loop(self))
        for name in self.registry.queue_names():
            await self.create_worker(name)

    async def shutdown(self, grace: Optional[float] = None) -> None:
        log.info(
            "queue manager shutting down",
            extra={"event": "queue_manager_shutdown", "count": len(self._queues)},
        )
        for name, pool in list(self._workers.items()):
            await pool.close(grace)
        self._workers.clear()

        await self.bus.close()

        if self._metrics_task is not None:
            self._metrics_task.cancel()
            await asyncio.gather(self._metrics_task, return_exceptions=True)
            self._metrics_task = None

        await self.broker.close()
        log.info("broker connection closed", extra={"event": "redis_connection_closed"})
        self._started = False

    # -----------------------
    # Queues and processors
    # -----------------------

    async def create_queue(self, name: str, options: Union[JobOptions, Mapping[str, Any], None] = None) -> Queue:
        """Return the queue called `name`, creating it on first use."""

        existing = self._queues.get(name)
        if existing is not None:
            return existing
        if not name or not name.strip():
            raise ValidationError("queue name is required")
        try:
            defaults = self.config.default_job_options.merged(options)
        except ValueError as exc:
            raise ValidationError(f"invalid queue options: {exc}") from exc
        queue = Queue(
            name,
            self.broker,
            self.bus,
            defaults=defaults,
            concurrency=self.config.concurrency_for(name),
            registry=self.registry,
        )
        self._queues[name] = queue
        for observer in self._observers:
            self.bus.subscribe(name, observer)
        await self.bus.start(name)
        log.info("queue created", extra={"event": "queue_created", "queue": name, "concurrency": queue.concurrency})

        if self._started and name in self.registry:
            await self.create_worker(name)
        return queue

    def get_queue(self, name: str) -> Optional[Queue]:
        return self._queues.get(name)

    def register_processor(self, queue_name: str, processor: Processor) -> None:
        self.registry.register(queue_name, processor)

    def register_handler(
        self,
        queue_name: str,
        job_type: str,
        handler: Handler,
        payload_model: Optional[Type[BaseModel]] = None,
    ) -> None:
        self.registry.register_handler(queue_name, job_type, handler, payload_model)

    async def create_worker(self, queue_name: str) -> WorkerPool:
        existing = self._workers.get(queue_name)
        if existing is not None:
            return existing
        processor = self.registry.resolve(queue_name)
        queue = self._queues.get(queue_name) or await self.create_queue(queue_name)
        # create_queue may have started it already
        if queue_name in self._workers:
            return self._workers[queue_name]
        pool = WorkerPool(queue, processor, self.config.worker, queue.concurrency)
        self._workers[queue_name] = pool
        await pool.start()
        return pool

    def subscribe(self, queue_name: str, observer: Observer) -> Callable[[], None]:
        return self.bus.subscribe(queue_name, observer)

    # -----------------------
    # Jobs
    # -----------------------

    async def add_job(
        self,
        queue_name: str,
        job: Union[JobSpec, Mapping[str, Any]],
        options: Union[JobOptions, Mapping[str, Any], None] = None,
    ) -> JobHandle:
        queue = await self.create_queue(queue_name)
        return await queue.add(job, options)

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        queue = self._queues.get(queue_name)
        if queue is None:
            return None
        return await queue.get_job(job_id)

    async def remove_job(self, queue_name: str, job_id: str) -> bool:
        queue = self._queues.get(queue_name)
        if queue is None:
            return False
        return await queue.remove_job(job_id)

    # -----------------------
    # Admin / stats
    # -----------------------

    async def get_queue_stats(self, queue_name: str) -> QueueStats:
        return await self.admin.get_queue_stats(queue_name)

    async def get_all_queue_stats(self) -> Dict[str, QueueStats]:
        return await self.admin.get_all_queue_stats()

    async def pause_queue(self, queue_name: str) -> None:
        await self.admin.pause_queue(queue_name)

    async def resume_queue(self, queue_name: str) -> None:
        await self.admin.resume_queue(queue_name)

    async def clean_queue(
        self, queue_name: str, grace: float = 0, state: str = COMPLETED, limit: Optional[int] = None
    ) -> int:
        return await self.admin.clean_queue(queue_name, grace, state, limit)

    async def retry_job(self, queue_name: str, job_id: str) -> None:
        await self.admin.retry_job(queue_name, job_id)

    async def retry_failed_jobs(self, queue_name: str, limit: int = 100) -> int:
        return await self.admin.retry_failed_jobs(queue_name, limit)
