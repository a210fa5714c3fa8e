from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .broker import BrokerClient, Subscription
from .exceptions import BrokerUnavailable, JobQueueError
from .registry import call_processor
from .scheduler import reconnect_delay

log = logging.getLogger("jobqueue.events")

# Lifecycle events
ADDED = "added"
STARTED = "started"
PROGRESS = "progress"
COMPLETED = "completed"
RETRYING = "retrying"
FAILED = "failed"
STALLED = "stalled"
REMOVED = "removed"
PAUSED = "paused"
RESUMED = "resumed"
CLEANED = "cleaned"
RETRIED = "retried"

DEFAULT_MAX_PENDING = 1000


@dataclass
class QueueEvent:
    queue: str
    event: str
    job_id: Optional[str] = None
    ts: float = field(default_factory=time.time)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, raw: str) -> "QueueEvent":
        return cls(**json.loads(raw))


Observer = Callable[[QueueEvent], Any]


class _ObserverChannel:
    """Bounded buffer plus a dispatch task for one observer.

    Coroutine observers run on the loop; plain callables run in a worker
    thread. Only the first failure of an observer is logged as a warning.
    """

    def __init__(self, queue: str, observer: Observer, max_pending: int) -> None:
        self.queue = queue
        self.observer = observer
        self.pending: asyncio.Queue[QueueEvent] = asyncio.Queue(maxsize=max_pending)
        self.dropped = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    def offer(self, event: QueueEvent) -> bool:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        try:
            self.pending.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1:
                log.warning(
                    "event observer is falling behind; dropping events",
                    extra={"event": "observer_overflow", "queue": self.queue},
                )
            return False
        return True

    async def _run(self) -> None:
        while True:
            event = await self.pending.get()
            try:
                rv = await call_processor(self.observer, event)
                if inspect.isawaitable(rv):
                    await rv
            except Exception:
                self.failures += 1
                # the first failure carries the traceback; later ones only count
                if self.failures == 1:
                    log.warning(
                        "event observer failed",
                        exc_info=True,
                        extra={"event": "observer_error", "queue": self.queue, "job_id": event.job_id},
                    )
                else:
                    log.debug(
                        "event observer failed again",
                        extra={"event": "observer_error", "queue": self.queue, "count": self.failures},
                    )
            finally:
                self.pending.task_done()

    async def drain(self, timeout: float) -> None:
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self.pending.join(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("event observer did not drain in time", extra={"queue": self.queue})

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class EventBus:
    """Per-queue publish/subscribe of job lifecycle events.

    Events travel through the broker's pub-sub channel, so observers in one
    process see transitions made by workers in any process. Each observer is
    fed through its own bounded channel: a slow or failing observer never
    blocks the worker loop or the other observers.
    """

    def __init__(self, broker: BrokerClient, max_pending: int = DEFAULT_MAX_PENDING, poll_timeout: float = 1.0) -> None:
        self._broker = broker
        self._max_pending = max_pending
        self._poll_timeout = poll_timeout
        self._channels: Dict[str, List[_ObserverChannel]] = {}
        self._listeners: Dict[str, asyncio.Task] = {}
        self._subscriptions: Dict[str, Subscription] = {}

    def subscribe(self, queue: str, observer: Observer) -> Callable[[], None]:
        channel = _ObserverChannel(queue, observer, self._max_pending)
        self._channels.setdefault(queue, []).append(channel)

        def unsubscribe() -> None:
            channels = self._channels.get(queue, [])
            if channel in channels:
                channels.remove(channel)
                if channel._task is not None:
                    channel._task.cancel()

        return unsubscribe

    def is_listening(self, queue: str) -> bool:
        return queue in self._listeners

    async def start(self, queue: str) -> None:
        if queue in self._listeners:
            return
        try:
            self._subscriptions[queue] = await self._broker.subscribe(queue)
        except BrokerUnavailable:
            log.warning("event subscription deferred; broker unavailable", extra={"queue": queue})
        self._listeners[queue] = asyncio.create_task(self._listen(queue))

    async def publish(self, queue: str, event: str, job_id: Optional[str] = None, **data: Any) -> None:
        """Best effort: a publish failure is logged and never raised."""

        message = QueueEvent(queue=queue, event=event, job_id=job_id, data=data)
        try:
            await self._broker.publish(queue, message.to_json())
        except JobQueueError as exc:
            log.warning(
                "event publish failed",
                extra={"event": "event_publish_failed", "queue": queue, "job_id": job_id, "error": str(exc)},
            )

    def _dispatch(self, event: QueueEvent) -> None:
        for channel in list(self._channels.get(event.queue, [])):
            channel.offer(event)

    async def _listen(self, queue: str) -> None:
        failures = 0
        while True:
            try:
                sub = self._subscriptions.get(queue)
                if sub is None:
                    sub = self._subscriptions[queue] = await self._broker.subscribe(queue)
                raw = await sub.get(self._poll_timeout)
                failures = 0
            except BrokerUnavailable:
                failures += 1
                stale = self._subscriptions.pop(queue, None)
                if stale is not None:
                    await stale.close()
                await asyncio.sleep(reconnect_delay(failures, 0.5, 10.0))
                continue
            if raw is None:
                continue
            try:
                event = QueueEvent.from_json(raw)
            except (ValueError, TypeError):
                log.warning("malformed event dropped", extra={"queue": queue})
                continue
            self._dispatch(event)

    async def close(self, drain_timeout: float = 1.0) -> None:
        for queue, task in list(self._listeners.items()):
            # let events already in flight reach the channels
            await asyncio.sleep(0)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            sub = self._subscriptions.pop(queue, None)
            if sub is not None:
                await sub.close()
            log.info("event subscription closed", extra={"event": "queue_events_closed", "queue": queue})
        self._listeners.clear()
        for channels in self._channels.values():
            for channel in channels:
                await channel.drain(drain_timeout)
                await channel.close()


class LoggingObserver:
    """Writes lifecycle events to the log."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.log = logger or logging.getLogger("jobqueue.lifecycle")

    def __call__(self, ev: QueueEvent) -> None:
        subject = "job" if ev.job_id else "queue"
        extra = {"event": f"{subject}_{ev.event}", "queue": ev.queue, "job_id": ev.job_id, **_log_fields(ev.data)}
        if ev.event == FAILED:
            self.log.error("job failed", extra=extra)
        elif ev.event in (STALLED, RETRYING):
            self.log.warning(f"job {ev.event}", extra=extra)
        elif ev.event == PROGRESS:
            self.log.debug("job progress", extra=extra)
        else:
            self.log.info(f"{subject} {ev.event}", extra=extra)


_LOG_FIELDS = ("job_type", "attempts", "state", "error", "duration_s", "progress", "reason", "count")


def _log_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: data[k] for k in _LOG_FIELDS if k in data}
