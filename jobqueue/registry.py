from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ProcessorAlreadyRegistered, ProcessorNotRegistered, UnrecoverableError, ValidationError
from .models import Job

# processor(job) -> JobResult | value | None
Processor = Callable[[Job], Any]
# handler(job, payload) -> JobResult | value | None
Handler = Callable[[Job, Any], Any]


def is_async(fn: Callable[..., Any]) -> bool:
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(getattr(fn, "__call__", None))


async def call_processor(fn: Callable[..., Any], *args: Any) -> Any:
    """Await async callables; run plain functions in a worker thread."""

    if is_async(fn):
        return await fn(*args)
    return await asyncio.to_thread(fn, *args)


@dataclass
class _Route:
    handler: Handler
    payload_model: Optional[Type[BaseModel]] = None

    def parse(self, payload: Any) -> Any:
        if self.payload_model is None:
            return payload
        return self.payload_model.model_validate(payload)


class TypeRouter:
    """Dispatches the jobs of one queue to a handler chosen by job type."""

    def __init__(self, queue_name: str) -> None:
        self.queue_name = queue_name
        self.routes: Dict[str, _Route] = {}

    async def __call__(self, job: Job) -> Any:
        route = self.routes.get(job.type)
        if route is None:
            raise UnrecoverableError(f"no handler for job type {job.type!r} on queue {self.queue_name}")
        try:
            payload = route.parse(job.payload)
        except PydanticValidationError as exc:
            raise UnrecoverableError(f"invalid payload for {job.type}: {exc}") from exc
        return await call_processor(route.handler, job, payload)


class ProcessorRegistry:
    """Maps queue names to the function that runs their jobs.

    A queue has either one processor for all of its jobs, or one handler per
    job type. Registering twice for the same target is rejected.
    """

    def __init__(self) -> None:
        self._processors: Dict[str, Processor] = {}

    def register(self, queue_name: str, processor: Processor) -> None:
        if queue_name in self._processors:
            raise ProcessorAlreadyRegistered(queue_name)
        self._processors[queue_name] = processor

    def register_handler(
        self,
        queue_name: str,
        job_type: str,
        handler: Handler,
        payload_model: Optional[Type[BaseModel]] = None,
    ) -> None:
        current = self._processors.get(queue_name)
        if current is not None and not isinstance(current, TypeRouter):
            raise ProcessorAlreadyRegistered(queue_name)
        router = current if current is not None else TypeRouter(queue_name)
        if job_type in router.routes:
            raise ProcessorAlreadyRegistered(queue_name, job_type)
        router.routes[job_type] = _Route(handler, payload_model)
        self._processors[queue_name] = router

    def resolve(self, queue_name: str) -> Processor:
        try:
            return self._processors[queue_name]
        except KeyError:
            raise ProcessorNotRegistered(queue_name) from None

    def validate_payload(self, queue_name: str, job_type: str, payload: Any) -> None:
        """Check a payload against the registered model, when this process knows one."""

        router = self._processors.get(queue_name)
        if not isinstance(router, TypeRouter):
            return
        route = router.routes.get(job_type)
        if route is None or route.payload_model is None:
            return
        try:
            route.payload_model.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid payload for {job_type}: {exc}") from exc

    def __contains__(self, queue_name: object) -> bool:
        return queue_name in self._processors

    def queue_names(self) -> List[str]:
        return list(self._processors)
