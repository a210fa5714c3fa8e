from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from .exceptions import (
    BrokerUnavailable,
    ConfigurationError,
    InvalidJobState,
    JobNotFound,
    QueueNotFound,
    ValidationError,
)
from .logging_config import configure_logging
from .manager import QueueManager
from .metrics import refresh_queue_gauges
from .models import COMPLETED, FAILED, Job, JobSpec, OwnerContext
from .queue import Queue

log = logging.getLogger("jobqueue.api")

# -----------------------
# API models
# -----------------------


class OwnerReq(BaseModel):
    user_id: Optional[str] = None
    workspace_id: Optional[str] = None


class SubmitJobReq(BaseModel):
    type: str = Field(min_length=1)
    payload: Any
    owner: Optional[OwnerReq] = None
    # epoch seconds or ISO-8601
    scheduled_for: Union[float, str, None] = None
    priority: Optional[int] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class CleanReq(BaseModel):
    grace: float = Field(default=0.0, ge=0)
    state: str = COMPLETED
    limit: Optional[int] = Field(default=None, ge=1)


def job_to_dict(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "queue": job.queue_name,
        "type": job.type,
        "payload": job.payload,
        "owner": {"user_id": job.owner.user_id, "workspace_id": job.owner.workspace_id} if job.owner else None,
        "state": job.state,
        "priority": job.priority,
        "attempts_made": job.attempts_made,
        "max_attempts": job.max_attempts,
        "created_at": job.created_at,
        "scheduled_for": job.scheduled_for,
        "processed_on": job.processed_on,
        "finished_on": job.finished_on,
        "failed_reason": job.failed_reason,
        "return_value": job.return_value,
        "progress": job.progress,
        "stalled_count": job.stalled_count,
    }


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(QueueNotFound)
    async def queue_not_found_handler(request: Request, exc: QueueNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(JobNotFound)
    async def job_not_found_handler(request: Request, exc: JobNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidJobState)
    async def invalid_state_handler(request: Request, exc: InvalidJobState):
        return JSONResponse(status_code=409, content={"detail": str(exc), "state": exc.state})

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def configuration_handler(request: Request, exc: ConfigurationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(BrokerUnavailable)
    async def broker_unavailable_handler(request: Request, exc: BrokerUnavailable):
        return JSONResponse(status_code=503, content={"detail": str(exc)})


def create_app(manager: QueueManager, manage_lifecycle: bool = True) -> FastAPI:
    """HTTP surface for operators: stats, job inspection and queue controls.

    With `manage_lifecycle` the app starts the manager on startup and shuts
    it down on shutdown.
    """

    app = FastAPI(title="Dashboard Job Queue - Admin")
    app.state.manager = manager
    register_exception_handlers(app)

    def _queue(name: str) -> Queue:
        queue = manager.get_queue(name)
        if queue is None:
            raise QueueNotFound(name)
        return queue

    if manage_lifecycle:

        @app.on_event("startup")
        async def startup() -> None:
            configure_logging()
            await manager.start()

        @app.on_event("shutdown")
        async def shutdown() -> None:
            await manager.shutdown()

    # -----------------------
    # Routes
    # -----------------------

    @app.get("/healthz")
    def healthz():
        return {"ok": True, "broker": manager.broker.available}

    @app.get("/metrics")
    async def metrics() -> Response:
        try:
            await refresh_queue_gauges(manager)
        except BrokerUnavailable as exc:
            log.debug("queue gauge refresh failed", extra={"error": str(exc)})
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/queues")
    async def list_queues():
        stats = await manager.get_all_queue_stats()
        return {name: s.as_dict() for name, s in stats.items()}

    @app.get("/queues/{queue_name}/stats")
    async def queue_stats(queue_name: str):
        stats = await manager.get_queue_stats(queue_name)
        return {**stats.as_dict(), "total": stats.total, "paused_flag": await _queue(queue_name).is_paused()}

    @app.post("/queues/{queue_name}/jobs")
    async def submit_job(queue_name: str, req: SubmitJobReq):
        queue = _queue(queue_name)
        owner = OwnerContext(**req.owner.model_dump()) if req.owner else None
        spec = JobSpec(
            type=req.type,
            payload=req.payload,
            owner=owner,
            scheduled_for=req.scheduled_for,
            priority=req.priority,
        )
        handle = await queue.add(spec, req.options or None)
        return {"job_id": handle.id, "state": handle.state}

    @app.get("/queues/{queue_name}/jobs")
    async def list_jobs(queue_name: str, state: str = FAILED, start: int = 0, end: int = 49):
        jobs = await _queue(queue_name).get_jobs(state, start, end)
        return [job_to_dict(j) for j in jobs]

    @app.get("/queues/{queue_name}/jobs/{job_id}")
    async def get_job(queue_name: str, job_id: str):
        job = await _queue(queue_name).get_job(job_id)
        if job is None:
            raise JobNotFound(job_id, queue_name)
        return job_to_dict(job)

    @app.delete("/queues/{queue_name}/jobs/{job_id}")
    async def remove_job(queue_name: str, job_id: str):
        removed = await _queue(queue_name).remove_job(job_id)
        return {"removed": removed}

    @app.post("/queues/{queue_name}/jobs/{job_id}/retry")
    async def retry_job(queue_name: str, job_id: str):
        await manager.retry_job(queue_name, job_id)
        return {"ok": True}

    @app.post("/queues/{queue_name}/retry-failed")
    async def retry_failed(queue_name: str, limit: int = 100):
        retried = await manager.retry_failed_jobs(queue_name, limit)
        return {"retried": retried}

    @app.post("/queues/{queue_name}/pause")
    async def pause_queue(queue_name: str):
        await manager.pause_queue(queue_name)
        return {"ok": True, "paused": True}

    @app.post("/queues/{queue_name}/resume")
    async def resume_queue(queue_name: str):
        await manager.resume_queue(queue_name)
        return {"ok": True, "paused": False}

    @app.post("/queues/{queue_name}/clean")
    async def clean_queue(queue_name: str, req: CleanReq):
        cleaned = await manager.clean_queue(queue_name, req.grace, req.state, req.limit)
        return {"cleaned": cleaned}

    @app.get("/queues/{queue_name}/repeatables")
    async def repeatables(queue_name: str):
        return await manager.admin.get_repeatable_jobs(queue_name)

    return app
