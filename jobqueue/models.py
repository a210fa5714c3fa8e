from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .config import JobOptions

# Job states
WAITING = "waiting"
DELAYED = "delayed"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"
PAUSED = "paused"

JOB_STATES = (WAITING, DELAYED, ACTIVE, COMPLETED, FAILED, PAUSED)
TERMINAL_STATES = (COMPLETED, FAILED)


def now() -> float:
    return time.time()


@dataclass
class OwnerContext:
    """Who a job was submitted on behalf of. Used for attribution only, never routing."""

    user_id: Optional[str] = None
    workspace_id: Optional[str] = None


@dataclass
class JobSpec:
    """What a caller submits."""

    type: str
    payload: Any
    owner: Optional[OwnerContext] = None
    # epoch seconds, datetime or ISO string
    scheduled_for: Any = None
    priority: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "JobSpec":
        owner = data.get("owner") or data.get("owner_context")
        if isinstance(owner, Mapping):
            owner = OwnerContext(**owner)
        if owner is None and (data.get("user_id") or data.get("workspace_id")):
            owner = OwnerContext(user_id=data.get("user_id"), workspace_id=data.get("workspace_id"))
        return cls(
            type=data.get("type"),  # type: ignore[arg-type]
            payload=data.get("payload"),
            owner=owner,
            scheduled_for=data.get("scheduled_for"),
            priority=data.get("priority"),
        )


@dataclass
class JobHandle:
    id: str
    queue_name: str
    state: str


@dataclass
class JobMetrics:
    duration: float
    timestamp: float


@dataclass
class JobResult:
    """Outcome reported by a processor. A raised exception is treated as success=False."""

    success: bool
    result: Any = None
    error: Optional[str] = None
    metrics: Optional[JobMetrics] = None
    # False skips any remaining attempts
    retryable: bool = True

    @classmethod
    def coerce(cls, outcome: Any) -> "JobResult":
        if isinstance(outcome, JobResult):
            return outcome
        # {"success": bool, "result": ..., "error": ...} reads as a JobResult
        if isinstance(outcome, Mapping) and isinstance(outcome.get("success"), bool):
            return cls(
                success=outcome["success"],
                result=outcome.get("result"),
                error=outcome.get("error"),
                retryable=outcome.get("retryable", True),
            )
        return cls(success=True, result=outcome)


@dataclass
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed + self.paused

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class Job:
    """One unit of background work as stored by the broker."""

    id: str
    queue_name: str
    type: str
    payload: Any
    owner: Optional[OwnerContext] = None
    created_at: float = field(default_factory=now)
    scheduled_for: Optional[float] = None
    priority: Optional[int] = None

    attempts_made: int = 0
    max_attempts: int = 1
    state: str = WAITING
    options: Dict[str, Any] = field(default_factory=dict)

    processed_on: Optional[float] = None
    finished_on: Optional[float] = None
    failed_reason: Optional[str] = None
    return_value: Any = None
    progress: Any = None
    stalled_count: int = 0

    repeat_key: Optional[str] = None
    repeat_count: int = 0

    lease_token: Optional[str] = field(default=None, repr=False, compare=False)
    _lease_lost: Optional[asyncio.Event] = field(default=None, repr=False, compare=False)
    _progress: Optional[Callable[[Any], Awaitable[None]]] = field(default=None, repr=False, compare=False)

    def job_options(self) -> JobOptions:
        return JobOptions.model_validate(self.options)

    # -----------------------
    # Lease, used while a worker runs the job
    # -----------------------

    def bind(self, lease_lost: asyncio.Event, progress: Callable[[Any], Awaitable[None]]) -> None:
        self._lease_lost = lease_lost
        self._progress = progress

    @property
    def lease_lost(self) -> bool:
        """True once the worker gave up the job; a processor should stop work when it sees this."""

        return self._lease_lost is not None and self._lease_lost.is_set()

    async def update_progress(self, progress: Any) -> None:
        if self._progress is None:
            raise RuntimeError("progress can only be reported while the job is active")
        await self._progress(progress)

    # -----------------------
    # Broker hash encoding
    # -----------------------

    def to_hash(self) -> Dict[str, str]:
        rec: Dict[str, Any] = {
            "id": self.id,
            "name": self.type,
            "data": json.dumps(self.payload),
            "created_at": self.created_at,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "state": self.state,
            "options": json.dumps(self.options),
            "stalled_count": self.stalled_count,
            "repeat_count": self.repeat_count,
        }
        if self.owner is not None:
            rec["owner"] = json.dumps(asdict(self.owner))
        if self.scheduled_for is not None:
            rec["scheduled_for"] = self.scheduled_for
        if self.priority is not None:
            rec["priority"] = self.priority
        if self.repeat_key is not None:
            rec["repeat_key"] = self.repeat_key
        return {k: str(v) for k, v in rec.items()}

    @classmethod
    def from_hash(cls, queue_name: str, h: Mapping[str, str]) -> "Job":
        owner = json.loads(h["owner"]) if h.get("owner") else None
        return cls(
            id=h["id"],
            queue_name=queue_name,
            type=h["name"],
            payload=json.loads(h["data"]),
            owner=OwnerContext(**owner) if owner else None,
            created_at=float(h["created_at"]),
            scheduled_for=_opt_float(h.get("scheduled_for")),
            priority=int(h["priority"]) if h.get("priority") else None,
            attempts_made=int(h.get("attempts_made", 0)),
            max_attempts=int(h.get("max_attempts", 1)),
            state=h.get("state", WAITING),
            options=json.loads(h.get("options") or "{}"),
            processed_on=_opt_float(h.get("processed_on")),
            finished_on=_opt_float(h.get("finished_on")),
            failed_reason=h.get("failed_reason") or None,
            return_value=json.loads(h["return_value"]) if h.get("return_value") else None,
            progress=json.loads(h["progress"]) if h.get("progress") else None,
            stalled_count=int(h.get("stalled_count", 0)),
            repeat_key=h.get("repeat_key") or None,
            repeat_count=int(h.get("repeat_count", 0)),
            lease_token=h.get("token") or None,
        )


def _opt_float(v: Optional[str]) -> Optional[float]:
    return float(v) if v not in (None, "") else None
