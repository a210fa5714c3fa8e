from __future__ import annotations

import os
from typing import Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import ConfigurationError

# -----------------------
# Queue names used by the dashboard
# -----------------------
POST_SCHEDULING = "post-scheduling"
ANALYTICS_COLLECTION = "analytics-collection"
NOTIFICATION_DISPATCH = "notification-dispatch"
MEDIA_PROCESSING = "media-processing"

DEFAULT_CONCURRENCY: Dict[str, int] = {
    POST_SCHEDULING: 5,
    ANALYTICS_COLLECTION: 3,
    NOTIFICATION_DISPATCH: 10,
    MEDIA_PROCESSING: 2,
}
FALLBACK_CONCURRENCY = 1


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class BackoffOptions(_Frozen):
    type: Literal["fixed", "linear", "exponential"] = "exponential"
    # seconds
    delay: float = Field(default=2.0, ge=0)


class RepeatOptions(_Frozen):
    every: float = Field(gt=0, description="interval between occurrences, seconds")
    limit: Optional[int] = Field(default=None, ge=1)
    immediately: bool = False


class JobOptions(_Frozen):
    """Per-job options. Queue defaults are composed with per-call overrides via merged()."""

    attempts: int = Field(default=3, ge=1)
    backoff: BackoffOptions = Field(default_factory=BackoffOptions)
    # True removes at once, an int keeps the newest N, False keeps everything
    remove_on_complete: Union[bool, int] = 100
    remove_on_fail: Union[bool, int] = 50
    delay: float = Field(default=0.0, ge=0)
    priority: Optional[int] = None
    job_id: Optional[str] = None
    repeat: Optional[RepeatOptions] = None

    @field_validator("remove_on_complete", "remove_on_fail")
    @classmethod
    def _non_negative_keep(cls, v: Union[bool, int]) -> Union[bool, int]:
        if not isinstance(v, bool) and v < 0:
            raise ValueError("retention count must be >= 0")
        return v

    def merged(self, overrides: Union["JobOptions", Mapping[str, Any], None]) -> "JobOptions":
        """Return a copy with every explicitly set field of `overrides` applied."""

        if overrides is None:
            return self
        if not isinstance(overrides, JobOptions):
            overrides = JobOptions.model_validate(dict(overrides))
        update = {name: getattr(overrides, name) for name in overrides.model_fields_set}
        if not update:
            return self
        return JobOptions.model_validate({**self.model_dump(), **update})


class RedisSettings(_Frozen):
    host: str = "localhost"
    port: int = Field(default=6379, ge=1, le=65535)
    password: Optional[str] = None
    db: int = Field(default=0, ge=0)
    connect_timeout: float = Field(default=2.0, gt=0)
    socket_timeout: float = Field(default=5.0, gt=0)
    # reconnect attempts per command before BrokerUnavailable surfaces
    retries: int = Field(default=3, ge=0)

    @field_validator("host")
    @classmethod
    def _plain_host(cls, v: str) -> str:
        if not v or "://" in v or any(c.isspace() for c in v) or "/" in v:
            raise ValueError(f"invalid broker host: {v!r}")
        return v


class WorkerSettings(_Frozen):
    lease_duration: float = Field(default=60.0, gt=0)
    stall_check_interval: float = Field(default=5.0, gt=0)
    poll_interval: float = Field(default=0.5, gt=0)
    shutdown_grace: float = Field(default=10.0, ge=0)
    cancel_grace: float = Field(default=1.0, ge=0)
    reconnect_backoff_base: float = Field(default=0.5, gt=0)
    reconnect_backoff_cap: float = Field(default=10.0, gt=0)


class EventLogSettings(_Frozen):
    enabled: bool = False
    format: Literal["json", "csv"] = "json"
    path: str = "logs/job_events.jsonl"


class QueueManagerConfig(_Frozen):
    redis: RedisSettings = Field(default_factory=RedisSettings)
    default_job_options: JobOptions = Field(default_factory=JobOptions)
    concurrency: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CONCURRENCY))
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    event_log: EventLogSettings = Field(default_factory=EventLogSettings)
    key_prefix: str = Field(default="jobqueue", min_length=1)
    metrics_port: Optional[int] = Field(default=None, ge=1, le=65535)

    @field_validator("concurrency")
    @classmethod
    def _positive_concurrency(cls, v: Dict[str, int]) -> Dict[str, int]:
        for name, n in v.items():
            if n < 1:
                raise ValueError(f"concurrency for {name} must be >= 1")
        return {**DEFAULT_CONCURRENCY, **v}

    def concurrency_for(self, queue_name: str) -> int:
        return self.concurrency.get(queue_name, FALLBACK_CONCURRENCY)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "QueueManagerConfig":
        env = os.environ if environ is None else environ
        redis = {
            "host": env.get("REDIS_HOST", "localhost"),
            "port": env.get("REDIS_PORT", "6379"),
            "db": env.get("REDIS_DB", "0"),
        }
        if env.get("REDIS_PASSWORD"):
            redis["password"] = env["REDIS_PASSWORD"]
        data: Dict[str, Any] = {
            "redis": redis,
            "event_log": {
                "enabled": env.get("EVENT_LOG_ENABLED", "0") not in ("0", "false", "False", ""),
                "format": env.get("EVENT_LOG_FORMAT", "json").lower(),
                "path": env.get("EVENT_LOG_PATH", "logs/job_events.jsonl"),
            },
        }
        if env.get("JOBQUEUE_KEY_PREFIX"):
            data["key_prefix"] = env["JOBQUEUE_KEY_PREFIX"]
        if env.get("JOBQUEUE_METRICS_PORT"):
            data["metrics_port"] = env["JOBQUEUE_METRICS_PORT"]
        data.update(overrides)
        return load_config(**data)


def load_config(**values: Any) -> QueueManagerConfig:
    """Build a QueueManagerConfig, turning validation problems into ConfigurationError."""

    try:
        return QueueManagerConfig.model_validate(values)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
