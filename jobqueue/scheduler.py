from __future__ import annotations

import hashlib
import math
from datetime import datetime, timezone
from typing import Any, Optional, Union

from .config import BackoffOptions
from .exceptions import ValidationError

# -----------------------
# Tunable parameters
# -----------------------
# wait-set score is priority * 2**32 + seq, which stays exact in a double
# while |priority| <= 2**20
MAX_PRIORITY = 2**20
MIN_PRIORITY = -(2**20)
SEQ_SPACE = 2**32

TimeLike = Union[None, int, float, str, datetime]


def to_timestamp(value: TimeLike) -> Optional[float]:
    """Epoch seconds for a datetime, ISO-8601 string or number. Naive datetimes are UTC."""

    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"invalid timestamp: {value!r}") from exc
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    raise ValidationError(f"invalid timestamp: {value!r}")


def delay_until(scheduled_for: Optional[float], now: float) -> float:
    """Seconds a job must stay invisible; 0 for jobs due now or in the past."""

    if scheduled_for is None:
        return 0.0
    return max(0.0, scheduled_for - now)


def backoff_s(attempts: int, backoff: Optional[BackoffOptions] = None) -> float:
    """Delay before the next attempt, given the number of attempts made so far (1,2,3...)."""

    backoff = backoff or BackoffOptions()
    if backoff.type == "fixed":
        return backoff.delay
    if backoff.type == "linear":
        return backoff.delay * max(1, attempts)
    # attempt 1 failure => retry after delay
    # attempt 2 failure => retry after 2 * delay
    # attempt 3 failure => retry after 4 * delay
    return backoff.delay * (2 ** max(0, attempts - 1))


def should_retry(attempts_made: int, max_attempts: int) -> bool:
    """Retry rule: attempts_made counts finished attempts, max_attempts includes the first one."""

    return attempts_made < max_attempts


def check_priority(priority: Any) -> int:
    if priority is None:
        return 0
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValidationError(f"priority must be an integer, got {priority!r}")
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValidationError(f"priority must be within [{MIN_PRIORITY}, {MAX_PRIORITY}]")
    return priority


def priority_score(priority: Optional[int], seq: int) -> int:
    """Wait-set score: smaller priority first, FIFO by sequence number within a priority."""

    return (priority or 0) * SEQ_SPACE + (seq % SEQ_SPACE)


def reconnect_delay(failures: int, base: float, cap: float) -> float:
    return min(cap, base * (2 ** max(0, failures - 1)))


# -----------------------
# Repeatable jobs
# -----------------------


def repeat_key(job_type: str, job_id: Optional[str], every: float) -> str:
    raw = f"{job_type}:{job_id or ''}:{every:g}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


def first_repeat_at(every: float, now: float, immediately: bool = False) -> float:
    """First occurrence, aligned to the next multiple of `every` unless `immediately`."""

    if immediately:
        return now
    return (math.floor(now / every) + 1) * every


def next_repeat_at(previous: float, every: float, now: float) -> float:
    """Next occurrence after `previous`, skipping slots already in the past."""

    nxt = previous + every
    if nxt <= now:
        nxt += math.ceil((now - nxt) / every) * every
        if nxt <= now:
            nxt += every
    return nxt


def repeat_job_id(key: str, due: float) -> str:
    return f"repeat:{key}:{int(round(due * 1000))}"
