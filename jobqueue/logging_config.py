import json
import logging
import os
import sys
import time
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_LEVEL = logging.INFO

# Extras lifted into JSON records (if provided via logger.*(..., extra={...}))
EXTRA_FIELDS = (
    "event",
    "queue",
    "job_id",
    "job_type",
    "slot",
    "status",
    "attempts",
    "state",
    "error",
    "duration_s",
    "user_id",
    "workspace_id",
    "reason",
    "count",
    "concurrency",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": time.time(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k in EXTRA_FIELDS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(fmt: Optional[str] = None, level: int = LOG_LEVEL) -> None:
    fmt = (fmt or os.environ.get("LOG_FORMAT", "plain")).lower()  # plain | json
    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
