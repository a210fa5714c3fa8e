from __future__ import annotations

import csv
import json
import os
import threading
from typing import Any, Dict

from .config import EventLogSettings
from .events import QueueEvent


class EventLogger:
    """
    Event observer that appends job lifecycle events to a file.

    Supported formats:
    - format=csv  -> CSV with header
    - format=json -> JSON Lines (one JSON object per line)
    """

    # Keep a stable, simple schema
    CSV_FIELDS = [
        "ts",
        "event",
        "queue",
        "job_id",
        "job_type",
        "state",
        "attempts",
        "duration_s",
        "error",
    ]

    def __init__(self, settings: EventLogSettings) -> None:
        self.enabled = settings.enabled
        self.format = settings.format
        self.path = settings.path
        self._lock = threading.Lock()
        self._csv_header_written = False

    def __call__(self, ev: QueueEvent) -> None:
        self.emit(ev)

    def emit(self, ev: QueueEvent) -> None:
        if not self.enabled:
            return
        rec: Dict[str, Any] = {"ts": ev.ts, "event": ev.event, "queue": ev.queue, "job_id": ev.job_id, **ev.data}

        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with self._lock:
                if self.format == "csv":
                    self._emit_csv(rec)
                else:
                    self._emit_jsonl(rec)
        except OSError:
            # Never fail the pipeline because of the event log
            return

    def _emit_jsonl(self, rec: Dict[str, Any]) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False, default=str) + "\n")

    def _emit_csv(self, rec: Dict[str, Any]) -> None:
        row = {k: rec.get(k, "") for k in self.CSV_FIELDS}
        for k, v in row.items():
            if v is None:
                row[k] = ""

        file_exists = os.path.exists(self.path)
        with open(self.path, "a", encoding="utf-8", newline="") as f:
            w = csv.DictWriter(f, fieldnames=self.CSV_FIELDS)
            if (not file_exists) or (not self._csv_header_written and os.path.getsize(self.path) == 0):
                w.writeheader()
                self._csv_header_written = True
            w.writerow(row)
