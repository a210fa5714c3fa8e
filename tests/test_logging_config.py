import json
import logging

from jobqueue.logging_config import JsonFormatter, configure_logging


def test_json_formatter_lifts_known_extras():
    record = logging.LogRecord("jobqueue.worker", logging.WARNING, __file__, 1, "job failed", None, None)
    record.event = "job_retrying"
    record.queue = "posts"
    record.attempts = 2
    record.secret = "not exported"
    out = json.loads(JsonFormatter().format(record))
    assert out["msg"] == "job failed"
    assert out["level"] == "WARNING"
    assert out["event"] == "job_retrying"
    assert out["queue"] == "posts"
    assert out["attempts"] == 2
    assert "secret" not in out


def test_configure_logging_installs_one_handler():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging("json")
        configure_logging("json")
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        configure_logging("plain")
        assert not isinstance(root.handlers[0].formatter, JsonFormatter)
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
