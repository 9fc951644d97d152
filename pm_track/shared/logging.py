"""Logging setup with per-record aggregate context."""

from __future__ import annotations

import json
import logging
import os
from typing import Any

STANDARD_FIELDS = ("project_id", "aggregate_id", "task_id")


class ContextFilter(logging.Filter):
    """
    Ensure the standard context fields exist on every log record so formatters
    can rely on them.
    """

    def __init__(self, defaults: dict[str, Any] | None = None) -> None:
        super().__init__()
        self.defaults = {field: "-" for field in STANDARD_FIELDS}
        if defaults:
            self.defaults.update({k: v for k, v in defaults.items() if v is not None})

    def filter(self, record: logging.LogRecord) -> bool:
        for key, default in self.defaults.items():
            if not hasattr(record, key):
                setattr(record, key, default)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in STANDARD_FIELDS:
            data[field] = getattr(record, field, "-")
        for extra_key in ("event_type", "sequence_number", "seq", "queue_item_id", "error"):
            if hasattr(record, extra_key):
                data[extra_key] = getattr(record, extra_key)
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data)


def setup_logging(level: str | None = None, json_output: bool = False) -> logging.Logger:
    resolved_level = level or os.environ.get("PM_TRACK_LOG_LEVEL") or "INFO"
    handler = logging.StreamHandler()
    handler.addFilter(ContextFilter())
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s "
                "project=%(project_id)s aggregate=%(aggregate_id)s task=%(task_id)s"
            )
        )
    root = logging.getLogger()
    root.handlers = []
    root.setLevel(getattr(logging, str(resolved_level).upper(), logging.INFO))
    root.addHandler(handler)
    return logging.getLogger("pm_track")
