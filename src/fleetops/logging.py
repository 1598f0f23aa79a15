from __future__ import annotations

import json
import logging
import os
import sys
import time
from typing import Any

DEFAULT_LOG_LEVEL = "WARNING"
LOG_LEVEL_ENV = "FLEETOPS_LOG_LEVEL"

_EXTRA_FIELDS = (
    "operation_id",
    "operation_type",
    "actor",
    "device_id",
    "device_count",
    "status",
    "succeeded",
    "failed",
    "event",
    "error_message",
)


def _utc_timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "timestamp": _utc_timestamp(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                base[key] = value

        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(base, ensure_ascii=True, default=str)


class StderrHandler(logging.StreamHandler):
    """Stream handler that writes to whatever `sys.stderr` is at emit time."""

    def __init__(self) -> None:
        super().__init__(sys.stderr)

    def emit(self, record: logging.LogRecord) -> None:
        self.stream = sys.stderr
        super().emit(record)


def resolve_log_level(level: str | None = None) -> str:
    text = (level or os.getenv(LOG_LEVEL_ENV) or DEFAULT_LOG_LEVEL).strip().upper()
    if text not in logging.getLevelNamesMapping():
        raise ValueError(f"Unknown log level: {level or text}")
    return text


def configure_logging(level: str | None = None) -> None:
    """Route `fleetops.*` loggers to a single JSON stderr handler."""
    logger = logging.getLogger("fleetops")
    logger.setLevel(resolve_log_level(level))

    handler = StderrHandler()
    handler.setFormatter(JsonFormatter())
    if logger.handlers:
        logger.handlers = []
    logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
