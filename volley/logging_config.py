"""Structured logging configuration for volley."""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import orjson

LOG_LEVEL_ENV = "VOLLEY_LOG_LEVEL"
LOG_FORMAT_ENV = "VOLLEY_LOG_FORMAT"  # "json" | "text" (default)


def get_logger(name: str) -> logging.Logger:
    """Return a logger for the given module name. Configures root volley logger on first use."""
    logger = logging.getLogger("volley" if name == "volley" else f"volley.{name}")
    if not logger.handlers and logger.level == logging.NOTSET:
        _configure_volley_logging()
    return logger


def _configure_volley_logging() -> None:
    root = logging.getLogger("volley")
    if root.handlers:
        return
    level_name = (os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stderr)
    if (os.environ.get(LOG_FORMAT_ENV) or "text").lower() == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        )
    root.addHandler(handler)


class _JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        obj: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt or "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        test_id = getattr(record, "test_id", None)
        if test_id is not None:
            obj["test_id"] = test_id
        if record.exc_info:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode("utf-8")
