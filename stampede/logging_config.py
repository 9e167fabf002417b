"""Logging setup for stampede runs.

Everything logs under the "stampede" logger. Level and format come from the
environment (STAMPEDE_LOG_LEVEL, STAMPEDE_LOG_FORMAT) or from the CLI flags,
which call configure_logging explicitly. Run context passed with
``extra={"run": ..., "phase": ..., "vu": ...}`` becomes fields of the JSON line.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import orjson

from .exceptions import StampedeError

LOG_LEVEL_ENV = "STAMPEDE_LOG_LEVEL"
LOG_FORMAT_ENV = "STAMPEDE_LOG_FORMAT"  # "json" | "text" (default)
LOG_FORMATS = ("text", "json")
ROOT_LOGGER = "stampede"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Record attributes copied into JSON lines when a caller sets them via extra=
CONTEXT_FIELDS = ("run", "phase", "vu")


def get_logger(name: str) -> logging.Logger:
    """Return a logger for the given module name. Configures root stampede logger on first use."""
    logger = logging.getLogger(ROOT_LOGGER if name == ROOT_LOGGER else f"{ROOT_LOGGER}.{name}")
    if not logging.getLogger(ROOT_LOGGER).handlers:
        configure_logging()
    return logger


def configure_logging(level: str | None = None, fmt: str | None = None) -> logging.Logger:
    """(Re)configure the stampede root logger.

    Arguments left as None fall back to the environment, then to INFO / text.
    Calling it again replaces the handler, so CLI flags win over the environment.
    """
    root = logging.getLogger(ROOT_LOGGER)
    level_name = (level or os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    fmt_name = (fmt or os.environ.get(LOG_FORMAT_ENV) or "text").lower()
    handler = logging.StreamHandler(sys.stderr)
    if fmt_name == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)
    return root


class _JsonFormatter(logging.Formatter):
    """One JSON object per line, with run context and stampede error details when present."""

    def format(self, record: logging.LogRecord) -> str:
        obj: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt or "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                obj[key] = value
        if record.exc_info:
            obj["exception"] = self.formatException(record.exc_info)
            err = record.exc_info[1]
            if isinstance(err, StampedeError):
                obj["error"] = err.to_dict()
        return orjson.dumps(obj, default=str).decode("utf-8")
