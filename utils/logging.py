"""Structured JSON logging for the decision insights pipeline.

This module provides:
- JSON-formatted log output for production environments
- Job context via ContextVar (job_id, owner_id, trace_id)
- get_logger() used by every module
- Human-readable format for development
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

# Context variables for job tracing
job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)
owner_id_var: ContextVar[str | None] = ContextVar("owner_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)

_STANDARD_ATTRS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
}


def get_job_context() -> dict[str, str]:
    """Return the non-empty context variables for the current task."""
    context = {
        "job_id": job_id_var.get(),
        "owner_id": owner_id_var.get(),
        "trace_id": trace_id_var.get(),
    }
    return {k: v for k, v in context.items() if v}


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production environments.

    Output format:
    {
        "timestamp": "2026-01-29T12:34:56.789Z",
        "level": "INFO",
        "logger": "services.job_queue",
        "message": "Job 42 succeeded",
        "job_id": "42",
        "owner_id": "user-456",
        "extra": {...}
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(get_job_context())

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
            log_data["exception_type"] = (
                record.exc_info[0].__name__ if record.exc_info[0] else None
            )

        # Fields passed via logger.info("msg", extra={"key": "value"})
        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable log formatter for development.

    Output format:
    2026-01-29 12:34:56.789 | INFO     | services.worker | [job:42] Log message here
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        level = record.levelname.ljust(8)
        message = record.getMessage()

        job_id = job_id_var.get()
        prefix = f"[job:{job_id}] " if job_id else ""

        formatted = f"{timestamp} | {level} | {record.name} | {prefix}{message}"
        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"
        return formatted


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
):
    """Configure the root logger with structured logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format. If None, auto-detect from environment.
    """
    if json_format is None:
        debug_mode = os.getenv("DEBUG", "false").lower() in ("true", "1", "yes")
        json_format = not debug_mode

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_format else HumanReadableFormatter())
    root_logger.addHandler(handler)

    # Set log levels for noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the module.

    Relies on configure_logging() being called at startup; falls back to
    the default configuration when it was not.
    """
    logger = logging.getLogger(name)
    if not logging.getLogger().handlers:
        configure_logging()
    return logger


class JobLogContext:
    """Context manager binding job_id/owner_id to every log line inside it.

    Usage:
        with JobLogContext(job_id="42", owner_id="user-456"):
            logger.info("Applying outcome event")
    """

    def __init__(
        self,
        job_id: str | None = None,
        owner_id: str | None = None,
        trace_id: str | None = None,
    ):
        self._values = {
            job_id_var: job_id,
            owner_id_var: owner_id,
            trace_id_var: trace_id,
        }
        self._tokens: list = []

    def __enter__(self):
        for var, value in self._values.items():
            if value is not None:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False
