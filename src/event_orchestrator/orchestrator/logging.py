"""Structured logging configuration.

Uses standard library logging with a JSON formatter. While a worker has a
job active, `JobLoggerAdapter` attaches the job's identity to every record.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable, Mapping, MutableMapping
from datetime import UTC, datetime
from typing import Any

_RESERVED_LOG_RECORD_ATTRS: set[str] = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
}

# Ordered as they should appear in front of a message.
JOB_CONTEXT_KEYS: tuple[str, ...] = ("platform", "job", "user", "account")


class JsonFormatter(logging.Formatter):
    """A minimal JSON formatter for logging records."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def job_log_context(message: Mapping[str, Any] | None) -> dict[str, Any]:
    """Extract the log context of a job message envelope.

    Only keys that are present and not None end up in the context.
    """

    if not isinstance(message, Mapping):
        return {}
    meta = message.get("meta")
    if not isinstance(meta, Mapping):
        return {}

    context: dict[str, Any] = {}
    for key in JOB_CONTEXT_KEYS:
        source = "id" if key == "job" else key
        value = meta.get(source)
        if value is not None:
            context[key] = value
    return context


class JobLoggerAdapter(logging.LoggerAdapter):
    """Attach the active job's identity to each record.

    The adapter resolves the job lazily so that a single adapter can live
    for the whole worker process while jobs come and go.
    """

    def __init__(
        self, logger: logging.Logger, current_message: Callable[[], Mapping[str, Any] | None]
    ) -> None:
        super().__init__(logger, {})
        self._current_message = current_message

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        context = job_log_context(self._current_message())
        if context:
            kwargs["extra"] = {**context, **(kwargs.get("extra") or {})}
        return msg, kwargs


def configure_logging(level: str) -> None:
    """Configure root logging with structured JSON output."""

    root = logging.getLogger()

    # Remove any existing handlers to avoid duplicate logs when re-configuring.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.addHandler(handler)
    root.setLevel(level.upper())

    # Keep third-party loggers reasonably quiet unless explicitly configured.
    for name in ("pika", "urllib3"):
        logging.getLogger(name).setLevel(max(root.level, logging.INFO))
