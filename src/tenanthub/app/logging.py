"""Structured JSON logging for the control plane.

Every record carries the service name and schema version. Records emitted
inside ``trace_context`` also carry the run's ``trace_id`` and scheduler
``task``, so one health or backup pass over the fleet can be pulled out of
the log stream with a single filter.
"""

import logging
import sys
import time
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pythonjsonlogger import jsonlogger

from tenanthub.app.config import LoggingConfig, get_settings

trace_id_ctx: ContextVar[str | None] = ContextVar("trace_id", default=None)
task_ctx: ContextVar[str | None] = ContextVar("task", default=None)

# Noisy client libraries; a health pass touches every instance
QUIET_LOGGERS = ("httpx", "httpcore", "botocore", "aiobotocore", "aiosqlite")


def get_trace_id() -> str | None:
    return trace_id_ctx.get()


@contextmanager
def trace_context(task: str | None = None, trace_id: str | None = None) -> Iterator[str]:
    """Bind a trace id (generated when not given) and task for the block."""
    tid = trace_id or str(uuid4())
    trace_token = trace_id_ctx.set(tid)
    task_token = task_ctx.set(task)
    try:
        yield tid
    finally:
        task_ctx.reset(task_token)
        trace_id_ctx.reset(trace_token)


class RateLimitFilter(logging.Filter):
    """Caps identical records per minute.

    Records are grouped by logger, event and message template, so a pass
    that logs the same health-check line for hundreds of instances is
    capped while other events keep flowing. WARNING and above always pass: an
    operator must see every failed instance.
    """

    def __init__(self, rate_per_minute: int = 100, clock=time.monotonic) -> None:
        super().__init__()
        self.rate_per_minute = rate_per_minute
        self._clock = clock
        self._seen: dict[tuple, list[float]] = defaultdict(list)
        self._suppressed: set[tuple] = set()

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True

        key = (record.name, getattr(record, "event", None), record.msg)
        now = self._clock()
        recent = [t for t in self._seen[key] if now - t < 60]
        self._seen[key] = recent

        if len(recent) < self.rate_per_minute:
            self._suppressed.discard(key)
            recent.append(now)
            return True

        if key in self._suppressed:
            return False
        self._suppressed.add(key)
        record.msg = f"[RATE LIMITED] {record.msg} (max {self.rate_per_minute}/min)"
        return True


class ControlPlaneJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding service identity and trace context."""

    def __init__(self, config: LoggingConfig, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._schema_version = config.schema_version
        self._service = config.service_name

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=UTC).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["schema_version"] = self._schema_version
        log_record["service"] = self._service

        if trace_id := trace_id_ctx.get():
            log_record["trace_id"] = trace_id
        if task := task_ctx.get():
            log_record.setdefault("task", task)

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        log_record.pop("color_message", None)


def setup_logging(level: int | None = None) -> None:
    """Route every logger through one JSON handler on stdout.

    Args:
        level: Log level. If None, uses LOGGING_LEVEL from settings.
    """
    config = get_settings().logging
    if level is None:
        level = getattr(logging, config.level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ControlPlaneJsonFormatter(config))
    handler.addFilter(RateLimitFilter(config.rate_limit_per_minute))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in ("uvicorn", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = False
        uv_logger.addHandler(handler)
    logging.getLogger("uvicorn.access").disabled = True

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
