"""
Structured logging for the web and worker processes.

Both processes render through one structlog ProcessorFormatter, so records
from stdlib loggers (`logging.getLogger(__name__)` with `extra=`) and from
structlog bound loggers come out in the same shape. Every record is stamped
with the process role, and with the job being run when emitted inside
`job_log_context`.
"""

import logging
import os
import sys
from contextlib import AbstractContextManager
from typing import Any

import structlog
from opentelemetry import trace

from jobdispatch.config import get_settings

# Libraries that log per query or per request at INFO
_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "asyncpg")


def add_trace_ids(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach the active span's trace and span ids, if tracing is on."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def process_stamper(role: str) -> structlog.typing.Processor:
    """
    Build a processor that tags records with the process role and PID.

    Several workers usually share one log stream; the role tells web and
    worker records apart and the PID tells worker processes apart.
    """
    pid = os.getpid()

    def stamp(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("process", role)
        event_dict.setdefault("pid", pid)
        return event_dict

    return stamp


def setup_logging(
    level: str | None = None,
    log_format: str | None = None,
    role: str = "dispatch",
) -> None:
    """
    Configure logging for the process.

    Args:
        level: Overrides settings.log_level.
        log_format: Overrides settings.log_format ("json" or "console").
        role: Process role stamped on every record ("api" or "worker").
    """
    if level is None or log_format is None:
        settings = get_settings()
        level = level or settings.log_level
        log_format = log_format or settings.log_format

    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        process_stamper(role),
        add_trace_ids,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    if log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger with `initial_values` bound to every event."""
    return structlog.get_logger(name, **initial_values)


def job_log_context(job_id: int, task: str, **values: Any) -> AbstractContextManager[None]:
    """
    Bind the running job to every record logged inside the block.

    Each worker slot runs in its own asyncio task, and so its own copy of
    the context, so concurrent jobs never see each other's ids. Values bound
    before the block are restored when it exits.
    """
    return structlog.contextvars.bound_contextvars(job_id=job_id, task=task, **values)
