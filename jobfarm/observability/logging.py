"""
Logging setup for jobfarm entry points.

Library modules log through ``logging.getLogger(__name__)`` and never
configure handlers. The worker CLI and the queue daemon call
:func:`setup_logging`, which renders those records with structlog. Output
goes to stderr; job functions own stdout.
"""

import logging
import os
import socket
import sys
from typing import Any, TextIO

import structlog
from opentelemetry import trace

from jobfarm.config import get_settings

# Third-party loggers kept at WARNING
QUIET_LOGGERS = ("asyncio", "redis")

_HOSTNAME = socket.gethostname()


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach the recording span's trace and span ids."""
    span = trace.get_current_span()
    if not span.is_recording():
        return event_dict

    ctx = span.get_span_context()
    event_dict.setdefault("trace_id", f"{ctx.trace_id:032x}")
    event_dict.setdefault("span_id", f"{ctx.span_id:016x}")
    return event_dict


def add_process_identity(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag a record with the node and process that emitted it."""
    event_dict.setdefault("host", _HOSTNAME)
    event_dict.setdefault("pid", os.getpid())
    return event_dict


def setup_logging(level: str | None = None, stream: TextIO | None = None) -> None:
    """
    Route all logging through a structlog renderer.

    ``Settings.log_format`` picks JSON lines or the console renderer.

    Args:
        level: Override for ``Settings.log_level``.
        stream: Destination. Defaults to stderr.
    """
    settings = get_settings()
    stream = stream or sys.stderr
    log_level = logging.getLevelName((level or settings.log_level).upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        add_process_identity,
        add_trace_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
    ]

    if settings.log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream.isatty())

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**kwargs: Any) -> None:
    """Add fields (job id, queue handle) to every record from this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
