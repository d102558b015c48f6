"""Structured logging for an engine embedded in a host application.

The engine logs through two front ends: structlog loggers for per-request
events (``retrieval_complete``) and ``logging.getLogger(__name__)`` module
loggers for index builds and degradation warnings. Both are rendered by one
``structlog.stdlib.ProcessorFormatter`` on a handler attached to the
``kb_retrieval`` package logger, so the host's root logger is left alone and
module warnings carry the same context (``request_id``) as structlog events.
"""

import logging
import sys
from typing import IO, Any

import structlog
from structlog.contextvars import (
    bind_contextvars,
    clear_contextvars,
    merge_contextvars,
)

PACKAGE_LOGGER = "kb_retrieval"
HANDLER_NAME = "kb_retrieval"


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    add_timestamps: bool = True,
    stream: IO[str] | None = None,
) -> None:
    """Configure structured logging for the engine.

    Calling this again replaces the handler installed by the previous call.
    Records stop at the package logger and are not passed on to the host's
    handlers.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        json_format: Output logs as JSON (True) or human-readable (False).
        add_timestamps: Include timestamps in log output.
        stream: Output stream; stdout if None.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
    ]
    if add_timestamps:
        shared_processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))

    if json_format:
        renderer: Any = structlog.processors.JSONRenderer(indent=None, sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*shared_processors, structlog.processors.format_exc_info],
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(formatter)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for existing in package_logger.handlers[:]:
        if existing.get_name() == HANDLER_NAME:
            package_logger.removeHandler(existing)
    package_logger.addHandler(handler)
    package_logger.setLevel(log_level)
    package_logger.propagate = False

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger instance.

    Names outside the ``kb_retrieval`` package are not routed to the engine's
    handler.

    Args:
        name: Logger name (defaults to caller module).

    Returns:
        Configured structlog logger (BoundLogger).
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind values to every log line emitted in the current async context.

    Args:
        **kwargs: Key-value pairs to bind, e.g. the ``request_id`` of a
            retrieval call.
    """
    bind_contextvars(**kwargs)


def clear_context() -> None:
    """Drop bound values; each retrieval call starts from an empty context."""
    clear_contextvars()
