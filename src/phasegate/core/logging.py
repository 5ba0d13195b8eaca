"""
Structured logging for phasegate.

Every module obtains its logger through :func:`get_logger` and logs dotted
event names with key/value context::

    logger = get_logger(__name__)
    logger.info("phase.completed", phase="scan", duration_seconds=1.2)

:func:`configure_logging` is called once per process (the CLI does it at
startup; library users call it themselves). JSON output uses
Elasticsearch/ECS compatible field names, console output is colored when
attached to a TTY.

Architecture:
    ::

        configure_logging(level, json_format, service)
            ↓
        structlog processor chain:
          1. TimeStamper (iso)
          2. merge_contextvars     ← run_id / process bound by LogContext
          3. add_log_level (logger name is bound by get_logger)
          4. _add_service_metadata
          5. _elasticsearch_compatible (JSON only)
          6. JSONRenderer | ConsoleRenderer

Tags:
    logging, structlog, observability, phasegate-core
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog._config import BoundLoggerLazyProxy
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "phasegate"


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def _elasticsearch_compatible(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Make field names Elasticsearch/ECS compatible."""
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    if "logger" in event_dict:
        event_dict["log.logger"] = event_dict.pop("logger")
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "phasegate",
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for auto (JSON if not tty)
        service: Service name to include in logs
        add_timestamp: Include ISO timestamp in logs
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    if json_format is None:
        json_format = not sys.stderr.isatty()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]

    if add_timestamp:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        shared_processors.append(_elasticsearch_compatible)
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger.

    The name is bound as the ``logger`` key. The logger stays lazy, so
    module-level loggers pick up a later :func:`configure_logging`.

    Args:
        name: Logger name (usually __name__)
    """
    if name is None:
        return structlog.get_logger()
    return BoundLoggerLazyProxy(None, initial_values={"logger": name}, logger_factory_args=())


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs on this thread/task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


class LogContext:
    """Context manager for scoped logging context.

    Example:
        with LogContext(process="auto-scaling", run_id="01J..."):
            logger.info("phase.started")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "LogContext",
]
