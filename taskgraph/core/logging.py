"""Structured logging configuration.

Execution and node ids travel in structlog context variables: the scheduling
loop binds ``execution_id`` and each node task adds ``node_id``, so any log
line emitted while a step runs (handlers included) carries both.
"""

import sys
import logging
from pathlib import Path
from typing import Any, List

import structlog

from taskgraph.core.config import Settings


def configure_logging(settings: Settings) -> None:
    """Configure structured logging based on settings.

    Safe to call again; root handlers are replaced each time.
    """
    level = getattr(logging, settings.log_level.upper())

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    for handler in handlers:
        handler.setLevel(level)
    logging.basicConfig(level=level, handlers=handlers, format="%(message)s", force=True)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors.insert(1, structlog.stdlib.add_logger_name)
        processors.insert(2, structlog.processors.TimeStamper(fmt="iso"))
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(1, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_execution_context(**fields: Any) -> None:
    """Attach fields to every log line of the current asyncio task.

    Tasks copy their context when created, so bindings made inside an
    execution's loop reach its node tasks but never another execution.
    """
    structlog.contextvars.bind_contextvars(**fields)


def log_execution_time(logger: structlog.BoundLogger, operation: str,
                      start_time: float, end_time: float, **kwargs) -> None:
    """Log execution time with additional context."""
    execution_time = end_time - start_time
    logger.info(
        "Operation completed",
        operation=operation,
        execution_time_seconds=round(execution_time, 4),
        **kwargs
    )


def log_cache_operation(logger: structlog.BoundLogger, operation: str,
                       key: str, hit: bool = None, **kwargs) -> None:
    """Log cache operations at debug level."""
    log_data = {
        "operation": operation,
        "cache_key": key,
        **kwargs
    }

    if hit is not None:
        log_data["cache_hit"] = hit

    logger.debug("Cache operation", **log_data)


def log_node_transition(logger: structlog.BoundLogger, execution_id: str,
                        node_id: str, status: str, **kwargs) -> None:
    """Log a node state change with standardized fields.

    Failed and blocked transitions are logged at warning level.
    """
    log = logger.warning if status in ("failed", "blocked") else logger.info
    log(
        "Node transition",
        execution_id=execution_id,
        node_id=node_id,
        status=status,
        **kwargs
    )
