"""Logging configuration for Taskloom."""

import logging
import sys
from typing import Any, TextIO

import structlog

from taskloom.config import get_config


def configure_logging(level: str | None = None, stream: TextIO | None = None) -> None:
    """Configure structured logging for Taskloom.

    Args:
        level: Optional level override (defaults to ``logging.level`` from config)
        stream: Optional output stream (defaults to stderr)
    """
    config = get_config()

    log_level = getattr(logging, (level or config.logging.level).upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.logging.format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


def bind_task_context(**values: Any) -> None:
    """Bind task-scoped values (task_id, plan_id, worker) to every log line."""
    structlog.contextvars.bind_contextvars(**values)


def clear_task_context(*keys: str) -> None:
    """Remove task-scoped values bound with bind_task_context."""
    if keys:
        structlog.contextvars.unbind_contextvars(*keys)
    else:
        structlog.contextvars.clear_contextvars()


log = get_logger(__name__)
