"""Structured logging configuration."""

import logging
import sys
from typing import Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, merge_contextvars

from chatledger.config import settings

__all__ = [
    "configure_logging",
    "get_logger",
    "bind_contextvars",
    "clear_contextvars",
]


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """Configure structlog for the pipeline.

    Args:
        level: Log level name, defaults to ``settings.log_level``
        json_logs: Render JSON lines instead of console output
    """
    level_name = (level or settings.log_level).upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    if json_logs is None:
        json_logs = settings.log_json

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None):
    """Get a bound structlog logger for a module."""
    return structlog.get_logger(name)
