"""Structured logging setup for Murmur.

All modules log through structlog with snake_case event names and keyword
fields. Output is JSON by default, or a console renderer for development.
"""

from __future__ import annotations

import logging
from typing import Any

import structlog

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def setup_logging(json_output: bool = True, level: str = "INFO") -> None:
    """Configure structlog processors and level filtering.

    Args:
        json_output: Render log lines as JSON when True, human-readable otherwise.
        level: Minimum log level name.
    """
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
    )


def get_logger(component: str) -> Any:
    """Get a logger bound to a component name."""
    return structlog.get_logger(component=component)
