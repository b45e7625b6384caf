"""Structured logging setup shared by every module.

Modules get a logger with ``log = get_logger(__name__)`` and emit
snake_case event names with keyword context::

    log.warning("role_unknown", role=raw_role, user_id=user_id)
"""

from __future__ import annotations

import logging
import sys

import structlog

_configured = False


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Configure structlog and the stdlib root logger once per process."""
    global _configured  # noqa: PLW0603

    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level)

    renderer: structlog.types.Processor
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
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )
    _configured = True


def configure_from_settings() -> None:
    """Configure logging from ``config.settings`` (log level and renderer)."""
    from config.settings import get_settings

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the module name."""
    return structlog.get_logger(name)


def is_configured() -> bool:
    return _configured
