"""Structured logging setup — structlog over the stdlib logging module."""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(json_output: bool | None = None, level: str | None = None) -> None:
    """Configure structlog once per process.

    Defaults come from settings: JSON lines in prod, console renderer in dev.
    """
    from config.settings import get_settings

    settings = get_settings()
    if json_output is None:
        json_output = settings.log_json or settings.gateway_env == "prod"
    level_name = (level or settings.log_level).upper()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a named structlog logger. Safe to call at import time."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def key_preview(key: str | None) -> str:
    """Shorten a license key for logs."""
    if not key:
        return ""
    return f"{key[:8]}..."
