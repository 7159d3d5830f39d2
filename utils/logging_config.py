"""Centralized structlog configuration for the forwarder process."""
from __future__ import annotations

import logging
import sys

import structlog

from config.settings import LoggingConfig


def configure_logging(config: LoggingConfig) -> None:
    """
    Configure structlog for the process.

    `format: json` emits one JSON object per line (container logs);
    `format: console` emits coloured key=value lines for local runs.
    Standard-library loggers (uvicorn, sqlalchemy, aio-pika) go through
    the same level.
    """
    level = getattr(logging, config.level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if config.format == "console":
        # ConsoleRenderer formats exc_info itself
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=level,
        stream=sys.stdout,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,
    )
