"""
Structured logging configuration using structlog.

JSON lines when NOTISYNC_ENV=production, colored console output otherwise.
Everything bound through structlog.contextvars (poll_id, installation_id)
is merged into each event.

Usage:
    from notisync.core.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("Notifications updated", count=3, version="/a:1|/b:2")
"""

import logging
import os
import sys
from typing import Any, Optional

import structlog

IS_PRODUCTION = os.getenv("NOTISYNC_ENV") == "production"
IS_TEST = "pytest" in sys.modules

# Libraries that log every request/job at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "apscheduler", "sqlalchemy.engine")


def _level_from_env() -> int:
    level = getattr(logging, os.getenv("NOTISYNC_LOG_LEVEL", "INFO").upper(), None)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(json_logs: Optional[bool] = None, level: Optional[int] = None) -> None:
    """Configure structlog and stdlib logging for the sync worker."""
    if json_logs is None:
        json_logs = IS_PRODUCTION
    if level is None:
        level = _level_from_env()

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if json_logs:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=not IS_TEST))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route third-party stdlib logging to the same stream
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return structlog.get_logger(name)


# Configure on import
configure_logging()
