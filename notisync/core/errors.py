"""
Error types and error reporting for the sync worker.

Every captured error is logged through structlog; when init_sentry() has
been called with a DSN it is also forwarded to Sentry, tagged with the
current poll and installation ids.

Usage:
    capture_exception(exc, context={"operation": "save_notifications"})
    capture_message("Malformed notifications payload", level="warning")
"""

import logging
from typing import Any, Callable, Dict, Optional
from datetime import datetime, timezone

import sentry_sdk
import structlog
from sentry_sdk.integrations.logging import LoggingIntegration

from notisync.core.context import get_context_dict, get_installation_id, get_poll_id

logger = structlog.get_logger(__name__)

__all__ = [
    "NotificationSyncError",
    "RemoteStatusError",
    "MalformedResponseError",
    "init_sentry",
    "capture_exception",
    "capture_message",
]


class NotificationSyncError(Exception):
    """Base class for errors raised by the sync core."""


class RemoteStatusError(NotificationSyncError):
    """The remote service answered with a non-2xx status."""

    def __init__(self, status_code: int, url: str = ""):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Remote returned HTTP {status_code}" + (f" for {url}" if url else ""))


class MalformedResponseError(NotificationSyncError):
    """The remote payload could not be parsed into notifications."""


_sentry_initialized: bool = False


def init_sentry(dsn: str, environment: str = "production", release: Optional[str] = None) -> bool:
    """Start Sentry reporting. Returns False (and stays log-only) without a DSN."""
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release,
            integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
            ignore_errors=[KeyboardInterrupt, SystemExit],
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment, release=release)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    poll_id = get_poll_id()
    if poll_id:
        event.setdefault("tags", {})["poll_id"] = poll_id

    installation_id = get_installation_id()
    if installation_id:
        event.setdefault("user", {})["id"] = installation_id

    return event


def _enrich(context: Optional[Dict[str, Any]], **fields: Any) -> Dict[str, Any]:
    return {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **fields,
        **(context or {}),
    }


def _forward(
    send: Callable[[], Optional[str]],
    extras: Dict[str, Any],
    level: str,
    fingerprint: Optional[list[str]] = None,
) -> Optional[str]:
    """Send one event to Sentry inside a scope carrying `extras`. Never raises."""
    if not _sentry_initialized:
        return None

    try:
        with sentry_sdk.push_scope() as scope:
            for key, value in extras.items():
                if value is not None:
                    scope.set_extra(key, value)
            if fingerprint:
                scope.fingerprint = fingerprint
            scope.level = level
            return send()
    except Exception as e:
        logger.warning("Failed to send event to Sentry", error=str(e))
        return None


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[list[str]] = None,
) -> Optional[str]:
    """
    Log `exc` at `level` and forward it to Sentry when enabled.

    Returns the Sentry event id, or None when nothing was sent.
    """
    extras = _enrich(context, error_type=type(exc).__name__)
    getattr(logger, level, logger.error)("Exception captured", exc_info=exc, **extras)
    return _forward(lambda: sentry_sdk.capture_exception(exc), extras, level, fingerprint)


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """Like capture_exception, for conditions that are not exceptions (degraded storage)."""
    extras = _enrich(context)
    getattr(logger, level, logger.info)(message, **extras)
    return _forward(lambda: sentry_sdk.capture_message(message, level=level), extras, level)
