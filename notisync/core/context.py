"""
Sync context management for log and error correlation.

Provides poll_id correlation across logs and error tracking, plus the
installation id of this client. Uses contextvars for async-safe propagation,
and binds the same values into structlog's contextvars so every log line
emitted during a poll carries them.

Usage:
    # At the start of a poll cycle
    set_poll_id(generate_poll_id())

    # In error handlers
    capture_exception(exc, context=get_context_dict())
"""

from contextvars import ContextVar
from typing import Optional
import uuid

import structlog

__all__ = [
    "generate_poll_id",
    "set_poll_id",
    "get_poll_id",
    "set_installation_id",
    "get_installation_id",
    "clear_context",
    "get_context_dict",
]

_poll_id: ContextVar[Optional[str]] = ContextVar("poll_id", default=None)
_installation_id: ContextVar[Optional[str]] = ContextVar("installation_id", default=None)


def generate_poll_id() -> str:
    """
    Generate a new poll ID.

    Format: poll_{16 hex chars}
    """
    return f"poll_{uuid.uuid4().hex[:16]}"


def set_poll_id(poll_id: str) -> None:
    """Set poll ID for the current async context."""
    _poll_id.set(poll_id)
    structlog.contextvars.bind_contextvars(poll_id=poll_id)


def get_poll_id() -> Optional[str]:
    return _poll_id.get()


def set_installation_id(installation_id: str) -> None:
    _installation_id.set(installation_id)
    structlog.contextvars.bind_contextvars(installation_id=installation_id)


def get_installation_id() -> Optional[str]:
    return _installation_id.get()


def clear_context() -> None:
    """
    Clear the poll-scoped context.

    Called at the end of a poll cycle. The installation id lives for the
    whole process and is kept.
    """
    _poll_id.set(None)
    structlog.contextvars.unbind_contextvars("poll_id")


def get_context_dict() -> dict:
    """Get all context variables as dict, for enriching error reports."""
    return {
        "poll_id": get_poll_id(),
        "installation_id": get_installation_id(),
    }
