"""
Time helpers shared by the breaker, the store and the models.

Wire timestamps are integer epoch milliseconds; everything stored in the
database is a timezone-aware UTC datetime.
"""

import inspect
from datetime import datetime, timezone
from typing import Any, Callable, Optional

# Injectable clock signature used by the circuit breaker and resilient store
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """
    Get current UTC time (timezone-aware).

    Use as default_factory in SQLModel fields and as the default Clock.
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes.

    SQLite drops tzinfo on round trip, so values read back from the
    database are naive.
    """
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_epoch_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(ensure_utc(value).timestamp() * 1000)


async def maybe_await(value: Any) -> Any:
    """
    Await value if it is awaitable.

    Lets callbacks be plain functions or coroutine functions.
    """
    if inspect.isawaitable(value):
        return await value
    return value
