"""
Resilient Store

Retry-with-backoff wrapper around a KeyValueBackend, with cumulative failure
tracking and a degraded-mode signal for sustained storage failure.

Usage:
    store = ResilientStore(SQLKeyValueBackend(engine), on_degraded=show_warning)

    notifications = await store.load("notifications", default=[])  # never raises
    await store.save("notifications", notifications)                # never raises

    if store.has_error():
        ...  # local persistence has failed error_threshold times in a row

Retry pacing (within one operation) and the degraded threshold (across
operations) are independent: every failed attempt counts toward the
threshold, whichever operation it belongs to.
"""

import asyncio
import copy
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from notisync.core.errors import capture_message
from notisync.core.typing import Clock, maybe_await, utc_now
from notisync.services.kv_store import KeyValueBackend

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]
StoreCallback = Callable[["ErrorTracker"], Any]


@dataclass
class ErrorTracker:
    consecutive_failures: int = 0
    last_error_time: Optional[datetime] = None
    last_error_message: Optional[str] = None
    has_active_badge: bool = False


class ResilientStore:
    def __init__(
        self,
        backend: KeyValueBackend,
        channel: str = "local",
        max_attempts: int = 3,
        initial_backoff_ms: int = 100,
        max_backoff_ms: int = 5000,
        error_threshold: int = 3,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = utc_now,
        on_degraded: Optional[StoreCallback] = None,
        on_recovered: Optional[StoreCallback] = None,
    ):
        self.backend = backend
        self.channel = channel
        self.max_attempts = max_attempts
        self.initial_backoff_ms = initial_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self.error_threshold = error_threshold
        self.sleep = sleep
        self.clock = clock
        self.on_degraded = on_degraded
        self.on_recovered = on_recovered

        self._tracker = ErrorTracker()
        self._write_locks: Dict[str, asyncio.Lock] = {}

    def backoff_ms(self, attempt: int) -> int:
        """Delay before the attempt following `attempt` (1-based)."""
        return min(self.initial_backoff_ms * 2 ** (attempt - 1), self.max_backoff_ms)

    async def retry(self, op_name: str, op: Callable[[], Awaitable[T]], attempt: int = 1) -> T:
        """
        Run `op`, retrying with exponential backoff.

        Raises the last exception unmodified once max_attempts is reached.
        """
        while True:
            try:
                result = await op()
            except Exception as exc:
                await self._record_failure(op_name, exc)

                if attempt >= self.max_attempts:
                    logger.error(
                        "Storage operation failed after retries",
                        channel=self.channel,
                        operation=op_name,
                        attempts=attempt,
                    )
                    raise

                delay_ms = self.backoff_ms(attempt)
                logger.warning(
                    "Retrying storage operation",
                    channel=self.channel,
                    operation=op_name,
                    delay_ms=delay_ms,
                    next_attempt=attempt + 1,
                    max_attempts=self.max_attempts,
                )
                await self.sleep(delay_ms / 1000)
                attempt += 1
                continue

            if self._tracker.consecutive_failures > 0:
                logger.info(
                    "Storage operation succeeded after previous failures",
                    channel=self.channel,
                    operation=op_name,
                    previous_failures=self._tracker.consecutive_failures,
                )
                await self._clear_errors()
            return result

    async def load(self, key: str, default: Any = None) -> Any:
        """Read `key`; returns a copy of `default` if missing or unreadable."""
        try:
            value = await self.retry(f"load:{key}", lambda: self.backend.get(key))
        except Exception as e:
            logger.error("Failed to load from storage after retries", channel=self.channel, key=key, error=str(e))
            return copy.deepcopy(default)

        if value is None:
            return copy.deepcopy(default)
        return value

    async def save(self, key: str, value: Any) -> bool:
        """
        Write `value` under `key`. Failure is logged and tracked, never raised.

        Writes to the same key are applied one at a time, in call order.

        Returns:
            True if the value was written
        """
        lock = self._write_locks.setdefault(key, asyncio.Lock())
        async with lock:
            try:
                await self.retry(f"save:{key}", lambda: self.backend.set(key, value))
            except Exception as e:
                logger.error("Failed to save to storage after retries", channel=self.channel, key=key, error=str(e))
                return False
        return True

    async def _record_failure(self, op_name: str, exc: Exception) -> None:
        tracker = self._tracker
        tracker.consecutive_failures += 1
        tracker.last_error_time = self.clock()
        tracker.last_error_message = str(exc)

        logger.warning(
            "Storage error",
            channel=self.channel,
            operation=op_name,
            failures=tracker.consecutive_failures,
            error_type=type(exc).__name__,
            error=str(exc),
        )

        if tracker.consecutive_failures >= self.error_threshold and not tracker.has_active_badge:
            tracker.has_active_badge = True
            capture_message(
                "Storage degraded - data may not persist",
                level="error",
                context={"channel": self.channel, "failures": tracker.consecutive_failures},
            )
            if self.on_degraded:
                await self._run_callback(self.on_degraded)

    async def _clear_errors(self) -> None:
        was_degraded = self._tracker.has_active_badge
        self._tracker = ErrorTracker()
        if was_degraded:
            logger.info("Storage recovered, degraded mode cleared", channel=self.channel)
            if self.on_recovered:
                await self._run_callback(self.on_recovered)

    async def _run_callback(self, callback: StoreCallback) -> None:
        try:
            await maybe_await(callback(self.get_error_status()))
        except Exception as e:
            logger.error("Storage status callback failed", channel=self.channel, error=str(e))

    def get_error_status(self) -> ErrorTracker:
        return replace(self._tracker)

    def has_error(self) -> bool:
        return self._tracker.has_active_badge
