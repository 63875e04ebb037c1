from datetime import datetime, timedelta
from enum import Enum
from dataclasses import dataclass, field, asdict
from threading import Lock
from typing import Any, Callable, Dict, Optional, Protocol

import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from notisync.core.typing import Clock, ensure_utc, to_epoch_ms, utc_now
from notisync.models.circuit_breaker_state import CircuitBreakerState

logger = structlog.get_logger(__name__)

# Notification callback for state changes - return value is ignored
StateChangeCallback = Callable[[str, str, str], Any]  # (name, old_state, new_state)


class CircuitStatus(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests locally
    HALF_OPEN = "half_open"  # One probe allowed to test recovery


@dataclass(frozen=True)
class CircuitState:
    """Snapshot of a breaker; also the unit of persistence."""

    status: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = 0
    last_failure_at: Optional[datetime] = None
    current_backoff_ms: int = 0
    probe_in_flight: bool = False

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["last_failure_at"] = to_epoch_ms(self.last_failure_at)
        data["time_since_failure_ms"] = None
        if self.last_failure_at is not None:
            now = now or utc_now()
            data["time_since_failure_ms"] = to_epoch_ms(now) - data["last_failure_at"]
        return data


@dataclass(frozen=True)
class RequestPermission:
    allowed: bool
    reason: Optional[str] = None
    probing: bool = False


class CircuitStateStore(Protocol):
    """Durable storage for breaker state, keyed by breaker name."""

    def load(self, name: str) -> Optional[CircuitState]: ...

    def save(self, name: str, state: CircuitState) -> None: ...


class SQLCircuitStateStore:
    """Persists breaker state to the CircuitBreakerState table."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def load(self, name: str) -> Optional[CircuitState]:
        with Session(self.engine) as session:
            row = session.exec(select(CircuitBreakerState).where(CircuitBreakerState.name == name)).first()
            if row is None:
                return None
            try:
                status = CircuitStatus(row.status)
            except ValueError:
                status = CircuitStatus.CLOSED
            return CircuitState(
                status=status,
                consecutive_failures=row.consecutive_failures,
                last_failure_at=ensure_utc(row.last_failure_at),
                current_backoff_ms=row.current_backoff_ms,
            )

    def save(self, name: str, state: CircuitState) -> None:
        with Session(self.engine) as session:
            row = session.exec(select(CircuitBreakerState).where(CircuitBreakerState.name == name)).first()
            if row is None:
                row = CircuitBreakerState(name=name)
            row.status = state.status.value
            row.consecutive_failures = state.consecutive_failures
            row.last_failure_at = state.last_failure_at
            row.current_backoff_ms = state.current_backoff_ms
            row.updated_at = utc_now()
            session.add(row)
            session.commit()


@dataclass
class CircuitBreaker:
    """
    Three-state failure gate with exponential backoff between probes.

    CLOSED counts consecutive failures and opens at failure_threshold.
    OPEN rejects locally until current_backoff_ms has passed since the last
    failure, then lets exactly one probe through (HALF_OPEN). A failed probe
    doubles the backoff (capped at max_backoff_ms); a success closes the
    circuit and clears the backoff. Failures not flagged as the probe only
    bump the counter while the circuit is not CLOSED.

    should_allow_request() does no I/O. record_success() and record_failure()
    save the new state through `store` before returning.
    """

    name: str
    failure_threshold: int = 3
    initial_backoff_ms: int = 5000
    max_backoff_ms: int = 5 * 60 * 1000
    store: Optional[CircuitStateStore] = None
    clock: Clock = utc_now
    on_state_change: Optional[StateChangeCallback] = None

    _status: CircuitStatus = field(default=CircuitStatus.CLOSED, init=False)
    _consecutive_failures: int = field(default=0, init=False)
    _last_failure_at: Optional[datetime] = field(default=None, init=False)
    _current_backoff_ms: int = field(default=0, init=False)
    _probe_in_flight: bool = field(default=False, init=False)
    _lock: Lock = field(default_factory=Lock, init=False)

    def load_state(self) -> None:
        """Restore persisted state. Storage errors leave the breaker CLOSED."""
        if self.store is None:
            return
        try:
            saved = self.store.load(self.name)
        except Exception as e:
            logger.warning("Failed to load circuit breaker state", circuit=self.name, error=str(e))
            return
        if saved is None:
            return

        with self._lock:
            self._status = saved.status
            # A half-open probe does not survive its process; retry it from OPEN
            if self._status == CircuitStatus.HALF_OPEN:
                self._status = CircuitStatus.OPEN
            self._consecutive_failures = max(0, saved.consecutive_failures)
            self._last_failure_at = saved.last_failure_at
            self._current_backoff_ms = saved.current_backoff_ms
            if self._status == CircuitStatus.OPEN:
                self._current_backoff_ms = self._cap(max(self._current_backoff_ms, self.initial_backoff_ms))
            self._probe_in_flight = False

        logger.info(
            "Circuit state restored",
            circuit=self.name,
            status=self._status.value,
            failures=self._consecutive_failures,
            backoff_ms=self._current_backoff_ms,
        )

    def _snapshot(self) -> CircuitState:
        return CircuitState(
            status=self._status,
            consecutive_failures=self._consecutive_failures,
            last_failure_at=self._last_failure_at,
            current_backoff_ms=self._current_backoff_ms,
            probe_in_flight=self._probe_in_flight,
        )

    def _persist(self, state: CircuitState) -> None:
        if self.store is None:
            return
        try:
            self.store.save(self.name, state)
        except Exception as e:
            # Don't let persistence failures break the circuit breaker
            logger.warning("Failed to persist circuit breaker state", circuit=self.name, error=str(e))

    def _transition(self, new_status: CircuitStatus) -> None:
        """Must be called while holding self._lock."""
        old_status = self._status
        self._status = new_status
        logger.info(
            "Circuit state changed",
            circuit=self.name,
            old_state=old_status.value,
            new_state=new_status.value,
            backoff_ms=self._current_backoff_ms,
        )
        if self.on_state_change:
            try:
                self.on_state_change(self.name, old_status.value, new_status.value)
            except Exception as e:
                logger.error("Circuit breaker notification failed", circuit=self.name, error=str(e))

    def _cap(self, backoff_ms: int) -> int:
        return min(backoff_ms, self.max_backoff_ms)

    def _backoff_elapsed(self, now: datetime) -> bool:
        if self._last_failure_at is None:
            return True
        return now >= self._last_failure_at + timedelta(milliseconds=self._current_backoff_ms)

    @property
    def state(self) -> CircuitStatus:
        """Current status. Use should_allow_request() for the OPEN -> HALF_OPEN move."""
        return self._status

    def should_allow_request(self) -> RequestPermission:
        with self._lock:
            if self._status == CircuitStatus.CLOSED:
                return RequestPermission(allowed=True)

            if self._status == CircuitStatus.OPEN:
                now = self.clock()
                if not self._backoff_elapsed(now):
                    since = (now - self._last_failure_at).total_seconds()
                    return RequestPermission(
                        allowed=False,
                        reason=f"Circuit OPEN ({round(since)}s since failure, backoff {self._current_backoff_ms}ms)",
                    )
                self._transition(CircuitStatus.HALF_OPEN)

            # HALF_OPEN
            if self._probe_in_flight:
                return RequestPermission(allowed=False, reason="Circuit HALF_OPEN (probe in flight)")
            self._probe_in_flight = True
            return RequestPermission(allowed=True, probing=True)

    def record_success(self) -> None:
        with self._lock:
            unchanged = (
                self._status == CircuitStatus.CLOSED
                and self._consecutive_failures == 0
                and self._current_backoff_ms == 0
                and self._last_failure_at is None
            )
            if unchanged:
                return
            was_closed = self._status == CircuitStatus.CLOSED
            self._consecutive_failures = 0
            self._current_backoff_ms = 0
            self._last_failure_at = None
            self._probe_in_flight = False
            if not was_closed:
                self._transition(CircuitStatus.CLOSED)
            state = self._snapshot()
        # Persist outside lock to avoid holding lock during DB operation
        self._persist(state)

    def record_failure(self, probe: bool = False) -> None:
        """
        Count a failed call. `probe` must be True only for the call that
        should_allow_request() admitted with probing=True.
        """
        with self._lock:
            now = self.clock()
            self._consecutive_failures += 1

            if self._status == CircuitStatus.OPEN or (self._status == CircuitStatus.HALF_OPEN and not probe):
                # Late result of a call made before the circuit opened
                logger.info(
                    "Stale failure recorded, window unchanged",
                    circuit=self.name,
                    status=self._status.value,
                    failures=self._consecutive_failures,
                )
            elif self._status == CircuitStatus.HALF_OPEN:
                self._current_backoff_ms = self._cap(
                    max(self._current_backoff_ms, self.initial_backoff_ms) * 2
                )
                self._last_failure_at = now
                self._probe_in_flight = False
                logger.warning("Probe failed, reopening circuit", circuit=self.name, backoff_ms=self._current_backoff_ms)
                self._transition(CircuitStatus.OPEN)
            else:
                self._last_failure_at = now
                logger.info("Failure recorded", circuit=self.name, failures=self._consecutive_failures)
                if self._consecutive_failures >= self.failure_threshold:
                    self._current_backoff_ms = self._cap(self.initial_backoff_ms)
                    logger.warning(
                        "Failure threshold reached, opening circuit",
                        circuit=self.name,
                        backoff_ms=self._current_backoff_ms,
                    )
                    self._transition(CircuitStatus.OPEN)
            state = self._snapshot()
        self._persist(state)

    def get_stats(self) -> CircuitState:
        with self._lock:
            return self._snapshot()
