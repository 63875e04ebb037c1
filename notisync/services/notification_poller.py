"""
Notification poller.

Periodic fetch-and-reconcile loop guarded by a circuit breaker:

    poll()
      breaker closed/probing? --no--> BLOCKED (no network call)
      fetch (bounded timeout)  --transport error / timeout / non-2xx--> FAILED
      record_success, parse    --bad payload--> MALFORMED
      same version as cached?  --yes--> UNCHANGED (records refreshed in memory; no write, no listeners)
      replace, persist, notify --> CHANGED

A failed or blocked poll never touches the cached set: stale-but-available
beats empty. poll() never raises.
"""

import asyncio
from enum import Enum
from typing import Any, Callable, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from notisync.core.circuit_breaker import CircuitBreaker, CircuitState
from notisync.core.context import clear_context, generate_poll_id, set_poll_id
from notisync.core.errors import MalformedResponseError, RemoteStatusError, capture_exception
from notisync.core.typing import maybe_await
from notisync.schemas import MutationResult, NotificationRecord, NotificationStatus, NotificationsResponse
from notisync.services.notification_client import NotificationClient
from notisync.services.notification_set import NotificationSet
from notisync.services.resilient_store import ErrorTracker, ResilientStore

logger = structlog.get_logger(__name__)

ChangeListener = Callable[[NotificationSet], Any]


class PollOutcome(str, Enum):
    BLOCKED = "blocked"
    FAILED = "failed"
    MALFORMED = "malformed"
    UNCHANGED = "unchanged"
    CHANGED = "changed"


def parse_notifications(response: httpx.Response) -> NotificationSet:
    """Parse an unread-notifications response body, or raise MalformedResponseError."""
    try:
        data = response.json()
    except ValueError as e:
        raise MalformedResponseError("Response body is not valid JSON") from e

    if not isinstance(data, dict):
        raise MalformedResponseError(f"Expected a JSON object, got {type(data).__name__}")

    try:
        parsed = NotificationsResponse.model_validate(data)
    except ValidationError as e:
        raise MalformedResponseError(f"Invalid notifications payload: {e.error_count()} error(s)") from e

    return NotificationSet.from_records(parsed.notifications)


class NotificationPoller:
    def __init__(
        self,
        client: NotificationClient,
        circuit_breaker: CircuitBreaker,
        store: ResilientStore,
        storage_key: str = "notifications",
        fetch_timeout_ms: int = 10000,
    ):
        self.client = client
        self.circuit_breaker = circuit_breaker
        self.store = store
        self.storage_key = storage_key
        self.fetch_timeout_ms = fetch_timeout_ms

        self.current_set = NotificationSet.empty()
        self._listeners: List[ChangeListener] = []
        # Serializes compare/replace/persist/notify across polls and mutations
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Seed the cached set from local storage."""
        payload = await self.store.load(self.storage_key, default=[])
        if not isinstance(payload, list):
            logger.warning("Ignoring stored notifications of unexpected type", type=type(payload).__name__)
            payload = []

        try:
            self.current_set = NotificationSet.from_records(payload)
        except ValidationError as e:
            logger.warning("Ignoring invalid stored notifications", errors=e.error_count())
            self.current_set = NotificationSet.empty()

        logger.info("Loaded notifications from storage", count=len(self.current_set))

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback fired (with the new set) whenever the version changes."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def get_notifications(self) -> List[NotificationRecord]:
        return list(self.current_set.records)

    def get_notification_status(self, folder: str) -> NotificationStatus:
        record = self.current_set.find(folder)
        if record is None:
            return NotificationStatus(has_notification=False)
        return NotificationStatus(
            has_notification=True,
            status=record.status,
            notification=record.model_dump(exclude_unset=True),
        )

    def badge_text(self) -> str:
        count = len(self.current_set)
        return str(count) if count else ""

    def get_error_status(self) -> ErrorTracker:
        return self.store.get_error_status()

    def has_error(self) -> bool:
        return self.store.has_error()

    def get_circuit_breaker_stats(self) -> CircuitState:
        return self.circuit_breaker.get_stats()

    async def poll(self) -> PollOutcome:
        set_poll_id(generate_poll_id())
        try:
            return await self._poll()
        finally:
            clear_context()

    async def refresh(self) -> PollOutcome:
        """Manual refresh; goes through the same breaker-guarded path as scheduled polls."""
        logger.info("Manual refresh requested")
        return await self.poll()

    async def _poll(self) -> PollOutcome:
        permission = self.circuit_breaker.should_allow_request()
        if not permission.allowed:
            logger.info("Request blocked", reason=permission.reason)
            return PollOutcome.BLOCKED

        if permission.probing:
            logger.info("Probing API - testing recovery")

        try:
            response = await asyncio.wait_for(self.client.fetch_unread(), timeout=self.fetch_timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning("Fetch timeout", timeout_ms=self.fetch_timeout_ms)
            self.circuit_breaker.record_failure(probe=permission.probing)
            return PollOutcome.FAILED
        except httpx.HTTPError as e:
            logger.warning("Fetch error", error_type=type(e).__name__, error=str(e))
            self.circuit_breaker.record_failure(probe=permission.probing)
            return PollOutcome.FAILED
        except asyncio.CancelledError:
            # Release the claimed probe slot before propagating
            if permission.probing:
                self.circuit_breaker.record_failure(probe=True)
            raise
        except Exception as e:
            capture_exception(e, context={"operation": "fetch_notifications"})
            self.circuit_breaker.record_failure(probe=permission.probing)
            return PollOutcome.FAILED

        if not response.is_success:
            error = RemoteStatusError(response.status_code, str(response.url))
            logger.warning("API returned error", status_code=response.status_code, error=str(error))
            self.circuit_breaker.record_failure(probe=permission.probing)
            return PollOutcome.FAILED

        self.circuit_breaker.record_success()

        try:
            new_set = parse_notifications(response)
        except MalformedResponseError as e:
            capture_exception(e, context={"operation": "parse_notifications"}, level="warning")
            return PollOutcome.MALFORMED

        changed = await self._apply(lambda current: new_set)
        return PollOutcome.CHANGED if changed else PollOutcome.UNCHANGED

    async def _apply(self, derive: Callable[[NotificationSet], NotificationSet]) -> bool:
        """
        Replace, persist and broadcast the set derived from the current one,
        if its version differs.

        An equal version only refreshes the in-memory records (status and
        message may have moved on); nothing is written or broadcast.
        Listeners run after the lock is released, so they may call
        mark_read() or mark_all_read().
        """
        async with self._lock:
            new_set = derive(self.current_set)
            if new_set.same_version(self.current_set):
                logger.debug("Notifications unchanged", version=new_set.version)
                self.current_set = new_set
                return False

            self.current_set = new_set
            logger.info("Notifications updated", count=len(new_set), version=new_set.version)
            await self.store.save(self.storage_key, new_set.to_payload())

        await self._notify_listeners(new_set)
        return True

    async def _notify_listeners(self, notification_set: NotificationSet) -> None:
        for listener in list(self._listeners):
            try:
                await maybe_await(listener(notification_set))
            except Exception as e:
                capture_exception(e, context={"operation": "notify_listener"})

    async def mark_read(self, folder: str) -> MutationResult:
        """Mark one folder read remotely, then drop it locally."""
        result = await self._mutate("mark_read", lambda: self.client.mark_read(folder))
        if result.success:
            await self._apply(lambda current: current.without_folder(folder))
        return result

    async def mark_all_read(self) -> MutationResult:
        result = await self._mutate("mark_all_read", self.client.mark_all_read)
        if result.success:
            await self._apply(lambda current: NotificationSet.empty())
        return result

    async def _mutate(self, operation: str, call: Callable[[], Any]) -> MutationResult:
        try:
            response = await asyncio.wait_for(call(), timeout=self.fetch_timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning("Mutation timeout", operation=operation)
            return MutationResult(success=False, error="Request timed out")
        except httpx.HTTPError as e:
            logger.warning("Mutation failed", operation=operation, error=str(e))
            return MutationResult(success=False, error=str(e) or type(e).__name__)
        except Exception as e:
            capture_exception(e, context={"operation": operation})
            return MutationResult(success=False, error=str(e) or type(e).__name__)

        if not response.is_success:
            error = RemoteStatusError(response.status_code, str(response.url))
            logger.warning("Mutation rejected", operation=operation, status_code=response.status_code)
            return MutationResult(success=False, error=str(error))

        logger.info("Mutation accepted", operation=operation)
        return MutationResult(success=True)
