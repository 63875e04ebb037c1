"""
Sync service wiring.

Builds one independent set of breaker, store, client and poller from
Settings. Several services can coexist in one process (different databases
or endpoints), since nothing here is module-global.

Usage:
    service = SyncService.build(settings)
    await service.start()      # restore state, seed cache, first poll
    ...
    await service.stop()
"""

from typing import Any, Dict, Optional

import httpx
import structlog
from sqlalchemy.engine import Engine

from notisync.core.circuit_breaker import CircuitBreaker, SQLCircuitStateStore
from notisync.core.config import Settings
from notisync.core.context import set_installation_id
from notisync.core.errors import init_sentry
from notisync.db import create_db_and_tables, create_db_engine
from notisync.services.installation import get_or_create_installation_id
from notisync.services.kv_store import SQLKeyValueBackend
from notisync.services.notification_client import NotificationClient
from notisync.services.notification_poller import NotificationPoller, PollOutcome
from notisync.services.resilient_store import ResilientStore, Sleep, StoreCallback

logger = structlog.get_logger(__name__)

CIRCUIT_NAME = "notifications_api"


class SyncService:
    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        circuit_breaker: CircuitBreaker,
        store: ResilientStore,
        client: NotificationClient,
        poller: NotificationPoller,
    ):
        self.settings = settings
        self.engine = engine
        self.circuit_breaker = circuit_breaker
        self.store = store
        self.client = client
        self.poller = poller
        self.installation_id: Optional[str] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        engine: Optional[Engine] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Sleep] = None,
        on_degraded: Optional[StoreCallback] = None,
        on_recovered: Optional[StoreCallback] = None,
    ) -> "SyncService":
        engine = engine or create_db_engine(settings.DATABASE_URL)

        circuit_breaker = CircuitBreaker(
            name=CIRCUIT_NAME,
            failure_threshold=settings.FAILURE_THRESHOLD,
            initial_backoff_ms=settings.INITIAL_BACKOFF_MS,
            max_backoff_ms=settings.MAX_BACKOFF_MS,
            store=SQLCircuitStateStore(engine),
        )

        store_kwargs: Dict[str, Any] = {}
        if sleep is not None:
            store_kwargs["sleep"] = sleep
        store = ResilientStore(
            SQLKeyValueBackend(engine),
            max_attempts=settings.STORAGE_RETRY_ATTEMPTS,
            initial_backoff_ms=settings.STORAGE_INITIAL_BACKOFF_MS,
            max_backoff_ms=settings.STORAGE_MAX_BACKOFF_MS,
            error_threshold=settings.STORAGE_ERROR_THRESHOLD,
            on_degraded=on_degraded,
            on_recovered=on_recovered,
            **store_kwargs,
        )

        client = NotificationClient(
            settings.API_BASE_URL,
            timeout=settings.FETCH_TIMEOUT_MS / 1000,
            transport=transport,
        )

        poller = NotificationPoller(
            client,
            circuit_breaker,
            store,
            storage_key=settings.NOTIFICATIONS_STORAGE_KEY,
            fetch_timeout_ms=settings.FETCH_TIMEOUT_MS,
        )
        return cls(settings, engine, circuit_breaker, store, client, poller)

    async def start(self, initial_poll: bool = True) -> Optional[PollOutcome]:
        """Restore persisted state, seed the cache and (optionally) poll once."""
        logger.info("Initializing sync service", api_base_url=self.settings.API_BASE_URL)

        init_sentry(self.settings.SENTRY_DSN, environment=self.settings.ENVIRONMENT)
        create_db_and_tables(self.engine)

        self.installation_id = await get_or_create_installation_id(self.store, self.settings.INSTALLATION_ID_KEY)
        set_installation_id(self.installation_id)
        self.client.set_installation_id(self.installation_id)

        self.circuit_breaker.load_state()
        await self.poller.initialize()

        outcome = None
        if initial_poll:
            outcome = await self.poller.poll()
        logger.info("Initialization complete", notifications=len(self.poller.current_set))
        return outcome

    async def stop(self) -> None:
        await self.client.aclose()

    def get_status(self) -> Dict[str, Any]:
        """Snapshot for status surfaces (popup, CLI, health endpoint)."""
        error_status = self.poller.get_error_status()
        return {
            "notifications": len(self.poller.current_set),
            "version": self.poller.current_set.version,
            "badge_text": self.poller.badge_text(),
            "storage_error": self.poller.has_error(),
            "storage": {
                "consecutive_failures": error_status.consecutive_failures,
                "last_error_time": error_status.last_error_time.isoformat() if error_status.last_error_time else None,
                "last_error_message": error_status.last_error_message,
            },
            "circuit_breaker": self.poller.get_circuit_breaker_stats().to_dict(),
        }
