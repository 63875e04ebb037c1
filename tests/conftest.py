"""
Test fixtures for notisync tests.

Provides an in-memory database plus fixtures wiring the fakes in
tests/fakes.py into a breaker, a resilient store and a poller.
"""

import pytest
from sqlmodel import SQLModel, create_engine
from sqlalchemy.pool import StaticPool

import notisync.models  # noqa: F401  (register tables)
from notisync.core.circuit_breaker import CircuitBreaker
from notisync.services.notification_client import NotificationClient
from notisync.services.notification_poller import NotificationPoller
from notisync.services.resilient_store import ResilientStore
from tests.fakes import FakeClock, FakeNotificationServer, FlakyBackend, RecordedSleep

TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> FlakyBackend:
    return FlakyBackend()


@pytest.fixture
def recorded_sleep() -> RecordedSleep:
    return RecordedSleep()


@pytest.fixture
def store(backend: FlakyBackend, recorded_sleep: RecordedSleep, clock: FakeClock) -> ResilientStore:
    return ResilientStore(
        backend,
        max_attempts=3,
        initial_backoff_ms=100,
        max_backoff_ms=5000,
        error_threshold=3,
        sleep=recorded_sleep,
        clock=clock,
    )


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(
        name="test_api",
        failure_threshold=3,
        initial_backoff_ms=5000,
        max_backoff_ms=300000,
        clock=clock,
    )


@pytest.fixture
def server() -> FakeNotificationServer:
    return FakeNotificationServer()


@pytest.fixture
def client(server: FakeNotificationServer) -> NotificationClient:
    return NotificationClient("http://localhost:8090", timeout=5.0, transport=server.transport)


@pytest.fixture
def poller(client: NotificationClient, breaker: CircuitBreaker, store: ResilientStore) -> NotificationPoller:
    return NotificationPoller(client, breaker, store, storage_key="notifications", fetch_timeout_ms=1000)
