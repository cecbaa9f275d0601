"""
Pytest configuration and fixtures.
"""
import json
import uuid
from datetime import date
from typing import Any, AsyncGenerator, Dict, List
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from employee_sync.config import Settings
from employee_sync.core.context import RequestContext
from employee_sync.core.publisher import CommitGatedPublisher
from employee_sync.core.saga import SagaCoordinator
from employee_sync.core.schemas import AddressInput, CreateEmployeeRequest
from employee_sync.database.connection import create_session_factory
from employee_sync.database.models import Base
from employee_sync.integrations.identity_provider import KeycloakGateway
from employee_sync.messaging.bus import BusMessage, InMemoryEventBus


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external resources")
    config.addinivalue_line("markers", "integration: tests spanning several components")
    config.addinivalue_line("markers", "race: concurrent writer scenarios")


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        keycloak_server_url="http://keycloak.test",
        keycloak_realm="company",
        keycloak_client_id="company-app",
        keycloak_client_secret="test-secret",
        app_name="employee-sync-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite engine so concurrent sessions see each other's commits."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'employee_sync.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus(partitions=3)


@pytest.fixture
def gateway() -> AsyncMock:
    """Identity provider double that succeeds by default."""
    mock = AsyncMock(spec=KeycloakGateway)
    mock.create.side_effect = lambda profile: f"kc-{profile.account_name}"
    mock.fetch.return_value = {
        "id": "kc-jnovak",
        "username": "jnovak",
        "firstName": "Jana",
        "lastName": "Novak",
        "email": "jana.novak@company.test",
    }
    mock.update.return_value = None
    mock.restore.return_value = None
    mock.delete.return_value = True
    return mock


@pytest.fixture
def publisher(bus: InMemoryEventBus, test_settings: Settings) -> CommitGatedPublisher:
    return CommitGatedPublisher(bus, test_settings.employee_events_topic)


@pytest.fixture
def coordinator(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: AsyncMock,
    publisher: CommitGatedPublisher,
    test_settings: Settings,
) -> SagaCoordinator:
    return SagaCoordinator(session_factory, gateway, publisher, test_settings)


@pytest.fixture
def context() -> RequestContext:
    return RequestContext.from_request(
        subject="7b0e4a5c-1d2f-4c3b-9a8e-5f6d7c8b9a01",
        remote_addr="10.0.0.5",
        forwarded_for="203.0.113.7, 10.0.0.1",
        user_agent="pytest-agent",
        correlation_id="corr-test-1",
    )


@pytest.fixture
def create_request() -> CreateEmployeeRequest:
    """Sample create request."""
    return CreateEmployeeRequest(
        first_name="Jana",
        last_name="Novak",
        email="Jana.Novak@Company.test",
        phone_number="+421900000000",
        account_name="jnovak",
        started_work=date(2024, 1, 15),
        addresses=[
            AddressInput(street="Main 1", city="Bratislava", postal_code="81101", country="SK")
        ],
    )


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


async def count_rows(session_factory: async_sessionmaker[AsyncSession], model: Any) -> int:
    async with session_factory() as session:
        return int(await session.scalar(select(func.count()).select_from(model)))


def decode(message: BusMessage) -> Dict[str, Any]:
    return json.loads(message.value)


def make_message(
    value: Any,
    key: str = "key-1",
    topic: str = "employee-events",
    partition: int = 0,
    offset: int = 0,
) -> BusMessage:
    """Build a consumed message from bytes, str or a dict."""
    if isinstance(value, dict):
        value = json.dumps(value)
    if isinstance(value, str):
        value = value.encode("utf-8")
    return BusMessage(topic=topic, key=key, value=value, partition=partition, offset=offset)


def sample_envelope(**overrides: Any) -> Dict[str, Any]:
    """Wire envelope as a dict, camelCase keys."""
    envelope = {
        "eventId": str(uuid.uuid4()),
        "eventTime": "2024-05-01T10:00:00Z",
        "actorId": "7b0e4a5c-1d2f-4c3b-9a8e-5f6d7c8b9a01",
        "entityName": "EMPLOYEE",
        "entityId": str(uuid.uuid4()),
        "action": "CREATE",
        "sourceService": "company-service",
        "correlationId": "corr-test-1",
        "payload": {"fullName": "Jana Novak"},
        "ipAddress": "203.0.113.7",
        "userAgent": "pytest-agent",
    }
    envelope.update(overrides)
    return envelope
