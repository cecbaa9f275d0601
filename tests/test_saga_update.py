"""
Tests for the update saga, its compensation and optimistic locking.
"""
import uuid
from typing import Any
from unittest.mock import AsyncMock

import pytest

from conftest import decode
from employee_sync.core.context import RequestContext
from employee_sync.core.exceptions import (
    ConcurrencyError,
    NotFoundError,
    ProviderBadRequestError,
    ProviderTransportError,
)
from employee_sync.core.saga import SagaCoordinator
from employee_sync.core.schemas import CreateEmployeeRequest, UpdateEmployeeRequest
from employee_sync.database.models import Employee
from employee_sync.messaging.bus import InMemoryEventBus


@pytest.fixture
def update_request() -> UpdateEmployeeRequest:
    return UpdateEmployeeRequest(
        first_name="Janka",
        last_name="Novakova",
        phone_number="+421900111222",
        account_name="jnovakova",
    )


class TestUpdateSaga:
    """Test suite for SagaCoordinator.update."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_update_applies_to_provider_and_store(
        self,
        coordinator: SagaCoordinator,
        gateway: AsyncMock,
        bus: InMemoryEventBus,
        create_request: CreateEmployeeRequest,
        update_request: UpdateEmployeeRequest,
        context: RequestContext,
    ) -> None:
        """Test successful update bumps the version and emits UPDATE."""
        created = await coordinator.create(create_request, context)

        view = await coordinator.update(created.id, update_request, context)

        gateway.fetch.assert_awaited_once_with("kc-jnovak")
        gateway.update.assert_awaited_once_with("kc-jnovak", update_request)
        gateway.restore.assert_not_awaited()
        assert view.full_name == "Janka Novakova"
        assert view.account_name == "jnovakova"
        assert view.version == 2

        messages = bus.messages("employee-events")
        assert [decode(m)["action"] for m in messages] == ["CREATE", "UPDATE"]
        assert decode(messages[1])["payload"] == update_request.model_dump(mode="json")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_update_with_current_version_succeeds(
        self,
        coordinator: SagaCoordinator,
        create_request: CreateEmployeeRequest,
        update_request: UpdateEmployeeRequest,
        context: RequestContext,
    ) -> None:
        """Test expected version matching the stored one is accepted."""
        created = await coordinator.create(create_request, context)

        view = await coordinator.update(created.id, update_request, context, expected_version=1)

        assert view.version == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_unknown_employee(
        self,
        coordinator: SagaCoordinator,
        gateway: AsyncMock,
        update_request: UpdateEmployeeRequest,
        context: RequestContext,
    ) -> None:
        """Test updating a missing employee fails before any provider call."""
        with pytest.raises(NotFoundError):
            await coordinator.update(uuid.uuid4(), update_request, context)

        gateway.fetch.assert_not_awaited()
        gateway.update.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_rejection_changes_nothing(
        self,
        coordinator: SagaCoordinator,
        gateway: AsyncMock,
        bus: InMemoryEventBus,
        create_request: CreateEmployeeRequest,
        update_request: UpdateEmployeeRequest,
        context: RequestContext,
    ) -> None:
        """Test provider 400 propagates and the local record stays as it was."""
        created = await coordinator.create(create_request, context)
        gateway.update.side_effect = ProviderBadRequestError("invalid username", status_code=400)

        with pytest.raises(ProviderBadRequestError):
            await coordinator.update(created.id, update_request, context)

        gateway.restore.assert_not_awaited()
        current = await coordinator.get(created.id)
        assert current.full_name == "Jana Novak"
        assert current.version == 1
        assert len(bus.messages("employee-events")) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_stale_expected_version_is_rejected(
        self,
        coordinator: SagaCoordinator,
        gateway: AsyncMock,
        create_request: CreateEmployeeRequest,
        update_request: UpdateEmployeeRequest,
        context: RequestContext,
    ) -> None:
        """Test a writer holding an old version fails before touching the provider."""
        created = await coordinator.create(create_request, context)
        await coordinator.update(created.id, update_request, context, expected_version=1)
        gateway.fetch.reset_mock()
        gateway.update.reset_mock()

        second = update_request.model_copy(update={"first_name": "Stale"})
        with pytest.raises(ConcurrencyError):
            await coordinator.update(created.id, second, context, expected_version=1)

        gateway.update.assert_not_awaited()
        current = await coordinator.get(created.id)
        assert current.full_name == "Janka Novakova"
        assert current.version == 2

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_write_during_saga_compensates(
        self,
        coordinator: SagaCoordinator,
        gateway: AsyncMock,
        bus: InMemoryEventBus,
        session_factory,
        create_request: CreateEmployeeRequest,
        update_request: UpdateEmployeeRequest,
        context: RequestContext,
    ) -> None:
        """
        Test a lost update is detected at write time.

        Another transaction commits while the saga is talking to the provider.
        The saga's write must fail on the version check, the provider account
        must be restored and the concurrent change must survive.
        """
        created = await coordinator.create(create_request, context)
        snapshot = gateway.fetch.return_value

        async def concurrent_write(account_id: str, profile: Any) -> None:
            async with session_factory() as session:
                employee = await session.get(Employee, created.id)
                employee.phone_number = "+421911999999"
                await session.commit()

        gateway.update.side_effect = concurrent_write

        with pytest.raises(ConcurrencyError):
            await coordinator.update(created.id, update_request, context)

        gateway.restore.assert_awaited_once_with("kc-jnovak", snapshot)

        async with session_factory() as session:
            employee = await session.get(Employee, created.id)
            assert employee.first_name == "Jana"
            assert employee.phone_number == "+421911999999"
            assert employee.version == 2

        assert [decode(m)["action"] for m in bus.messages("employee-events")] == ["CREATE"]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_failed_restore_keeps_original_error(
        self,
        coordinator: SagaCoordinator,
        gateway: AsyncMock,
        session_factory,
        create_request: CreateEmployeeRequest,
        update_request: UpdateEmployeeRequest,
        context: RequestContext,
    ) -> None:
        """Test a restore failure is logged and the local error still surfaces."""
        created = await coordinator.create(create_request, context)

        async def concurrent_write(account_id: str, profile: Any) -> None:
            async with session_factory() as session:
                employee = await session.get(Employee, created.id)
                employee.last_name = "Concurrent"
                await session.commit()

        gateway.update.side_effect = concurrent_write
        gateway.restore.side_effect = ProviderTransportError("keycloak down")

        with pytest.raises(ConcurrencyError):
            await coordinator.update(created.id, update_request, context)

        gateway.restore.assert_awaited_once()
