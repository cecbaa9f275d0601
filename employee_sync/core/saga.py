"""
Saga coordination for the employee lifecycle.

Create and update span two systems without a shared transaction: the local
store and the identity provider. Each saga applies the remote step first,
then the local one, and compensates the remote step if the local step fails.
The original local error is always the one re-raised.

Create: check uniqueness → journal STARTED → provider create → local insert
        (journal COMPLETED in the same transaction) → CREATE event
Update: load → snapshot account → provider update → local update → UPDATE event
Terminate: local only → TERMINATE event
"""
import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog.contextvars import bound_contextvars

from employee_sync.config import Settings, get_settings
from employee_sync.core.context import RequestContext
from employee_sync.core.events import DomainEvent, EmployeeAction
from employee_sync.core.exceptions import (
    AlreadyExistsError,
    CompensationFailure,
    ConcurrencyError,
    ExternalProviderError,
    NotFoundError,
    ProviderTransportError,
)
from employee_sync.core.publisher import CommitGatedPublisher
from employee_sync.core.schemas import (
    CreateEmployeeRequest,
    EmployeeFilter,
    EmployeeStatus,
    EmployeeSummary,
    EmployeeView,
    Page,
    PageRequest,
    TerminateEmployeeRequest,
    UpdateEmployeeRequest,
)
from employee_sync.database.models import Address, Employee
from employee_sync.database.repositories import SagaStatus
from employee_sync.database.unit_of_work import CommitOutcome, UnitOfWork
from employee_sync.integrations.identity_provider import IdentityProviderGateway
from employee_sync.monitoring import metrics

logger = structlog.get_logger(__name__)


class SagaType(str, Enum):
    """Saga kinds, used as journal type and metric label."""

    CREATE_EMPLOYEE = "create_employee"
    UPDATE_EMPLOYEE = "update_employee"
    TERMINATE_EMPLOYEE = "terminate_employee"


def _record(saga_type: SagaType, status: str, started: float) -> None:
    metrics.saga_executions_total.labels(saga_type=saga_type.value, status=status).inc()
    metrics.saga_duration_seconds.labels(saga_type=saga_type.value).observe(
        time.perf_counter() - started
    )


class SagaCoordinator:
    """
    Runs employee sagas against the local store and the identity provider.

    Each saga uses its own units of work; no state is shared between calls.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: IdentityProviderGateway,
        publisher: CommitGatedPublisher,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize coordinator.

        Args:
            session_factory: Factory for the local store sessions
            gateway: Identity provider gateway
            publisher: Publisher for domain events
            settings: Application settings (defaults to the cached settings)
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.publisher = publisher
        self.settings = settings or get_settings()

    def _unit_of_work(self) -> UnitOfWork:
        return UnitOfWork(self.session_factory)

    def _event(
        self,
        employee_id: uuid.UUID,
        action: EmployeeAction,
        payload: Any,
        context: RequestContext,
    ) -> DomainEvent:
        return DomainEvent.for_employee(
            employee_id=employee_id,
            action=action,
            payload=payload,
            context=context,
            source_service=self.settings.source_service,
        )

    async def _commit(self, uow: UnitOfWork) -> CommitOutcome:
        """Commit; on failure let the publisher discard the deferred events, then raise."""
        outcome = await uow.commit()
        if not outcome.committed:
            await self.publisher.publish_committed(outcome)
            outcome.raise_for_error()
        return outcome

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(self, request: CreateEmployeeRequest, context: RequestContext) -> EmployeeView:
        """
        Create an employee and its identity provider account.

        Args:
            request: Profile and addresses of the new employee
            context: Caller context stamped on the CREATE event

        Returns:
            EmployeeView: The committed employee

        Raises:
            AlreadyExistsError: Email or account name already used locally
                (no provider call is made) or by the provider
            ExternalProviderError: Provider rejected or failed the create
            PersistenceError: Local insert failed (the account was deleted)
        """
        saga_type = SagaType.CREATE_EMPLOYEE
        started = time.perf_counter()

        with bound_contextvars(correlation_id=context.correlation_id, saga_type=saga_type.value):
            logger.info("saga_create_started", email=request.email, account_name=request.account_name)

            try:
                saga_id = await self._check_unique_and_journal(request)
            except Exception:
                _record(saga_type, "failed", started)
                raise

            try:
                external_id = await self.gateway.create(request)
            except ExternalProviderError as e:
                logger.warning("saga_create_provider_failed", saga_id=str(saga_id), error=str(e))
                if not isinstance(e, ProviderTransportError):
                    # Provider definitely created nothing
                    await self._mark_journal(saga_id, SagaStatus.COMPENSATED, error=str(e))
                _record(saga_type, "failed", started)
                raise

            try:
                view, outcome = await self._insert_employee(request, external_id, saga_id, context)
            except Exception as local_error:
                logger.error(
                    "saga_create_local_failed",
                    saga_id=str(saga_id),
                    external_account_id=external_id,
                    error=str(local_error),
                    error_type=type(local_error).__name__,
                )
                await self._compensate_create(saga_id, external_id, local_error)
                _record(saga_type, "compensated", started)
                raise

            await self.publisher.publish_committed(outcome)
            _record(saga_type, "completed", started)
            logger.info("saga_create_completed", employee_id=str(view.id), external_account_id=external_id)
            return view

    async def _check_unique_and_journal(self, request: CreateEmployeeRequest) -> uuid.UUID:
        async with self._unit_of_work() as uow:
            if await uow.employees.exists_by_email(request.email):
                raise AlreadyExistsError(f"Employee with email {request.email} already exists.")
            if await uow.employees.exists_by_account_name(request.account_name):
                raise AlreadyExistsError(
                    f"Employee with account name {request.account_name} already exists."
                )

            entry = uow.saga_journal.start(SagaType.CREATE_EMPLOYEE.value, request.account_name)
            saga_id = entry.saga_id
            outcome = await uow.commit()
            outcome.raise_for_error()
            return saga_id

    async def _insert_employee(
        self,
        request: CreateEmployeeRequest,
        external_id: str,
        saga_id: uuid.UUID,
        context: RequestContext,
    ) -> tuple[EmployeeView, CommitOutcome]:
        async with self._unit_of_work() as uow:
            employee = Employee(
                id=uuid.uuid4(),
                external_account_id=external_id,
                first_name=request.first_name,
                last_name=request.last_name,
                email=request.email,
                phone_number=request.phone_number,
                account_name=request.account_name,
                status=EmployeeStatus.ACTIVE.value,
                started_work=request.started_work,
                created_by=context.actor_id,
                updated_by=context.actor_id,
                addresses=[],
            )
            for address in request.addresses:
                employee.add_address(Address.from_input(address))

            uow.employees.add(employee)
            await uow.saga_journal.mark(
                saga_id, SagaStatus.COMPLETED, external_account_id=external_id
            )
            await uow.flush()

            view = employee.to_view()
            await self.publisher.publish(
                self._event(employee.id, EmployeeAction.CREATE, view.model_dump(mode="json"), context),
                uow,
            )
            outcome = await self._commit(uow)
            return view, outcome

    async def _compensate_create(
        self, saga_id: uuid.UUID, external_id: str, local_error: Exception
    ) -> None:
        cause: Exception = local_error
        try:
            deleted = await self.gateway.delete(external_id)
        except Exception as e:
            deleted = False
            cause = e

        if deleted:
            metrics.compensations_total.labels(
                saga_type=SagaType.CREATE_EMPLOYEE.value, result="succeeded"
            ).inc()
            logger.warning("saga_create_compensated", saga_id=str(saga_id), external_account_id=external_id)
            await self._mark_journal(saga_id, SagaStatus.COMPENSATED, external_id, str(local_error))
            return

        failure = CompensationFailure(SagaType.CREATE_EMPLOYEE.value, external_id, cause)
        metrics.compensations_total.labels(
            saga_type=SagaType.CREATE_EMPLOYEE.value, result="failed"
        ).inc()
        logger.critical(
            "compensation_failed",
            saga_id=str(saga_id),
            external_account_id=external_id,
            error=str(failure),
            manual_cleanup_required=True,
        )
        await self._mark_journal(saga_id, SagaStatus.COMPENSATION_FAILED, external_id, str(failure))

    async def _mark_journal(
        self,
        saga_id: uuid.UUID,
        status: str,
        external_account_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Record a saga's final status. Failures here are logged, never raised."""
        async with self._unit_of_work() as uow:
            await uow.saga_journal.mark(saga_id, status, external_account_id, error)
            outcome = await uow.commit()
        if not outcome.committed:
            logger.error(
                "saga_journal_update_failed",
                saga_id=str(saga_id),
                status=status,
                error=str(outcome.error),
            )

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update(
        self,
        employee_id: uuid.UUID,
        request: UpdateEmployeeRequest,
        context: RequestContext,
        expected_version: Optional[int] = None,
    ) -> EmployeeView:
        """
        Update an employee and its identity provider account.

        Args:
            employee_id: Local employee id
            request: New profile values
            context: Caller context stamped on the UPDATE event
            expected_version: Version the caller last read, if any

        Returns:
            EmployeeView: The committed employee

        Raises:
            NotFoundError: No such employee
            ConcurrencyError: Version mismatch, before or during the write
            ExternalProviderError: Provider rejected the update (nothing changed)
            PersistenceError: Local write failed (the account was restored)
        """
        saga_type = SagaType.UPDATE_EMPLOYEE
        started = time.perf_counter()

        with bound_contextvars(
            correlation_id=context.correlation_id,
            saga_type=saga_type.value,
            employee_id=str(employee_id),
        ):
            logger.info("saga_update_started", expected_version=expected_version)

            async with self._unit_of_work() as uow:
                try:
                    employee = await self._load(uow, employee_id)
                    if expected_version is not None and employee.version != expected_version:
                        raise ConcurrencyError(
                            f"Employee {employee_id} is at version {employee.version}, "
                            f"expected {expected_version}"
                        )

                    account_id = employee.external_account_id
                    snapshot = await self.gateway.fetch(account_id)
                    await self.gateway.update(account_id, request)
                except Exception:
                    _record(saga_type, "failed", started)
                    raise

                try:
                    employee.apply_update(request, context.actor_id)
                    await uow.flush()
                    view = employee.to_view()
                    await self.publisher.publish(
                        self._event(
                            employee_id,
                            EmployeeAction.UPDATE,
                            request.model_dump(mode="json"),
                            context,
                        ),
                        uow,
                    )
                    outcome = await self._commit(uow)
                except Exception as local_error:
                    logger.error(
                        "saga_update_local_failed",
                        error=str(local_error),
                        error_type=type(local_error).__name__,
                    )
                    await self._compensate_update(account_id, snapshot, local_error)
                    _record(saga_type, "compensated", started)
                    raise

            await self.publisher.publish_committed(outcome)
            _record(saga_type, "completed", started)
            logger.info("saga_update_completed", version=view.version)
            return view

    async def _compensate_update(
        self, account_id: str, snapshot: Dict[str, Any], local_error: Exception
    ) -> None:
        try:
            await self.gateway.restore(account_id, snapshot)
        except Exception as e:
            failure = CompensationFailure(SagaType.UPDATE_EMPLOYEE.value, account_id, e)
            metrics.compensations_total.labels(
                saga_type=SagaType.UPDATE_EMPLOYEE.value, result="failed"
            ).inc()
            logger.critical(
                "compensation_failed",
                external_account_id=account_id,
                error=str(failure),
                local_error=str(local_error),
                manual_cleanup_required=True,
            )
            return

        metrics.compensations_total.labels(
            saga_type=SagaType.UPDATE_EMPLOYEE.value, result="succeeded"
        ).inc()
        logger.warning("saga_update_compensated", external_account_id=account_id)

    # ------------------------------------------------------------------
    # Terminate
    # ------------------------------------------------------------------

    async def terminate(
        self,
        employee_id: uuid.UUID,
        request: TerminateEmployeeRequest,
        context: RequestContext,
    ) -> EmployeeView:
        """
        Terminate an employee. Local only; the account is left as is.

        Raises:
            NotFoundError: No such employee
            InvalidStateError: Already terminated
            ValidationError: End date before start date
            PersistenceError: Local write failed
        """
        saga_type = SagaType.TERMINATE_EMPLOYEE
        started = time.perf_counter()

        with bound_contextvars(
            correlation_id=context.correlation_id,
            saga_type=saga_type.value,
            employee_id=str(employee_id),
        ):
            try:
                async with self._unit_of_work() as uow:
                    employee = await self._load(uow, employee_id)
                    employee.terminate(request.end_work, request.reason, context.actor_id)
                    await uow.flush()
                    view = employee.to_view()
                    await self.publisher.publish(
                        self._event(
                            employee_id,
                            EmployeeAction.TERMINATE,
                            request.model_dump(mode="json"),
                            context,
                        ),
                        uow,
                    )
                    outcome = await self._commit(uow)
            except Exception as e:
                logger.warning("saga_terminate_failed", error=str(e), error_type=type(e).__name__)
                _record(saga_type, "failed", started)
                raise

            await self.publisher.publish_committed(outcome)
            _record(saga_type, "completed", started)
            logger.info("saga_terminate_completed", end_work=str(request.end_work))
            return view

    # ------------------------------------------------------------------
    # Group membership
    # ------------------------------------------------------------------

    async def assign_group(
        self, employee_id: uuid.UUID, group_name: str, context: RequestContext
    ) -> None:
        """
        Add an employee's account to an identity provider group.

        Group names are upper-cased (``manager`` and ``MANAGER`` are one group).

        Raises:
            NotFoundError: No such employee, or no such group in the provider
            ExternalProviderError: Provider rejected or failed the call
        """
        account_id = await self._account_id(employee_id)
        with bound_contextvars(correlation_id=context.correlation_id, employee_id=str(employee_id)):
            await self.gateway.assign_group(account_id, group_name.upper())
            logger.info("employee_group_assigned", group=group_name.upper())

    async def remove_group(
        self, employee_id: uuid.UUID, group_name: str, context: RequestContext
    ) -> None:
        """Remove an employee's account from an identity provider group."""
        account_id = await self._account_id(employee_id)
        with bound_contextvars(correlation_id=context.correlation_id, employee_id=str(employee_id)):
            await self.gateway.remove_group(account_id, group_name.upper())
            logger.info("employee_group_removed", group=group_name.upper())

    async def _account_id(self, employee_id: uuid.UUID) -> str:
        async with self._unit_of_work() as uow:
            employee = await self._load(uow, employee_id)
            return employee.external_account_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    async def _load(uow: UnitOfWork, employee_id: uuid.UUID) -> Employee:
        employee = await uow.employees.get(employee_id)
        if employee is None:
            raise NotFoundError(f"Employee {employee_id} not found.")
        return employee

    async def get(self, employee_id: uuid.UUID) -> EmployeeView:
        async with self._unit_of_work() as uow:
            employee = await self._load(uow, employee_id)
            return employee.to_view()

    async def list(
        self,
        filter: Optional[EmployeeFilter] = None,
        page_request: Optional[PageRequest] = None,
    ) -> Page[EmployeeSummary]:
        """
        Page through employees.

        Args:
            filter: Status and free-text filter
            page_request: Page, size and sort (``"lastName,asc"`` by default)

        Returns:
            Page[EmployeeSummary]: Matching employees
        """
        filter = filter or EmployeeFilter()
        page_request = page_request or PageRequest()
        size = min(
            page_request.size or self.settings.audit_default_page_size,
            self.settings.audit_max_page_size,
        )

        async with self._unit_of_work() as uow:
            rows, total = await uow.employees.search(filter, page_request.page, size, page_request.sort)
            return Page[EmployeeSummary](
                items=[row.to_summary() for row in rows],
                total=total,
                page=page_request.page,
                size=size,
            )
