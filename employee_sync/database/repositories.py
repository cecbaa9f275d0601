"""
Repositories over the employee, audit and saga journal tables.

Repositories never commit; the unit of work owns the transaction. The
audit store is the exception: each audit insert is its own transaction so a
duplicate key can be told apart from other failures.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import Select, exists, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from employee_sync.core.exceptions import IntegrityViolationError, ValidationError
from employee_sync.core.schemas import AuditLogFilter, EmployeeFilter
from employee_sync.database.models import AuditRecord, Employee, SagaJournalEntry

logger = structlog.get_logger(__name__)


class SagaStatus:
    """Saga journal statuses."""

    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    COMPENSATED = "COMPENSATED"
    COMPENSATION_FAILED = "COMPENSATION_FAILED"

    UNRESOLVED = (STARTED, COMPENSATION_FAILED)


def apply_sort(
    stmt: Select[Any],
    sort: Optional[str],
    allowed: Dict[str, Any],
    default: Tuple[str, str],
) -> Select[Any]:
    """
    Apply a ``"<field>,<asc|desc>"`` sort expression.

    Args:
        stmt: Statement to order
        sort: Sort expression from the caller (None uses the default)
        allowed: Map of sortable field names to columns
        default: (field, direction) used when sort is empty

    Returns:
        Select: Ordered statement

    Raises:
        ValidationError: If the field or direction is not recognized
    """
    field, direction = default
    if sort:
        parts = [part.strip() for part in sort.split(",")]
        field = parts[0]
        direction = parts[1].lower() if len(parts) > 1 and parts[1] else "asc"

    column = allowed.get(field)
    if column is None:
        raise ValidationError(f"Cannot sort by '{field}'. Allowed: {sorted(allowed)}")
    if direction not in ("asc", "desc"):
        raise ValidationError(f"Invalid sort direction '{direction}'")

    return stmt.order_by(column.desc() if direction == "desc" else column.asc())


def _like(term: str) -> str:
    return f"%{term.lower()}%"


class EmployeeRepository:
    """Data access for the employee aggregate within one session."""

    SORTABLE = {
        "lastName": Employee.last_name,
        "firstName": Employee.first_name,
        "email": Employee.email,
        "startedWork": Employee.started_work,
        "createdAt": Employee.created_at,
    }

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists_by_email(self, email: str) -> bool:
        stmt = select(exists().where(Employee.email == email))
        return bool(await self.session.scalar(stmt))

    async def exists_by_account_name(self, account_name: str) -> bool:
        stmt = select(exists().where(Employee.account_name == account_name))
        return bool(await self.session.scalar(stmt))

    async def get(self, employee_id: uuid.UUID) -> Optional[Employee]:
        return await self.session.get(Employee, employee_id)

    def add(self, employee: Employee) -> None:
        self.session.add(employee)

    async def search(
        self,
        filter: EmployeeFilter,
        page: int,
        size: int,
        sort: Optional[str] = None,
    ) -> Tuple[List[Employee], int]:
        """
        Page through employees matching the filter.

        Status is an exact match; search is a case-insensitive match on
        first name, last name or email. Conditions are combined with AND.
        """
        conditions = []
        if filter.status is not None:
            conditions.append(Employee.status == filter.status.value)
        if filter.search:
            pattern = _like(filter.search)
            conditions.append(
                or_(
                    func.lower(Employee.first_name).like(pattern),
                    func.lower(Employee.last_name).like(pattern),
                    func.lower(Employee.email).like(pattern),
                )
            )

        total = await self.session.scalar(
            select(func.count()).select_from(Employee).where(*conditions)
        )
        stmt = apply_sort(
            select(Employee).where(*conditions), sort, self.SORTABLE, ("lastName", "asc")
        )
        result = await self.session.execute(stmt.offset(page * size).limit(size))
        return list(result.scalars().all()), int(total or 0)


class SagaJournal:
    """Durable record of create sagas, written inside the caller's session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def start(self, saga_type: str, account_name: str) -> SagaJournalEntry:
        entry = SagaJournalEntry(
            saga_id=uuid.uuid4(),
            saga_type=saga_type,
            account_name=account_name,
            status=SagaStatus.STARTED,
        )
        self.session.add(entry)
        return entry

    async def get(self, saga_id: uuid.UUID) -> Optional[SagaJournalEntry]:
        return await self.session.get(SagaJournalEntry, saga_id)

    async def mark(
        self,
        saga_id: uuid.UUID,
        status: str,
        external_account_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[SagaJournalEntry]:
        entry = await self.get(saga_id)
        if entry is None:
            logger.warning("saga_journal_entry_missing", saga_id=str(saga_id))
            return None
        entry.status = status
        if external_account_id is not None:
            entry.external_account_id = external_account_id
        if error is not None:
            entry.error = error
        return entry

    async def find_unresolved(
        self, older_than: timedelta = timedelta(minutes=5)
    ) -> Sequence[SagaJournalEntry]:
        """
        List sagas that never completed or whose compensation failed.

        Args:
            older_than: Ignore entries younger than this (sagas still running)

        Returns:
            Sequence[SagaJournalEntry]: Entries needing operator attention
        """
        cutoff = datetime.now(timezone.utc) - older_than
        stmt = (
            select(SagaJournalEntry)
            .where(SagaJournalEntry.status.in_(SagaStatus.UNRESOLVED))
            .where(SagaJournalEntry.created_at <= cutoff)
            .order_by(SagaJournalEntry.created_at)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()


class AuditStore:
    """
    Append-only audit record store.

    Records are never updated or deleted; inserting an existing event id is
    reported as a duplicate rather than an error.
    """

    SORTABLE = {
        "eventTime": AuditRecord.event_time,
        "action": AuditRecord.action,
        "entityName": AuditRecord.entity_name,
        "createdAt": AuditRecord.created_at,
    }
    DEFAULT_SORT = ("eventTime", "asc")

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def insert(self, record: AuditRecord) -> bool:
        """
        Insert a record in its own transaction.

        Args:
            record: Audit record keyed by event id

        Returns:
            bool: True if inserted, False if the event id was already stored

        Raises:
            IntegrityViolationError: A constraint other than the primary key failed
        """
        audit_id = record.audit_id
        async with self.session_factory() as session:
            session.add(record)
            try:
                await session.commit()
                return True
            except IntegrityError as e:
                await session.rollback()
                if await session.get(AuditRecord, audit_id) is not None:
                    return False
                raise IntegrityViolationError(
                    f"Audit record {audit_id} violates a constraint: {e.orig}"
                ) from e

    async def get(self, audit_id: uuid.UUID) -> Optional[AuditRecord]:
        async with self.session_factory() as session:
            return await session.get(AuditRecord, audit_id)

    async def count(self) -> int:
        async with self.session_factory() as session:
            return int(await session.scalar(select(func.count()).select_from(AuditRecord)) or 0)

    async def search(
        self,
        filter: AuditLogFilter,
        page: int,
        size: int,
        sort: Optional[str] = None,
    ) -> Tuple[List[AuditRecord], int]:
        """
        Page through audit records.

        ``search`` matches action OR entity name case-insensitively; the
        exact filters are ANDed with it.
        """
        conditions = []
        if filter.search:
            pattern = _like(filter.search)
            conditions.append(
                or_(
                    func.lower(AuditRecord.action).like(pattern),
                    func.lower(AuditRecord.entity_name).like(pattern),
                )
            )
        if filter.action:
            conditions.append(AuditRecord.action == filter.action)
        if filter.entity_name:
            conditions.append(AuditRecord.entity_name == filter.entity_name)
        if filter.entity_id is not None:
            conditions.append(AuditRecord.entity_id == filter.entity_id)

        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(AuditRecord).where(*conditions)
            )
            stmt = apply_sort(
                select(AuditRecord).where(*conditions), sort, self.SORTABLE, self.DEFAULT_SORT
            )
            result = await session.execute(stmt.offset(page * size).limit(size))
            return list(result.scalars().all()), int(total or 0)
