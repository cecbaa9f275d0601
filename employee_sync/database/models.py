"""SQLAlchemy database models for employees, the audit trail and the saga journal."""
import uuid
from datetime import date, datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from employee_sync.core.exceptions import InvalidStateError, ValidationError
from employee_sync.core.schemas import (
    AddressInput,
    AddressType,
    AddressView,
    EmployeeStatus,
    EmployeeSummary,
    EmployeeView,
    UpdateEmployeeRequest,
)

JsonType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Address(Base):
    """
    Address owned by an employee.

    Holds only the parent's id; there is no back-reference object, so the
    aggregate has no reference cycle.
    """

    __tablename__ = "addresses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False, default=AddressType.HOME.value)
    street: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "type IN ('HOME', 'MAILING', 'TEMPORARY', 'WORK')",
            name="valid_address_type",
        ),
    )

    @classmethod
    def from_input(cls, data: AddressInput) -> "Address":
        return cls(
            id=uuid.uuid4(),
            type=data.type.value,
            street=data.street,
            city=data.city,
            postal_code=data.postal_code,
            country=data.country,
        )

    @property
    def full_address(self) -> str:
        parts = [self.street, self.city, self.postal_code, self.country]
        return ", ".join(part for part in parts if part)

    def to_view(self) -> AddressView:
        return AddressView(id=self.id, type=AddressType(self.type), full_address=self.full_address)

    def __repr__(self) -> str:
        return f"<Address(id={self.id}, employee_id={self.employee_id}, type={self.type})>"


class Employee(Base):
    """
    Employee aggregate root.

    ``external_account_id`` links the row to its identity provider account and
    is written once by the create saga. ``version`` is the optimistic lock
    column: SQLAlchemy adds ``WHERE version = :old`` to every UPDATE and raises
    ``StaleDataError`` when no row matches.
    """

    __tablename__ = "employees"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_account_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    account_name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EmployeeStatus.ACTIVE.value, index=True
    )
    started_work: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_work: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    termination_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    updated_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    addresses: Mapped[List[Address]] = relationship(
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by=Address.created_at,
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("status IN ('ACTIVE', 'TERMINATED')", name="valid_employee_status"),
        Index("idx_employees_last_name", "last_name"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_terminated(self) -> bool:
        return self.status == EmployeeStatus.TERMINATED.value

    def add_address(self, address: Address) -> None:
        self.addresses.append(address)

    def apply_update(self, request: UpdateEmployeeRequest, actor_id: uuid.UUID) -> None:
        """Copy the updatable profile fields onto the aggregate."""
        self.first_name = request.first_name
        self.last_name = request.last_name
        self.phone_number = request.phone_number
        self.account_name = request.account_name
        self.updated_by = actor_id

    def terminate(self, end_date: date, reason: str, actor_id: uuid.UUID) -> None:
        """
        End the employment.

        Args:
            end_date: Last working day
            reason: Termination reason
            actor_id: Who performed the termination

        Raises:
            InvalidStateError: If the employee is already terminated
            ValidationError: If the end date precedes the start date
        """
        if self.is_terminated:
            raise InvalidStateError(f"Employee {self.id} is already terminated.")

        if self.started_work is not None and end_date < self.started_work:
            raise ValidationError("End date cannot be before start date.")

        self.status = EmployeeStatus.TERMINATED.value
        self.end_work = end_date
        self.termination_reason = reason
        self.updated_by = actor_id

    def to_view(self) -> EmployeeView:
        return EmployeeView(
            id=self.id,
            full_name=self.full_name,
            email=self.email,
            account_name=self.account_name,
            status=EmployeeStatus(self.status),
            started_work=self.started_work,
            end_work=self.end_work,
            version=self.version,
            addresses=[address.to_view() for address in self.addresses],
        )

    def to_summary(self) -> EmployeeSummary:
        return EmployeeSummary(
            id=self.id,
            full_name=self.full_name,
            email=self.email,
            account_name=self.account_name,
            status=EmployeeStatus(self.status),
        )

    def __repr__(self) -> str:
        return (
            f"<Employee(id={self.id}, account_name={self.account_name}, "
            f"status={self.status}, version={self.version})>"
        )


class AuditRecord(Base):
    """
    Audit trail table.

    Append-only projection of consumed domain events. The event id is the
    primary key, so a redelivered event collides instead of duplicating.
    """

    __tablename__ = "audit_log"

    audit_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    entity_name: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_service: Mapped[str] = mapped_column(String(100), nullable=False)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[Any]] = mapped_column(JsonType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_audit_log_event_time", "event_time"),
        Index("idx_audit_log_entity", "entity_name", "entity_id"),
        Index("idx_audit_log_action", "action"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditRecord(audit_id={self.audit_id}, action={self.action}, "
            f"entity={self.entity_name}:{self.entity_id})>"
        )


class SagaJournalEntry(Base):
    """
    Durable record of a create saga.

    Written as STARTED before the identity provider is called and completed
    in the same transaction as the employee insert. Rows left in STARTED or
    COMPENSATION_FAILED point at provider accounts that need manual cleanup.
    """

    __tablename__ = "saga_journal"

    saga_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    saga_type: Mapped[str] = mapped_column(String(50), nullable=False)
    account_name: Mapped[str] = mapped_column(String(255), nullable=False)
    external_account_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('STARTED', 'COMPLETED', 'COMPENSATED', 'COMPENSATION_FAILED')",
            name="valid_saga_status",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<SagaJournalEntry(saga_id={self.saga_id}, type={self.saga_type}, "
            f"status={self.status})>"
        )
