"""Request and response schemas for employee sagas and audit queries."""
import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

T = TypeVar("T")


class EmployeeStatus(str, Enum):
    """Employee lifecycle status. TERMINATED is terminal."""

    ACTIVE = "ACTIVE"
    TERMINATED = "TERMINATED"


class AddressType(str, Enum):
    """Kind of postal address attached to an employee."""

    HOME = "HOME"
    MAILING = "MAILING"
    TEMPORARY = "TEMPORARY"
    WORK = "WORK"


class AddressInput(BaseModel):
    """Address supplied when creating an employee."""

    type: AddressType = AddressType.HOME
    street: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class CreateEmployeeRequest(BaseModel):
    """Profile fields for the create saga."""

    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3, max_length=255)
    phone_number: str
    account_name: str = Field(..., min_length=1, max_length=255)
    started_work: Optional[date] = None
    addresses: List[AddressInput] = Field(default_factory=list)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Reject obviously malformed addresses; the provider validates further."""
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("Invalid email address")
        return v.strip().lower()


class UpdateEmployeeRequest(BaseModel):
    """Fields the update saga writes to both the provider and the local store."""

    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone_number: str
    account_name: str = Field(..., min_length=1, max_length=255)


class TerminateEmployeeRequest(BaseModel):
    """End date and reason for the terminate saga."""

    end_work: date
    reason: str = Field(..., min_length=1)


class AddressView(BaseModel):
    """Address as returned to callers."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    type: AddressType
    full_address: str


class EmployeeView(BaseModel):
    """Employee detail returned by sagas and used as the CREATE event payload."""

    id: uuid.UUID
    full_name: str
    email: str
    account_name: str
    status: EmployeeStatus
    started_work: Optional[date] = None
    end_work: Optional[date] = None
    version: int
    addresses: List[AddressView] = Field(default_factory=list)


class EmployeeSummary(BaseModel):
    """Row of an employee listing."""

    id: uuid.UUID
    full_name: str
    email: str
    account_name: str
    status: EmployeeStatus


class EmployeeFilter(BaseModel):
    """Listing filter: exact status match and free-text search."""

    search: Optional[str] = None
    status: Optional[EmployeeStatus] = None


class AuditLogFilter(BaseModel):
    """Audit query filter: free-text search over action and entity name."""

    search: Optional[str] = None
    action: Optional[str] = None
    entity_name: Optional[str] = None
    entity_id: Optional[uuid.UUID] = None


class PageRequest(BaseModel):
    """Zero-based page request with ``"<field>,<asc|desc>"`` sort syntax."""

    page: int = Field(default=0, ge=0)
    size: Optional[int] = Field(default=None, ge=1)
    sort: Optional[str] = None


class Page(BaseModel, Generic[T]):
    """One page of results."""

    items: List[T]
    total: int
    page: int
    size: int

    @property
    def total_pages(self) -> int:
        if self.size <= 0:
            return 0
        return (self.total + self.size - 1) // self.size


class AuditRecordView(BaseModel):
    """Audit record as returned by the query surface."""

    model_config = ConfigDict(from_attributes=True)

    audit_id: uuid.UUID
    event_time: datetime
    actor_id: Optional[str] = None
    entity_name: str
    entity_id: Optional[uuid.UUID] = None
    action: str
    message: Optional[str] = None
    source_service: str
    correlation_id: Optional[str] = None
    payload: Any = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
