"""Core domain: caller context, events and error taxonomy."""
from employee_sync.core.context import SYSTEM_ACTOR_ID, RequestContext
from employee_sync.core.events import (
    EMPLOYEE_ENTITY,
    AuditEventEnvelope,
    DomainEvent,
    EmployeeAction,
)
from employee_sync.core.exceptions import (
    AlreadyExistsError,
    CompensationFailure,
    ConcurrencyError,
    EmployeeSyncError,
    ExternalProviderError,
    IntegrityViolationError,
    InvalidStateError,
    MalformedPayloadError,
    NotFoundError,
    PersistenceError,
    ProviderBadRequestError,
    ProviderConflictError,
    ProviderNotFoundError,
    ProviderTransportError,
    ValidationError,
)

__all__ = [
    "EMPLOYEE_ENTITY",
    "SYSTEM_ACTOR_ID",
    "AlreadyExistsError",
    "AuditEventEnvelope",
    "CompensationFailure",
    "ConcurrencyError",
    "DomainEvent",
    "EmployeeAction",
    "EmployeeSyncError",
    "ExternalProviderError",
    "IntegrityViolationError",
    "InvalidStateError",
    "MalformedPayloadError",
    "NotFoundError",
    "PersistenceError",
    "ProviderBadRequestError",
    "ProviderConflictError",
    "ProviderNotFoundError",
    "ProviderTransportError",
    "RequestContext",
    "ValidationError",
]
