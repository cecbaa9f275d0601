"""
Error taxonomy for employee sagas and the audit consumer.

Every operation raises one of a closed set of error kinds so callers can
handle each case explicitly instead of catching ``Exception``.
"""
from typing import Optional


class EmployeeSyncError(Exception):
    """Base exception for all employee sync errors."""

    pass


class ValidationError(EmployeeSyncError):
    """Raised when local field or date checks fail."""

    pass


class AlreadyExistsError(EmployeeSyncError):
    """Raised when an employee with the same unique attribute already exists."""

    pass


class NotFoundError(EmployeeSyncError):
    """Raised when the requested employee does not exist."""

    pass


class InvalidStateError(EmployeeSyncError):
    """Raised when a lifecycle transition is not allowed from the current state."""

    pass


class PersistenceError(EmployeeSyncError):
    """Raised when the local store rejects or fails a write."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        """
        Initialize persistence error.

        Args:
            message: Error message
            original_error: Underlying database exception
        """
        super().__init__(message)
        self.original_error = original_error


class ConcurrencyError(PersistenceError):
    """Raised when an optimistic version check detects a lost update."""

    pass


class ExternalProviderError(EmployeeSyncError):
    """Base exception for identity provider failures."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize provider error.

        Args:
            message: Error message
            status_code: HTTP status returned by the provider, if any
            original_error: Underlying transport exception
        """
        super().__init__(message)
        self.status_code = status_code
        self.original_error = original_error


class ProviderConflictError(ExternalProviderError, AlreadyExistsError):
    """Provider reported the account already exists (HTTP 409)."""

    pass


class ProviderNotFoundError(ExternalProviderError, NotFoundError):
    """Provider has no such account or group (HTTP 404, or no group by that name)."""

    pass


class ProviderBadRequestError(ExternalProviderError):
    """Provider rejected the request as invalid (HTTP 400)."""

    pass


class ProviderTransportError(ExternalProviderError):
    """Provider unreachable or answered with an unexpected status."""

    pass


class CompensationFailure(EmployeeSyncError):
    """
    A compensating action failed.

    Never raised in place of the error that triggered compensation; it is
    logged at critical level and journaled for out-of-band remediation.
    """

    def __init__(self, saga_type: str, account_id: str, original_error: Exception):
        super().__init__(
            f"Compensation of {saga_type} saga failed for account {account_id}: {original_error}"
        )
        self.saga_type = saga_type
        self.account_id = account_id
        self.original_error = original_error


class MalformedPayloadError(EmployeeSyncError):
    """Consumed message could not be deserialized into an audit event."""

    pass


class IntegrityViolationError(EmployeeSyncError):
    """Audit insert broke a constraint other than the event id primary key."""

    pass
