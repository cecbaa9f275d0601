"""Local store: models, repositories, unit of work and connection management."""
from employee_sync.database.connection import (
    close_db,
    create_engine_from_url,
    create_session_factory,
    get_engine,
    get_session_factory,
    init_db,
)
from employee_sync.database.models import (
    Address,
    AuditRecord,
    Base,
    Employee,
    SagaJournalEntry,
)
from employee_sync.database.repositories import (
    AuditStore,
    EmployeeRepository,
    SagaJournal,
    SagaStatus,
)
from employee_sync.database.unit_of_work import CommitOutcome, UnitOfWork

__all__ = [
    "Address",
    "AuditRecord",
    "AuditStore",
    "Base",
    "CommitOutcome",
    "Employee",
    "EmployeeRepository",
    "SagaJournal",
    "SagaJournalEntry",
    "SagaStatus",
    "UnitOfWork",
    "close_db",
    "create_engine_from_url",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "init_db",
]
