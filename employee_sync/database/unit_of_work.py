"""
Unit of work over one AsyncSession.

The unit of work owns the transaction and the events deferred while it is
open. ``commit()`` never raises: it returns a ``CommitOutcome`` that the
publisher uses to decide whether the deferred events go out.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from employee_sync.core.events import DomainEvent
from employee_sync.core.exceptions import ConcurrencyError, PersistenceError
from employee_sync.database.repositories import EmployeeRepository, SagaJournal

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CommitOutcome:
    """Result of a commit attempt and the events deferred during it."""

    committed: bool
    events: Tuple[DomainEvent, ...] = field(default_factory=tuple)
    error: Optional[PersistenceError] = None

    def raise_for_error(self) -> None:
        """Re-raise the persistence error of a failed commit."""
        if self.error is not None:
            raise self.error


class UnitOfWork:
    """
    Async context manager holding one session and its repositories.

    Leaving the block without committing rolls back and discards any
    deferred events.

    Example:
        async with UnitOfWork(session_factory) as uow:
            uow.employees.add(employee)
            uow.defer(event)
            outcome = await uow.commit()
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.session: Optional[AsyncSession] = None
        self._pending_events: List[DomainEvent] = []
        self._finished = False

    async def __aenter__(self) -> "UnitOfWork":
        self.session = self.session_factory()
        self.employees = EmployeeRepository(self.session)
        self.saga_journal = SagaJournal(self.session)
        self._pending_events = []
        self._finished = False
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if not self._finished:
                await self.rollback()
        finally:
            await self.session.close()

    @property
    def in_transaction(self) -> bool:
        """True while the unit of work is open and not yet settled."""
        return self.session is not None and not self._finished

    @property
    def pending_events(self) -> Tuple[DomainEvent, ...]:
        return tuple(self._pending_events)

    def defer(self, event: DomainEvent) -> None:
        """Hold an event until this unit of work commits."""
        if not self.in_transaction:
            raise RuntimeError("Cannot defer an event outside an open unit of work")
        self._pending_events.append(event)

    async def flush(self) -> None:
        """
        Flush pending changes so generated values (version, timestamps) are set.

        Raises:
            ConcurrencyError: An UPDATE matched no row at the loaded version
            PersistenceError: The store rejected the write
        """
        try:
            await self.session.flush()
        except StaleDataError as e:
            await self.rollback()
            raise ConcurrencyError("Record was modified by another transaction", original_error=e) from e
        except SQLAlchemyError as e:
            await self.rollback()
            raise PersistenceError(f"Local store rejected the write: {e}", original_error=e) from e

    async def commit(self) -> CommitOutcome:
        """
        Commit the transaction.

        Returns:
            CommitOutcome: committed=True with the deferred events, or
                committed=False with the mapped persistence error
        """
        events = tuple(self._pending_events)
        self._pending_events.clear()
        self._finished = True

        try:
            await self.session.commit()
        except StaleDataError as e:
            await self.session.rollback()
            logger.warning("unit_of_work_stale_version", error=str(e))
            return CommitOutcome(
                committed=False,
                events=events,
                error=ConcurrencyError(
                    "Record was modified by another transaction", original_error=e
                ),
            )
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("unit_of_work_commit_failed", error=str(e), error_type=type(e).__name__)
            return CommitOutcome(
                committed=False,
                events=events,
                error=PersistenceError(f"Local store rejected the write: {e}", original_error=e),
            )

        return CommitOutcome(committed=True, events=events)

    async def rollback(self) -> None:
        """Roll back and drop deferred events."""
        if self._pending_events:
            logger.info("unit_of_work_events_discarded", count=len(self._pending_events))
        self._pending_events.clear()
        self._finished = True
        await self.session.rollback()
