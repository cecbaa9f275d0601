"""
Commit-gated event publishing.

Events raised inside an open unit of work are held until the transaction
commits. If the commit fails they are dropped. A bus failure after a
successful commit is logged and counted and never undoes the local write.
"""
from typing import Optional

import structlog

from employee_sync.core.events import DomainEvent
from employee_sync.database.unit_of_work import CommitOutcome, UnitOfWork
from employee_sync.messaging.bus import EventBus, partition_for
from employee_sync.monitoring import metrics

logger = structlog.get_logger(__name__)


class CommitGatedPublisher:
    """Sends domain events to the bus only after their local mutation is durable."""

    def __init__(self, bus: EventBus, topic: str):
        """
        Initialize publisher.

        Args:
            bus: Event bus to send to
            topic: Topic carrying the domain events
        """
        self.bus = bus
        self.topic = topic

    async def publish(self, event: DomainEvent, unit_of_work: Optional[UnitOfWork] = None) -> bool:
        """
        Publish an event.

        Args:
            event: Event to publish
            unit_of_work: Open unit of work to defer the event onto; the event
                is sent immediately when None or not in a transaction

        Returns:
            bool: True if the event was sent now, False if deferred or failed
        """
        if unit_of_work is not None and unit_of_work.in_transaction:
            unit_of_work.defer(event)
            logger.debug("event_deferred_until_commit", event_id=str(event.event_id), action=event.action)
            return False

        return await self._send(event)

    async def publish_committed(self, outcome: CommitOutcome) -> int:
        """
        Send the events deferred on a unit of work once its commit is known.

        Args:
            outcome: Result of ``UnitOfWork.commit()``

        Returns:
            int: Number of events delivered to the bus
        """
        if not outcome.committed:
            for event in outcome.events:
                metrics.events_published_total.labels(action=event.action, status="discarded").inc()
            if outcome.events:
                logger.info(
                    "events_discarded_after_rollback",
                    count=len(outcome.events),
                    error=str(outcome.error),
                )
            return 0

        sent = 0
        for event in outcome.events:
            if await self._send(event):
                sent += 1
        return sent

    async def _send(self, event: DomainEvent) -> bool:
        try:
            partitions = await self.bus.partition_count(self.topic)
            partition = partition_for(str(event.entity_id), partitions) if partitions else None
            await self.bus.send(
                self.topic,
                key=event.key,
                value=event.to_wire(),
                partition=partition,
            )
        except Exception as e:
            # Local state is already committed; the event is lost to the bus
            metrics.events_published_total.labels(action=event.action, status="failed").inc()
            logger.error(
                "event_publish_failed",
                event_id=str(event.event_id),
                action=event.action,
                entity_id=str(event.entity_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        metrics.events_published_total.labels(action=event.action, status="sent").inc()
        logger.info(
            "event_published",
            event_id=str(event.event_id),
            action=event.action,
            entity_id=str(event.entity_id),
            topic=self.topic,
            partition=partition,
        )
        return True
