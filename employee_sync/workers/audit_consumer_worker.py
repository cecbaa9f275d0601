"""
Audit consumer worker.

Polls the employee events topic, settles every message through the retrying
dispatcher and commits the offset only after the message is settled. A
message that cannot be settled (its dead-letter publish failed) is left
uncommitted, sought back and polled again after a backoff, so the worker
keeps running through broker outages. Run several workers in the same
consumer group to scale out.
"""
import asyncio
import signal
from typing import Any, Awaitable, Callable, Optional, Protocol

import structlog

from employee_sync.config import Settings, get_settings
from employee_sync.core.consumer import IdempotentAuditConsumer
from employee_sync.core.retry import DeadLetterRouter, RetryingAuditDispatcher, RetryPolicy
from employee_sync.database import AuditStore, close_db, get_session_factory, init_db
from employee_sync.messaging.bus import BusMessage, EventBus
from employee_sync.messaging.kafka import ConsumerConfig, KafkaEventBus, KafkaMessageSource, ProducerConfig
from employee_sync.monitoring import metrics, setup_logging

logger = structlog.get_logger(__name__)


class MessageSource(Protocol):
    """Read side of the bus."""

    async def poll(self, timeout: float) -> Optional[BusMessage]:
        ...

    async def commit(self) -> None:
        ...

    async def seek(self, message: BusMessage) -> None:
        ...

    def close(self) -> None:
        ...


class AuditConsumerWorker:
    """Poll → dispatch → commit loop."""

    def __init__(
        self,
        source: MessageSource,
        dispatcher: RetryingAuditDispatcher,
        poll_timeout: float = 1.0,
        redelivery_backoff: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.source = source
        self.dispatcher = dispatcher
        self.poll_timeout = poll_timeout
        self.redelivery_backoff = redelivery_backoff
        self.sleep = sleep
        self._running = False
        self.processed = 0

    def stop(self) -> None:
        logger.info("audit_worker_stopping")
        self._running = False

    async def run_once(self) -> bool:
        """
        Process at most one message.

        Returns:
            bool: True if a message was settled and its offset committed
        """
        message = await self.source.poll(self.poll_timeout)
        if message is None:
            return False

        try:
            outcome = await self.dispatcher.dispatch(message)
        except Exception as e:
            metrics.audit_redeliveries_total.inc()
            logger.error(
                "audit_message_unsettled",
                topic=message.topic,
                partition=message.partition,
                offset=message.offset,
                error=str(e),
                error_type=type(e).__name__,
                backoff_seconds=self.redelivery_backoff,
            )
            await self.source.seek(message)
            await self.sleep(self.redelivery_backoff)
            return False

        await self.source.commit()
        self.processed += 1
        logger.debug(
            "audit_message_settled",
            outcome=outcome.value,
            topic=message.topic,
            partition=message.partition,
            offset=message.offset,
        )
        return True

    async def run(self, max_messages: Optional[int] = None) -> None:
        """Run until stopped or ``max_messages`` have been settled."""
        self._running = True
        logger.info("audit_worker_started")
        try:
            while self._running:
                await self.run_once()
                if max_messages is not None and self.processed >= max_messages:
                    break
        finally:
            self.source.close()
            logger.info("audit_worker_stopped", processed=self.processed)


def build_worker(settings: Settings, source: MessageSource, bus: EventBus) -> AuditConsumerWorker:
    """Wire a worker reading from ``source`` and dead-lettering through ``bus``."""
    dispatcher = RetryingAuditDispatcher(
        consumer=IdempotentAuditConsumer(AuditStore(get_session_factory())),
        router=DeadLetterRouter(bus),
        policy=RetryPolicy.from_settings(settings),
    )
    return AuditConsumerWorker(
        source,
        dispatcher,
        poll_timeout=settings.consumer_poll_timeout_seconds,
        redelivery_backoff=settings.consumer_redelivery_backoff_seconds,
    )


async def _serve() -> None:
    settings = get_settings()
    setup_logging(settings)
    logger.info(
        "audit_worker_configuring",
        topic=settings.employee_events_topic,
        group_id=settings.audit_consumer_group,
        dead_letter_topic=settings.dead_letter_topic,
    )

    await init_db()
    bus = KafkaEventBus(ProducerConfig.from_settings(settings))
    source = KafkaMessageSource(ConsumerConfig.from_settings(settings))
    worker = build_worker(settings, source, bus)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.run()
    finally:
        bus.close()
        await close_db()


def main() -> None:
    """Console entry point."""
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
