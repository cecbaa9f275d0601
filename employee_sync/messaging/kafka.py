"""
Kafka implementations of the bus using confluent-kafka.

Producer: idempotent, acks from all replicas, one flush per send so the
caller learns about delivery failures.
Consumer: manual offset commits after each message is settled, seek back
to a message that could not be settled.
"""
import asyncio
import concurrent.futures
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from confluent_kafka import Consumer, KafkaError, KafkaException, Message, Producer, TopicPartition

from employee_sync.config import Settings, get_settings
from employee_sync.messaging.bus import BusMessage, Headers

logger = structlog.get_logger(__name__)


@dataclass
class ProducerConfig:
    """
    Producer settings.

    Attributes:
        bootstrap_servers: Kafka broker addresses
        client_id: Client identifier
        acks: Acknowledgment level ('all' for durability)
        enable_idempotence: Enable idempotent producer
        retries: Broker-side send retries
        flush_timeout_seconds: How long one send waits for delivery
    """

    bootstrap_servers: str = "localhost:9092"
    client_id: str = "employee-sync"
    acks: str = "all"
    enable_idempotence: bool = True
    retries: int = 10
    flush_timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProducerConfig":
        return cls(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            client_id=settings.kafka_client_id,
        )

    def to_kafka_config(self) -> Dict[str, Any]:
        return {
            "bootstrap.servers": self.bootstrap_servers,
            "client.id": self.client_id,
            "acks": self.acks,
            "enable.idempotence": self.enable_idempotence,
            "retries": self.retries,
        }


class KafkaEventBus:
    """
    EventBus backed by a confluent-kafka Producer.

    Example:
        >>> bus = KafkaEventBus(ProducerConfig(bootstrap_servers="localhost:9092"))
        >>> await bus.send("employee-events", key="...", value=b"{...}")
        >>> bus.close()
    """

    def __init__(self, config: Optional[ProducerConfig] = None):
        self.config = config or ProducerConfig.from_settings(get_settings())
        self.producer = Producer(self.config.to_kafka_config())
        self._partition_counts: Dict[str, int] = {}
        logger.info("kafka_producer_initialized", bootstrap_servers=self.config.bootstrap_servers)

    async def partition_count(self, topic: str) -> Optional[int]:
        if topic not in self._partition_counts:
            metadata = await asyncio.to_thread(self.producer.list_topics, topic, 5.0)
            topic_metadata = metadata.topics.get(topic)
            if topic_metadata is None or topic_metadata.error is not None:
                return None
            self._partition_counts[topic] = len(topic_metadata.partitions)
        return self._partition_counts[topic]

    async def send(
        self,
        topic: str,
        key: Optional[str],
        value: Optional[bytes],
        partition: Optional[int] = None,
        headers: Optional[Headers] = None,
    ) -> None:
        """
        Produce one message and wait for its delivery report.

        Raises:
            KafkaException: If the broker rejects or never confirms the message
        """
        delivery: concurrent.futures.Future = concurrent.futures.Future()

        def _on_delivery(err: Optional[KafkaError], msg: Message) -> None:
            if err is not None:
                delivery.set_exception(KafkaException(err))
            else:
                delivery.set_result((msg.partition(), msg.offset()))

        kwargs: Dict[str, Any] = {
            "key": key,
            "value": value,
            "headers": list(headers or []),
            "on_delivery": _on_delivery,
        }
        if partition is not None:
            kwargs["partition"] = partition

        self.producer.produce(topic, **kwargs)
        self.producer.poll(0)
        await asyncio.to_thread(self.producer.flush, self.config.flush_timeout_seconds)

        if not delivery.done():
            raise KafkaException(
                KafkaError(KafkaError._MSG_TIMED_OUT, "Delivery not confirmed before flush timeout")
            )
        delivered_partition, delivered_offset = delivery.result()
        logger.debug(
            "kafka_message_delivered",
            topic=topic,
            key=key,
            partition=delivered_partition,
            offset=delivered_offset,
        )

    def close(self) -> None:
        remaining = self.producer.flush(self.config.flush_timeout_seconds)
        if remaining:
            logger.warning("kafka_producer_unflushed_messages", count=remaining)


@dataclass
class ConsumerConfig:
    """
    Consumer settings.

    Attributes:
        bootstrap_servers: Kafka broker addresses
        group_id: Consumer group ID
        topics: Topics to subscribe to
        client_id: Client identifier
        auto_offset_reset: Where to start reading (earliest/latest)
        session_timeout_ms: Session timeout
        max_poll_interval_ms: Max time between polls
    """

    bootstrap_servers: str = "localhost:9092"
    group_id: str = "audit-log-group-1"
    topics: Optional[List[str]] = None
    client_id: str = "employee-sync-audit"
    auto_offset_reset: str = "earliest"
    session_timeout_ms: int = 10000
    max_poll_interval_ms: int = 300000

    def __post_init__(self):
        if self.topics is None:
            self.topics = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConsumerConfig":
        return cls(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            group_id=settings.audit_consumer_group,
            topics=[settings.employee_events_topic],
            client_id=f"{settings.kafka_client_id}-audit",
        )

    def to_kafka_config(self) -> Dict[str, Any]:
        return {
            "bootstrap.servers": self.bootstrap_servers,
            "group.id": self.group_id,
            "client.id": self.client_id,
            "auto.offset.reset": self.auto_offset_reset,
            "enable.auto.commit": False,  # Offsets committed after each settled message
            "session.timeout.ms": self.session_timeout_ms,
            "max.poll.interval.ms": self.max_poll_interval_ms,
            "isolation.level": "read_committed",
        }


def to_bus_message(msg: Message) -> BusMessage:
    """Convert a confluent-kafka message into a BusMessage."""
    key = msg.key()
    return BusMessage(
        topic=msg.topic(),
        key=key.decode("utf-8") if isinstance(key, bytes) else key,
        value=msg.value(),
        partition=msg.partition(),
        offset=msg.offset(),
        headers=tuple(msg.headers() or ()),
    )


class KafkaMessageSource:
    """Polls a confluent-kafka Consumer and commits offsets on request."""

    def __init__(self, config: ConsumerConfig):
        self.config = config
        self.consumer = Consumer(config.to_kafka_config())
        self.consumer.subscribe(config.topics)
        self._last: Optional[Message] = None
        logger.info("kafka_consumer_subscribed", group_id=config.group_id, topics=config.topics)

    async def poll(self, timeout: float) -> Optional[BusMessage]:
        """
        Poll one message.

        Returns:
            BusMessage or None when nothing arrived or a partition EOF was hit

        Raises:
            KafkaException: On non-recoverable consumer errors
        """
        msg = await asyncio.to_thread(self.consumer.poll, timeout)
        if msg is None:
            return None
        if msg.error():
            if msg.error().code() == KafkaError._PARTITION_EOF:
                return None
            raise KafkaException(msg.error())
        self._last = msg
        return to_bus_message(msg)

    async def commit(self) -> None:
        """Synchronously commit the offset of the last polled message."""
        if self._last is not None:
            await asyncio.to_thread(self.consumer.commit, message=self._last, asynchronous=False)

    async def seek(self, message: BusMessage) -> None:
        """Rewind the message's partition so the next poll returns it again."""
        await asyncio.to_thread(
            self.consumer.seek,
            TopicPartition(message.topic, message.partition, message.offset),
        )

    def close(self) -> None:
        self.consumer.close()
