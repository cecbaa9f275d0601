"""
Event bus abstraction and an in-memory implementation.

The bus is at-least-once and ordered per partition. Messages carry a string
key, a byte value and optional byte headers, the same shape Kafka uses.
"""
import zlib
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import structlog

logger = structlog.get_logger(__name__)

Headers = Sequence[Tuple[str, bytes]]

DEAD_LETTER_SUFFIX = ".DLT"


def dead_letter_topic(topic: str) -> str:
    """Dead-letter topic paired with ``topic``."""
    return f"{topic}{DEAD_LETTER_SUFFIX}"


def partition_for(entity_key: str, partitions: int) -> int:
    """
    Pick a stable partition for an entity.

    All events of one entity land on the same partition, so they are
    consumed in the order they were published.
    """
    return zlib.crc32(entity_key.encode("utf-8")) % partitions


@dataclass(frozen=True)
class BusMessage:
    """A message as read from or written to the bus."""

    topic: str
    key: Optional[str]
    value: Optional[bytes]
    partition: Optional[int] = None
    offset: Optional[int] = None
    headers: Tuple[Tuple[str, bytes], ...] = field(default_factory=tuple)

    def header(self, name: str) -> Optional[str]:
        """Decoded value of the first header called ``name``."""
        for header_name, value in self.headers:
            if header_name == name:
                return value.decode("utf-8") if value is not None else None
        return None


class EventBus(Protocol):
    """Write side of the bus."""

    async def partition_count(self, topic: str) -> Optional[int]:
        """Number of partitions of ``topic``, or None if unknown."""
        ...

    async def send(
        self,
        topic: str,
        key: Optional[str],
        value: Optional[bytes],
        partition: Optional[int] = None,
        headers: Optional[Headers] = None,
    ) -> None:
        """Send one message and wait for the broker to acknowledge it."""
        ...


class InMemoryEventBus:
    """
    In-process bus for tests and local runs.

    Keeps every sent message per topic, assigns per-partition offsets, and
    can be told to fail the next sends.
    """

    def __init__(self, partitions: int = 3):
        self.partitions = partitions
        self._topics: Dict[str, List[BusMessage]] = defaultdict(list)
        self._next_offset: Dict[Tuple[str, int], int] = defaultdict(int)
        self.fail_with: Optional[Exception] = None

    async def partition_count(self, topic: str) -> Optional[int]:
        return self.partitions

    async def send(
        self,
        topic: str,
        key: Optional[str],
        value: Optional[bytes],
        partition: Optional[int] = None,
        headers: Optional[Headers] = None,
    ) -> None:
        if self.fail_with is not None:
            raise self.fail_with

        if partition is None:
            partition = partition_for(key or "", self.partitions)

        offset = self._next_offset[(topic, partition)]
        self._next_offset[(topic, partition)] += 1

        message = BusMessage(
            topic=topic,
            key=key,
            value=value,
            partition=partition,
            offset=offset,
            headers=tuple(headers or ()),
        )
        self._topics[topic].append(message)
        logger.debug("in_memory_message_sent", topic=topic, key=key, partition=partition, offset=offset)

    def messages(self, topic: str) -> List[BusMessage]:
        """All messages sent to ``topic`` in send order."""
        return list(self._topics.get(topic, []))

    def clear(self) -> None:
        self._topics.clear()
        self._next_offset.clear()
