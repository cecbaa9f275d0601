"""Event bus abstraction with in-memory and Kafka implementations."""
from employee_sync.messaging.bus import (
    BusMessage,
    EventBus,
    InMemoryEventBus,
    dead_letter_topic,
    partition_for,
)

__all__ = [
    "BusMessage",
    "EventBus",
    "InMemoryEventBus",
    "dead_letter_topic",
    "partition_for",
]
