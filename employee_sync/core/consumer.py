"""
Idempotent audit consumer.

Turns each bus message into an audit record keyed by the event id. The
store's primary key is the dedup check: a second delivery of the same event
collides and is acknowledged as already processed.
"""
import json
from datetime import datetime, timezone
from enum import Enum

import pydantic
import structlog

from employee_sync.core.events import AuditEventEnvelope
from employee_sync.core.exceptions import MalformedPayloadError
from employee_sync.database.models import AuditRecord
from employee_sync.database.repositories import AuditStore
from employee_sync.messaging.bus import BusMessage

logger = structlog.get_logger(__name__)


class ConsumeOutcome(str, Enum):
    """Terminal state of one consumed message."""

    INSERTED = "INSERTED"
    SKIPPED_DUPLICATE = "SKIPPED_DUPLICATE"
    ROUTED_TO_DLQ = "ROUTED_TO_DLQ"


class IdempotentAuditConsumer:
    """Deserializes, dedups and stores audit events. Safe to call repeatedly."""

    def __init__(self, store: AuditStore):
        self.store = store

    @staticmethod
    def deserialize(message: BusMessage) -> AuditEventEnvelope:
        """
        Parse the message value into an envelope.

        Raises:
            MalformedPayloadError: Empty value, invalid JSON or missing fields
        """
        if not message.value:
            raise MalformedPayloadError(
                f"Empty message at {message.topic}[{message.partition}]@{message.offset}"
            )
        try:
            return AuditEventEnvelope.from_wire(message.value)
        except pydantic.ValidationError as e:
            raise MalformedPayloadError(f"Cannot deserialize audit event: {e}") from e

    @staticmethod
    def to_record(envelope: AuditEventEnvelope) -> AuditRecord:
        payload = envelope.payload
        if payload is not None:
            try:
                json.dumps(payload)
            except (TypeError, ValueError) as e:
                logger.warning(
                    "audit_payload_not_serializable",
                    event_id=str(envelope.event_id),
                    error=str(e),
                )
                payload = None

        return AuditRecord(
            audit_id=envelope.event_id,
            event_time=envelope.event_time or datetime.now(timezone.utc),
            actor_id=envelope.actor_id,
            entity_name=envelope.entity_name,
            entity_id=envelope.entity_id,
            action=envelope.action,
            message=envelope.message,
            source_service=envelope.source_service,
            correlation_id=envelope.correlation_id,
            payload=payload,
            ip_address=envelope.ip_address,
            user_agent=envelope.user_agent,
        )

    async def handle(self, message: BusMessage) -> ConsumeOutcome:
        """
        Process one message.

        Returns:
            ConsumeOutcome: INSERTED or SKIPPED_DUPLICATE

        Raises:
            MalformedPayloadError: The message cannot be parsed
            IntegrityViolationError: The record broke a non-key constraint
            Exception: Anything else from the store, left to the retry policy
        """
        envelope = self.deserialize(message)
        log = logger.bind(
            event_id=str(envelope.event_id),
            action=envelope.action,
            entity_name=envelope.entity_name,
            correlation_id=envelope.correlation_id,
        )

        inserted = await self.store.insert(self.to_record(envelope))
        if not inserted:
            log.info("audit_duplicate_skipped")
            return ConsumeOutcome.SKIPPED_DUPLICATE

        log.info("audit_record_inserted")
        return ConsumeOutcome.INSERTED
