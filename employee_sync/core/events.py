"""
Domain events emitted by employee sagas and their wire envelope.

Events are immutable facts. The same ``event_id`` is the bus message key and
the audit primary key, so a redelivered message can never create a second
audit row.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from employee_sync.core.context import RequestContext

EMPLOYEE_ENTITY = "EMPLOYEE"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmployeeAction(str, Enum):
    """Actions recorded for the employee entity."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    TERMINATE = "TERMINATE"


class DomainEvent(BaseModel):
    """
    Immutable record of a successful mutation.

    Serialized with camelCase keys (``eventId``, ``entityName`` ...) to match
    the envelope other services on the bus already read.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_time: datetime = Field(default_factory=utcnow)
    actor_id: uuid.UUID
    entity_name: str
    entity_id: uuid.UUID
    action: str
    source_service: str
    correlation_id: Optional[str] = None
    payload: Any = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def for_employee(
        cls,
        employee_id: uuid.UUID,
        action: EmployeeAction,
        payload: Any,
        context: RequestContext,
        source_service: str,
        message: Optional[str] = None,
    ) -> DomainEvent:
        """Build an employee event stamped with the caller's context."""
        return cls(
            actor_id=context.actor_id,
            entity_name=EMPLOYEE_ENTITY,
            entity_id=employee_id,
            action=action.value,
            source_service=source_service,
            correlation_id=context.correlation_id,
            payload=payload,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            message=message,
        )

    @property
    def key(self) -> str:
        """Bus message key."""
        return str(self.event_id)

    def to_wire(self) -> bytes:
        """Serialize to the JSON envelope sent on the bus."""
        return self.model_dump_json(by_alias=True).encode("utf-8")


class AuditEventEnvelope(BaseModel):
    """
    Reader-side view of the bus envelope.

    Unknown fields are ignored so producers can add fields without breaking
    the audit consumer.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    event_id: uuid.UUID
    event_time: Optional[datetime] = None
    actor_id: Optional[str] = None
    entity_name: str = Field(min_length=1, max_length=100)
    entity_id: Optional[uuid.UUID] = None
    action: str = Field(min_length=1, max_length=100)
    source_service: str = Field(min_length=1, max_length=100)
    correlation_id: Optional[str] = None
    payload: Any = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    message: Optional[str] = None

    @field_validator("actor_id", "correlation_id", mode="before")
    @classmethod
    def stringify_ids(cls, v: Any) -> Any:
        """Actor and correlation ids may arrive as UUIDs or plain strings."""
        if isinstance(v, uuid.UUID):
            return str(v)
        return v

    @classmethod
    def from_wire(cls, raw: bytes | str) -> AuditEventEnvelope:
        """Parse the JSON envelope; raises pydantic ValidationError on bad input."""
        return cls.model_validate_json(raw)
