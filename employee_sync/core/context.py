"""Explicit caller context passed through every saga call."""
import uuid
from dataclasses import dataclass, field
from typing import Optional

SYSTEM_ACTOR_ID = uuid.UUID("00000000-0000-0000-0000-000000000000")
UNKNOWN = "unknown"


@dataclass(frozen=True)
class RequestContext:
    """
    Who triggered a mutation and from where.

    Attributes:
        actor_id: Subject of the authenticated caller, or the system actor
        ip_address: Client address (first X-Forwarded-For hop when proxied)
        user_agent: Client user agent
        correlation_id: Request id propagated into emitted events
    """

    actor_id: uuid.UUID = SYSTEM_ACTOR_ID
    ip_address: str = UNKNOWN
    user_agent: str = UNKNOWN
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def system(cls, correlation_id: Optional[str] = None) -> "RequestContext":
        """Context for scheduler or background calls with no caller."""
        if correlation_id is None:
            return cls()
        return cls(correlation_id=correlation_id)

    @classmethod
    def from_request(
        cls,
        subject: Optional[str],
        remote_addr: Optional[str] = None,
        forwarded_for: Optional[str] = None,
        user_agent: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> "RequestContext":
        """
        Build a context from raw request attributes.

        A subject that is not a valid UUID falls back to the system actor.
        """
        try:
            actor_id = uuid.UUID(subject) if subject else SYSTEM_ACTOR_ID
        except ValueError:
            actor_id = SYSTEM_ACTOR_ID

        if forwarded_for:
            ip_address = forwarded_for.split(",")[0].strip()
        else:
            ip_address = remote_addr or UNKNOWN

        return cls(
            actor_id=actor_id,
            ip_address=ip_address,
            user_agent=user_agent or UNKNOWN,
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    @property
    def is_system(self) -> bool:
        return self.actor_id == SYSTEM_ACTOR_ID
