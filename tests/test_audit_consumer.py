"""
Tests for the idempotent audit consumer and its retry / dead-letter policy.
"""
import json
import uuid
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from conftest import SleepRecorder, count_rows, make_message, sample_envelope
from employee_sync.config import Settings
from employee_sync.core.consumer import ConsumeOutcome, IdempotentAuditConsumer
from employee_sync.core.exceptions import IntegrityViolationError, MalformedPayloadError
from employee_sync.core.retry import (
    HEADER_ATTEMPTS,
    HEADER_EXCEPTION_MESSAGE,
    HEADER_EXCEPTION_TYPE,
    HEADER_ORIGINAL_OFFSET,
    HEADER_ORIGINAL_PARTITION,
    HEADER_ORIGINAL_TOPIC,
    DeadLetterRouter,
    RetryingAuditDispatcher,
    RetryPolicy,
)
from employee_sync.database.models import AuditRecord
from employee_sync.database.repositories import AuditStore
from employee_sync.messaging.bus import InMemoryEventBus


def store_outage() -> OperationalError:
    return OperationalError("INSERT INTO audit_log", {}, Exception("connection refused"))


@pytest.fixture
def audit_store(session_factory) -> AuditStore:
    return AuditStore(session_factory)


@pytest.fixture
def policy(test_settings: Settings, sleep_recorder: SleepRecorder) -> RetryPolicy:
    return RetryPolicy.from_settings(test_settings, sleep=sleep_recorder)


def build_dispatcher(store, bus: InMemoryEventBus, policy: RetryPolicy) -> RetryingAuditDispatcher:
    return RetryingAuditDispatcher(
        consumer=IdempotentAuditConsumer(store),
        router=DeadLetterRouter(bus),
        policy=policy,
    )


class TestIdempotentAuditConsumer:
    """Test suite for IdempotentAuditConsumer."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inserts_record_keyed_by_event_id(self, audit_store: AuditStore) -> None:
        """Test a valid event becomes one audit record."""
        envelope = sample_envelope()
        consumer = IdempotentAuditConsumer(audit_store)

        outcome = await consumer.handle(make_message(envelope))

        assert outcome == ConsumeOutcome.INSERTED
        record = await audit_store.get(uuid.UUID(envelope["eventId"]))
        assert record.action == "CREATE"
        assert record.entity_name == "EMPLOYEE"
        assert record.entity_id == uuid.UUID(envelope["entityId"])
        assert record.actor_id == envelope["actorId"]
        assert record.correlation_id == "corr-test-1"
        assert record.payload == {"fullName": "Jana Novak"}
        assert record.ip_address == "203.0.113.7"
        assert record.created_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_event_is_skipped(self, audit_store: AuditStore, session_factory) -> None:
        """Test redelivery of the same event id yields one record and no error."""
        consumer = IdempotentAuditConsumer(audit_store)
        message = make_message(sample_envelope())

        first = await consumer.handle(message)
        second = await consumer.handle(message)

        assert first == ConsumeOutcome.INSERTED
        assert second == ConsumeOutcome.SKIPPED_DUPLICATE
        assert await count_rows(session_factory, AuditRecord) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_fields_are_ignored(self, audit_store: AuditStore) -> None:
        """Test producers may add envelope fields."""
        consumer = IdempotentAuditConsumer(audit_store)
        envelope = sample_envelope(schemaVersion=2, tenant="acme")

        assert await consumer.handle(make_message(envelope)) == ConsumeOutcome.INSERTED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_payload_is_stored_as_null(self, audit_store: AuditStore) -> None:
        envelope = sample_envelope(payload=None)
        consumer = IdempotentAuditConsumer(audit_store)

        await consumer.handle(make_message(envelope))

        record = await audit_store.get(uuid.UUID(envelope["eventId"]))
        assert record.payload is None

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "value",
        [
            b"not json at all",
            b"",
            json.dumps({"eventId": str(uuid.uuid4()), "action": "CREATE"}).encode("utf-8"),
            json.dumps(sample_envelope(eventId="not-a-uuid")).encode("utf-8"),
        ],
    )
    def test_malformed_messages_are_rejected(self, value: bytes) -> None:
        """Test structural failures raise MalformedPayloadError."""
        with pytest.raises(MalformedPayloadError):
            IdempotentAuditConsumer.deserialize(make_message(value))


class TestRetryingAuditDispatcher:
    """Test suite for retry and dead-letter routing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_message_is_inserted_without_retries(
        self,
        audit_store: AuditStore,
        bus: InMemoryEventBus,
        policy: RetryPolicy,
        sleep_recorder: SleepRecorder,
    ) -> None:
        dispatcher = build_dispatcher(audit_store, bus, policy)

        outcome = await dispatcher.dispatch(make_message(sample_envelope()))

        assert outcome == ConsumeOutcome.INSERTED
        assert sleep_recorder.delays == []
        assert bus.messages("employee-events.DLT") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_payload_is_dead_lettered_without_retries(
        self,
        audit_store: AuditStore,
        bus: InMemoryEventBus,
        policy: RetryPolicy,
        sleep_recorder: SleepRecorder,
    ) -> None:
        """Test a poison message goes straight to the dead-letter topic."""
        dispatcher = build_dispatcher(audit_store, bus, policy)
        message = make_message(b"{broken", key="evt-1", partition=2, offset=41)

        outcome = await dispatcher.dispatch(message)

        assert outcome == ConsumeOutcome.ROUTED_TO_DLQ
        assert sleep_recorder.delays == []

        dead = bus.messages("employee-events.DLT")
        assert len(dead) == 1
        assert dead[0].key == "evt-1"
        assert dead[0].value == b"{broken"
        assert dead[0].header(HEADER_ORIGINAL_TOPIC) == "employee-events"
        assert dead[0].header(HEADER_ORIGINAL_PARTITION) == "2"
        assert dead[0].header(HEADER_ORIGINAL_OFFSET) == "41"
        assert dead[0].header(HEADER_EXCEPTION_TYPE).endswith("MalformedPayloadError")
        assert dead[0].header(HEADER_EXCEPTION_MESSAGE)
        assert dead[0].header(HEADER_ATTEMPTS) == "1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_store_outage_retries_three_times_then_dead_letters(
        self, bus: InMemoryEventBus, policy: RetryPolicy, sleep_recorder: SleepRecorder
    ) -> None:
        """Test transient failures back off 1, 2, 4 and dead-letter on the 4th attempt."""
        store = AsyncMock(spec=AuditStore)
        store.insert.side_effect = store_outage()
        dispatcher = build_dispatcher(store, bus, policy)

        outcome = await dispatcher.dispatch(make_message(sample_envelope()))

        assert outcome == ConsumeOutcome.ROUTED_TO_DLQ
        assert store.insert.await_count == 4
        assert sleep_recorder.delays == [1, 2, 4]

        dead = bus.messages("employee-events.DLT")
        assert len(dead) == 1
        assert dead[0].header(HEADER_ATTEMPTS) == "4"
        assert dead[0].header(HEADER_EXCEPTION_TYPE).endswith("OperationalError")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_failure_then_success(
        self, bus: InMemoryEventBus, policy: RetryPolicy, sleep_recorder: SleepRecorder
    ) -> None:
        """Test a message that succeeds on retry is not dead-lettered."""
        store = AsyncMock(spec=AuditStore)
        store.insert.side_effect = [store_outage(), True]
        dispatcher = build_dispatcher(store, bus, policy)

        outcome = await dispatcher.dispatch(make_message(sample_envelope()))

        assert outcome == ConsumeOutcome.INSERTED
        assert sleep_recorder.delays == [1]
        assert bus.messages("employee-events.DLT") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_integrity_violation_is_not_retried(
        self, bus: InMemoryEventBus, policy: RetryPolicy, sleep_recorder: SleepRecorder
    ) -> None:
        """Test non-key constraint failures are dead-lettered immediately."""
        store = AsyncMock(spec=AuditStore)
        store.insert.side_effect = IntegrityViolationError("value too long")
        dispatcher = build_dispatcher(store, bus, policy)

        outcome = await dispatcher.dispatch(make_message(sample_envelope()))

        assert outcome == ConsumeOutcome.ROUTED_TO_DLQ
        assert store.insert.await_count == 1
        assert sleep_recorder.delays == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_is_acknowledged_not_dead_lettered(
        self,
        audit_store: AuditStore,
        bus: InMemoryEventBus,
        policy: RetryPolicy,
        session_factory,
    ) -> None:
        dispatcher = build_dispatcher(audit_store, bus, policy)
        message = make_message(sample_envelope())

        assert await dispatcher.dispatch(message) == ConsumeOutcome.INSERTED
        assert await dispatcher.dispatch(message) == ConsumeOutcome.SKIPPED_DUPLICATE
        assert await count_rows(session_factory, AuditRecord) == 1
        assert bus.messages("employee-events.DLT") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dead_letter_publish_failure_propagates(
        self, audit_store: AuditStore, bus: InMemoryEventBus, policy: RetryPolicy
    ) -> None:
        """Test the offset must not be committed when the dead-letter send fails."""
        dispatcher = build_dispatcher(audit_store, bus, policy)
        bus.fail_with = RuntimeError("broker unavailable")

        with pytest.raises(RuntimeError, match="broker unavailable"):
            await dispatcher.dispatch(make_message(b"{broken"))


class TestRetryPolicy:
    """Test suite for RetryPolicy configuration."""

    @pytest.mark.unit
    def test_defaults_from_settings(self, test_settings: Settings) -> None:
        policy = RetryPolicy.from_settings(test_settings)

        assert policy.max_attempts == 4
        assert policy.delays() == [1, 2, 4]
        assert test_settings.dead_letter_topic == "employee-events.DLT"

    @pytest.mark.unit
    def test_non_retryable_errors(self) -> None:
        assert RetryPolicy.is_retryable(MalformedPayloadError("bad")) is False
        assert RetryPolicy.is_retryable(IntegrityViolationError("bad")) is False
        assert RetryPolicy.is_retryable(store_outage()) is True
        assert RetryPolicy.is_retryable(RuntimeError("boom")) is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_zero_retries_dead_letters_first_failure(
        self, bus: InMemoryEventBus, sleep_recorder: SleepRecorder
    ) -> None:
        store = AsyncMock(spec=AuditStore)
        store.insert.side_effect = store_outage()
        policy = RetryPolicy(max_retries=0, sleep=sleep_recorder)

        outcome = await build_dispatcher(store, bus, policy).dispatch(make_message(sample_envelope()))

        assert outcome == ConsumeOutcome.ROUTED_TO_DLQ
        assert store.insert.await_count == 1
        assert sleep_recorder.delays == []
