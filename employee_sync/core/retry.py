"""
Retry and dead-letter policy for the audit consumer.

Retryable failures are retried with exponential backoff (1, 2, 4 ... with
the default settings). Malformed payloads and integrity violations are
dead-lettered on the first failure. A dead-lettered message keeps its key
and value and gains headers describing where it came from and why it failed.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from employee_sync.config import Settings, get_settings
from employee_sync.core.consumer import ConsumeOutcome, IdempotentAuditConsumer
from employee_sync.core.exceptions import IntegrityViolationError, MalformedPayloadError
from employee_sync.messaging.bus import BusMessage, EventBus, dead_letter_topic
from employee_sync.monitoring import metrics

logger = structlog.get_logger(__name__)

NON_RETRYABLE = (MalformedPayloadError, IntegrityViolationError)

# Header names on dead-lettered messages
HEADER_ORIGINAL_TOPIC = "dlt-original-topic"
HEADER_ORIGINAL_PARTITION = "dlt-original-partition"
HEADER_ORIGINAL_OFFSET = "dlt-original-offset"
HEADER_EXCEPTION_TYPE = "dlt-exception-fqcn"
HEADER_EXCEPTION_MESSAGE = "dlt-exception-message"
HEADER_ATTEMPTS = "dlt-attempts"


class RetryPolicy:
    """
    Exponential backoff with a bounded number of retries.

    Attributes:
        initial_delay: Delay before the first retry (seconds)
        multiplier: Factor applied to each following delay
        max_retries: Retries after the first attempt
        sleep: Coroutine used to wait between attempts
    """

    def __init__(
        self,
        initial_delay: float = 1.0,
        multiplier: float = 2.0,
        max_retries: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.max_retries = max_retries
        self.sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            initial_delay=settings.retry_initial_delay_seconds,
            multiplier=settings.retry_multiplier,
            max_retries=settings.retry_max_retries,
            sleep=sleep,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        return not isinstance(error, NON_RETRYABLE)

    def delays(self) -> List[float]:
        """Delays between attempts, in order."""
        return [self.initial_delay * self.multiplier ** i for i in range(self.max_retries)]

    @staticmethod
    def _before_sleep(retry_state: RetryCallState) -> None:
        metrics.audit_retries_total.inc()
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "audit_message_retrying",
            attempt=retry_state.attempt_number,
            delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(error),
            error_type=type(error).__name__,
        )

    def retrying(self) -> AsyncRetrying:
        """Build a tenacity controller for one message."""
        return AsyncRetrying(
            retry=retry_if_exception(self.is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.initial_delay, exp_base=self.multiplier),
            sleep=self.sleep,
            before_sleep=self._before_sleep,
            reraise=True,
        )


class DeadLetterRouter:
    """Publishes failed messages to ``<topic>.DLT``."""

    def __init__(self, bus: EventBus):
        self.bus = bus

    @staticmethod
    def headers_for(message: BusMessage, error: BaseException, attempts: int) -> List[tuple]:
        error_type = type(error)
        return [
            (HEADER_ORIGINAL_TOPIC, message.topic.encode("utf-8")),
            (HEADER_ORIGINAL_PARTITION, str(message.partition).encode("utf-8")),
            (HEADER_ORIGINAL_OFFSET, str(message.offset).encode("utf-8")),
            (
                HEADER_EXCEPTION_TYPE,
                f"{error_type.__module__}.{error_type.__qualname__}".encode("utf-8"),
            ),
            (HEADER_EXCEPTION_MESSAGE, str(error).encode("utf-8")),
            (HEADER_ATTEMPTS, str(attempts).encode("utf-8")),
        ]

    async def route(self, message: BusMessage, error: BaseException, attempts: int) -> None:
        """
        Send a message to its dead-letter topic with the original key and value.

        Raises:
            Exception: If the bus rejects the message; the offset must then
                stay uncommitted so the message is redelivered
        """
        topic = dead_letter_topic(message.topic)
        try:
            await self.bus.send(
                topic,
                key=message.key,
                value=message.value,
                headers=self.headers_for(message, error, attempts),
            )
        except Exception as e:
            logger.error(
                "dead_letter_publish_failed",
                topic=topic,
                key=message.key,
                error=str(e),
            )
            raise


class RetryingAuditDispatcher:
    """
    Runs the audit consumer under the retry policy.

    Every message ends in exactly one outcome; a consumer failure is never
    raised to the caller. Only a failed dead-letter publish propagates.
    """

    def __init__(
        self,
        consumer: IdempotentAuditConsumer,
        router: DeadLetterRouter,
        policy: Optional[RetryPolicy] = None,
    ):
        self.consumer = consumer
        self.router = router
        self.policy = policy or RetryPolicy.from_settings()

    async def dispatch(self, message: BusMessage) -> ConsumeOutcome:
        """
        Settle one message.

        Returns:
            ConsumeOutcome: INSERTED, SKIPPED_DUPLICATE or ROUTED_TO_DLQ
        """
        started = time.perf_counter()
        attempts = 0
        try:
            async for attempt in self.policy.retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    outcome = await self.consumer.handle(message)
        except Exception as e:
            reason = "retries_exhausted" if self.policy.is_retryable(e) else "non_retryable"
            logger.error(
                "audit_message_dead_lettered",
                topic=message.topic,
                partition=message.partition,
                offset=message.offset,
                key=message.key,
                attempts=attempts,
                reason=reason,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.router.route(message, e, attempts)
            metrics.dead_letters_total.labels(reason=reason).inc()
            outcome = ConsumeOutcome.ROUTED_TO_DLQ
        finally:
            metrics.audit_processing_duration_seconds.observe(time.perf_counter() - started)

        metrics.audit_messages_total.labels(outcome=outcome.value.lower()).inc()
        return outcome
