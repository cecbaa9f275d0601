"""
Prometheus metrics for employee sync monitoring.

Tracks:
- Saga outcomes and durations
- Compensation attempts
- Events published after commit
- Audit consumer outcomes, retries, dead letters and redeliveries
- Identity provider calls
"""
from prometheus_client import Counter, Histogram

# Saga metrics
saga_executions_total = Counter(
    "saga_executions_total",
    "Total saga executions",
    ["saga_type", "status"],  # status: completed, failed, compensated
)

saga_duration_seconds = Histogram(
    "saga_duration_seconds",
    "Saga duration in seconds",
    ["saga_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

compensations_total = Counter(
    "saga_compensations_total",
    "Total compensating actions",
    ["saga_type", "result"],  # result: succeeded, failed
)

# Publisher metrics
events_published_total = Counter(
    "employee_events_published_total",
    "Total domain events handed to the bus",
    ["action", "status"],  # status: sent, failed, discarded
)

# Consumer metrics
audit_messages_total = Counter(
    "audit_messages_total",
    "Total audit messages settled by the consumer",
    ["outcome"],  # inserted, skipped_duplicate, routed_to_dlq
)

audit_retries_total = Counter(
    "audit_retries_total",
    "Total audit message retry attempts",
)

dead_letters_total = Counter(
    "audit_dead_letters_total",
    "Total messages routed to the dead-letter topic",
    ["reason"],  # non_retryable, retries_exhausted
)

audit_redeliveries_total = Counter(
    "audit_redeliveries_total",
    "Total messages left uncommitted and sought back for redelivery",
)

audit_processing_duration_seconds = Histogram(
    "audit_processing_duration_seconds",
    "Audit message processing duration in seconds",
    buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0),
)

# Identity provider metrics
identity_provider_requests_total = Counter(
    "identity_provider_requests_total",
    "Total identity provider requests",
    ["operation", "status"],  # status: success, conflict, not_found, bad_request, transport_error
)
