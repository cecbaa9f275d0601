"""
Tests for the JSON logging setup.
"""
import io
import json
import logging
from typing import Any, Dict, Iterator, List

import pytest
import structlog
from structlog.contextvars import bound_contextvars

from employee_sync.config import Settings
from employee_sync.monitoring.logging import setup_logging


@pytest.fixture
def log_stream(test_settings: Settings) -> Iterator[io.StringIO]:
    """Route logging into a buffer and restore the previous configuration afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    stream = io.StringIO()

    setup_logging(test_settings, stream=stream)
    yield stream

    structlog.reset_defaults()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def lines(stream: io.StringIO) -> List[Dict[str, Any]]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


class TestSetupLogging:
    """Test suite for setup_logging."""

    @pytest.mark.unit
    def test_structlog_fields_are_top_level_json(
        self, log_stream: io.StringIO, test_settings: Settings
    ) -> None:
        logger = structlog.get_logger("employee_sync.tests")

        with bound_contextvars(correlation_id="corr-42", saga_type="create_employee"):
            logger.info("saga_create_started", account_name="jnovak")

        record = lines(log_stream)[-1]
        assert record["message"] == "saga_create_started"
        assert record["level"] == "INFO"
        assert record["logger"] == "employee_sync.tests"
        assert record["account_name"] == "jnovak"
        assert record["correlation_id"] == "corr-42"
        assert record["saga_type"] == "create_employee"
        assert record["service"] == test_settings.source_service
        assert record["kafka_client_id"] == test_settings.kafka_client_id
        assert "@timestamp" in record

    @pytest.mark.unit
    def test_stdlib_records_carry_bound_correlation_id(self, log_stream: io.StringIO) -> None:
        with bound_contextvars(correlation_id="corr-43", employee_id="e-1"):
            logging.getLogger("sqlalchemy.engine").warning("slow query")

        record = lines(log_stream)[-1]
        assert record["message"] == "slow query"
        assert record["correlation_id"] == "corr-43"
        assert record["employee_id"] == "e-1"

    @pytest.mark.unit
    def test_noisy_loggers_are_quieted(self, log_stream: io.StringIO) -> None:
        logging.getLogger("httpx").info("HTTP Request: GET /users")

        assert all(record["logger"] != "httpx" for record in lines(log_stream))
