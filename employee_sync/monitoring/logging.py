"""
Structured logging configuration.

structlog events are handed to the stdlib as record attributes and rendered
by python-json-logger, so every field is a top-level JSON key. Sagas and the
audit consumer bind ``correlation_id`` (and ``saga_type`` / ``employee_id``)
through ``structlog.contextvars``; the same ids are copied onto records from
SQLAlchemy, httpx and other stdlib loggers emitted inside that scope.
"""
import logging
import sys
from typing import Any, Dict, Optional, TextIO

import structlog
from pythonjsonlogger import jsonlogger

from employee_sync.config import Settings, get_settings

# Bound context copied onto third-party stdlib records
CONTEXT_FIELDS = ("correlation_id", "saga_type", "employee_id")


class ServiceContext:
    """structlog processor stamping the emitting service on every event."""

    def __init__(self, settings: Settings):
        self.fields = {
            "service": settings.source_service,
            "app_env": settings.app_env,
            "kafka_client_id": settings.kafka_client_id,
        }

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        for key, value in self.fields.items():
            event_dict.setdefault(key, value)
        return event_dict


class BoundContextFilter(logging.Filter):
    """Copies correlation ids bound in structlog contextvars onto plain stdlib records."""

    def filter(self, record: logging.LogRecord) -> bool:
        bound = structlog.contextvars.get_contextvars()
        for field in CONTEXT_FIELDS:
            if field in bound and not hasattr(record, field):
                setattr(record, field, bound[field])
        return True


def setup_logging(settings: Optional[Settings] = None, stream: Optional[TextIO] = None) -> None:
    """
    Configure structlog and the root logger for JSON output.

    Args:
        settings: Application settings (defaults to the cached settings)
        stream: Where log lines are written (stdout by default)
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            ServiceContext(settings),
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(stream or sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    json_handler.addFilter(BoundContextFilter())
    root_logger.addHandler(json_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        service=settings.source_service,
    )
