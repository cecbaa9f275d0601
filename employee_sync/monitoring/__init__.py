"""Monitoring package: structured logging and Prometheus metrics."""
from .logging import setup_logging

__all__ = ["setup_logging"]
