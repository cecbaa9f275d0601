"""Configuration package for employee sync."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
