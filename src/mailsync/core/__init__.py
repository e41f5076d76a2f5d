"""Core utilities for configuration, logging, and domain models."""

from .config import AppSettings, RetrySettings, SyncSettings, load_app_settings
from .logging import configure_logging

__all__ = [
    "AppSettings",
    "RetrySettings",
    "SyncSettings",
    "configure_logging",
    "load_app_settings",
]
