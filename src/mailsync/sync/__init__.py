"""Synchronisation engine: folder, account and historical passes."""

from .account import (
    CANCELLED_MESSAGE,
    AccountSyncOrchestrator,
    SyncCancelled,
    compute_watermark,
)
from .folder import FolderSynchronizer, build_persisted_message
from .historical import HistoricalSyncCoordinator, history_start, subtract_months
from .retry import RetryPolicy, connectivity_policy, fetch_policy

__all__ = [
    "CANCELLED_MESSAGE",
    "AccountSyncOrchestrator",
    "FolderSynchronizer",
    "HistoricalSyncCoordinator",
    "RetryPolicy",
    "SyncCancelled",
    "build_persisted_message",
    "compute_watermark",
    "connectivity_policy",
    "fetch_policy",
    "history_start",
    "subtract_months",
]
