"""Persistence adapters: SQLite repositories and the attachment blob store."""

from .attachments import AttachmentStore, compute_digest
from .sqlite import (
    SqliteAccountRepository,
    SqliteMailStore,
    SqliteMessageRepository,
    SqliteTokenStore,
)

__all__ = [
    "AttachmentStore",
    "SqliteAccountRepository",
    "SqliteMailStore",
    "SqliteMessageRepository",
    "SqliteTokenStore",
    "compute_digest",
]
