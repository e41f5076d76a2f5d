"""Protocol interfaces for decoupling the engine from its collaborators."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from .models import (
    Account,
    AuthResult,
    ExternalMessage,
    FolderKind,
    MessageAnalysis,
    MessageRef,
    OAuthTokenRecord,
    PersistedMessage,
    ProviderKind,
)


class MailSourceError(RuntimeError):
    """Base class for failures raised by a mail source."""


class AuthenticationError(MailSourceError):
    """Credentials were rejected or could not be resolved; never retried."""


class ConnectivityError(MailSourceError):
    """Connecting to or talking with the server failed transiently."""


class TransientFetchError(MailSourceError):
    """Retrieving a single message failed in a way worth retrying."""


class FolderNotFoundError(MailSourceError):
    """The requested folder does not exist on the server."""


class AnalysisError(RuntimeError):
    """Raised when tagging a message fails."""


class MailSource(Protocol):
    """Asynchronous source of external messages for one account session."""

    async def connect(self) -> None:
        """Open the network session."""
        raise NotImplementedError

    async def authenticate(self, username: str, secret: str, *, oauth: bool) -> None:
        """Authenticate with a password or, when ``oauth``, an access token."""
        raise NotImplementedError

    async def resolve_folder(self, kind: FolderKind) -> str | None:
        """Return the provider folder name for ``kind`` or ``None`` if absent."""
        raise NotImplementedError

    async def open_folder(self, name: str) -> None:
        """Select ``name`` read-only for subsequent searches and fetches."""
        raise NotImplementedError

    async def search_since(self, since: datetime) -> list[MessageRef]:
        """Return messages received strictly after ``since`` in ascending order."""
        raise NotImplementedError

    async def fetch(self, ref: MessageRef) -> ExternalMessage:
        """Retrieve the full message behind ``ref``."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release the session; safe to call more than once."""
        raise NotImplementedError


MailSourceFactory = Callable[[Account], MailSource]


class MessageRepository(Protocol):
    """Persistence contract for synchronised messages."""

    def exists(self, message_id: str) -> bool:
        """Return ``True`` when a message with ``message_id`` is stored."""
        raise NotImplementedError

    def add(self, message: PersistedMessage) -> None:
        """Stage a new message for persistence."""
        raise NotImplementedError

    def update(self, message: PersistedMessage) -> None:
        """Stage changes to an existing message."""
        raise NotImplementedError


class AccountRepository(Protocol):
    """Persistence contract for linked accounts."""

    def get_by_user(self, user_id: str) -> list[Account]:
        """Return every account owned by ``user_id``."""
        raise NotImplementedError

    def get_by_id(self, account_id: str) -> Account | None:
        """Return the account with ``account_id`` if present."""
        raise NotImplementedError

    def update(self, account: Account) -> None:
        """Stage the new state of ``account``."""
        raise NotImplementedError


class UnitOfWork(Protocol):
    """Save boundary committing staged repository changes."""

    def save_changes(self) -> int:
        """Commit staged changes and return how many were written."""
        raise NotImplementedError


class TokenStore(Protocol):
    """Secure persistence for OAuth tokens and opaque provider caches."""

    def get_token(
        self, provider: ProviderKind, account_id: str
    ) -> OAuthTokenRecord | None:
        """Return the stored token for an account."""
        raise NotImplementedError

    def get_all_tokens(self, provider: ProviderKind) -> list[OAuthTokenRecord]:
        """Return every stored token of ``provider``."""
        raise NotImplementedError

    def store_token(self, record: OAuthTokenRecord) -> None:
        """Insert or replace a token record."""
        raise NotImplementedError

    def remove_token(self, provider: ProviderKind, account_id: str) -> None:
        """Delete a token record if present."""
        raise NotImplementedError

    def get_payload(self, key: str) -> bytes | None:
        """Return an opaque payload stored under ``key``."""
        raise NotImplementedError

    def store_payload(self, key: str, payload: bytes) -> None:
        """Persist an opaque payload under ``key``."""
        raise NotImplementedError

    def remove_payload(self, key: str) -> None:
        """Delete the payload stored under ``key``."""
        raise NotImplementedError


class AnalysisService(Protocol):
    """Analyze-and-tag collaborator invoked for every new message."""

    async def analyze(self, message: PersistedMessage) -> MessageAnalysis:
        """Return priority, urgency, category and action items."""
        raise NotImplementedError


class AuthProvider(Protocol):
    """OAuth2 token lifecycle for one provider kind."""

    provider: ProviderKind

    async def get_access_token(
        self, account_address: str, cancel_event: asyncio.Event | None = None
    ) -> AuthResult:
        """Return a usable access token for ``account_address``."""
        raise NotImplementedError


__all__ = [
    "AccountRepository",
    "AnalysisError",
    "AnalysisService",
    "AuthProvider",
    "AuthenticationError",
    "ConnectivityError",
    "FolderNotFoundError",
    "MailSource",
    "MailSourceError",
    "MailSourceFactory",
    "MessageRepository",
    "TokenStore",
    "TransientFetchError",
    "UnitOfWork",
]
