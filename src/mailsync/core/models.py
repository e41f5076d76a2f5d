"""Core domain models used across the synchronisation engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum

# Accounts are switched off after this many failed attempts in a row.
MAX_CONSECUTIVE_FAILURES = 5


class ProviderKind(str, Enum):
    """Mail provider an account is hosted by."""

    IMAP = "imap"
    GMAIL = "gmail"
    OUTLOOK = "outlook"

    @property
    def uses_oauth(self) -> bool:
        """Return ``True`` when the provider authenticates with OAuth2 tokens."""
        return self is not ProviderKind.IMAP


class FolderKind(str, Enum):
    """Logical mailbox section independent of provider naming."""

    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    ARCHIVE = "archive"


class SyncStatus(str, Enum):
    """Lifecycle state of an account or historical sync."""

    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    NO_ACCOUNTS_CONFIGURED = "NoAccountsConfigured"


@dataclass(slots=True, frozen=True)
class SyncState:
    """Mutable-by-replacement sync bookkeeping of an account."""

    status: SyncStatus = SyncStatus.NOT_STARTED
    last_synced_at: datetime | None = None
    last_sync_attempt_at: datetime | None = None
    last_sync_error: str | None = None
    consecutive_failures: int = 0
    total_emails_synced: int = 0
    total_attachments_synced: int = 0


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True, frozen=True)
class Account:
    """A linked mailbox account owned by a user."""

    id: str
    user_id: str
    email_address: str
    provider: ProviderKind
    imap_host: str | None = None
    imap_port: int = 993
    use_ssl: bool = True
    password: str | None = None
    sync_state: SyncState = field(default_factory=SyncState)
    is_active: bool = True
    include_sent: bool = False
    include_drafts: bool = False
    include_archive: bool = False
    sync_attachments: bool = True
    max_attachment_size_mb: int = 25
    initial_sync_days: int = 0


def mark_in_progress(account: Account, now: datetime) -> Account:
    """Return ``account`` transitioned into an in-progress sync attempt."""
    state = replace(
        account.sync_state,
        status=SyncStatus.IN_PROGRESS,
        last_sync_attempt_at=now,
    )
    return replace(account, sync_state=state)


def mark_completed(
    account: Account,
    *,
    new_emails: int,
    attachments: int,
    synced_through: datetime | None,
    now: datetime,
) -> Account:
    """Return ``account`` after a successful sync, accumulating counters."""
    previous = account.sync_state
    state = replace(
        previous,
        status=SyncStatus.COMPLETED,
        last_synced_at=synced_through,
        last_sync_attempt_at=now,
        last_sync_error=None,
        consecutive_failures=0,
        total_emails_synced=previous.total_emails_synced + new_emails,
        total_attachments_synced=previous.total_attachments_synced + attachments,
    )
    return replace(account, sync_state=state)


def mark_failed(account: Account, error: str, now: datetime) -> Account:
    """Return ``account`` after a failed sync; repeated failures deactivate it."""
    failures = account.sync_state.consecutive_failures + 1
    state = replace(
        account.sync_state,
        status=SyncStatus.FAILED,
        last_sync_attempt_at=now,
        last_sync_error=error,
        consecutive_failures=failures,
    )
    is_active = account.is_active and failures < MAX_CONSECUTIVE_FAILURES
    return replace(account, sync_state=state, is_active=is_active)


@dataclass(slots=True, frozen=True)
class ExternalAttachment:
    """Attachment payload as delivered by the provider."""

    filename: str | None
    content_type: str | None
    data: bytes
    content_id: str | None = None

    @property
    def size(self) -> int:
        """Number of payload bytes."""
        return len(self.data)


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True, frozen=True)
class ExternalMessage:
    """Provider-agnostic message fetched for a single sync cycle."""

    message_id: str | None
    subject: str | None
    sender: str | None
    sender_name: str | None
    to: tuple[str, ...]
    cc: tuple[str, ...]
    bcc: tuple[str, ...]
    sent_at: datetime | None
    received_at: datetime | None
    body_text: str | None
    body_html: str | None
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()
    thread_index: str | None = None
    attachments: tuple[ExternalAttachment, ...] = ()


@dataclass(slots=True, frozen=True)
class MessageRef:
    """Handle of a candidate message within an opened folder."""

    uid: int
    received_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class PersistedAttachment:
    """Attachment linked to stored content instead of raw bytes."""

    filename: str
    content_type: str
    size: int
    storage_path: str
    content_hash: str
    content_id: str | None = None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class PersistedMessage:
    """Durable representation of a synchronised message."""

    message_id: str
    account_id: str
    user_id: str
    folder: FolderKind
    subject: str
    sender: str
    sender_name: str
    to: tuple[str, ...]
    cc: tuple[str, ...]
    bcc: tuple[str, ...]
    sent_at: datetime
    received_at: datetime
    body_text: str
    body_html: str | None
    conversation_id: str | None = None
    in_reply_to: str | None = None
    is_read: bool = False
    is_flagged: bool = False
    priority: int = 0
    is_urgent: bool = False
    category: str = "general"
    requires_response: bool = False
    action_items: tuple[str, ...] = ()
    attachments: list[PersistedAttachment] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class StoredBlob:
    """Result of writing attachment content to the blob store."""

    path: str
    digest: str
    is_new: bool


@dataclass(slots=True, frozen=True)
class OAuthTokenRecord:
    """Persisted OAuth token for one provider account."""

    provider: ProviderKind
    account_id: str
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None
    scopes: tuple[str, ...] = ()
    stored_at: datetime | None = None

    def is_expiring(self, lead: timedelta, now: datetime) -> bool:
        """Return ``True`` when the token expires within ``lead`` of ``now``."""
        return now + lead >= self.expires_at


@dataclass(slots=True, frozen=True)
class AuthResult:
    """Outcome of resolving an access token."""

    access_token: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        """Whether a usable access token was produced."""
        return self.access_token is not None and self.error is None

    @classmethod
    def ok(cls, access_token: str) -> AuthResult:
        """Build a successful result."""
        return cls(access_token=access_token)

    @classmethod
    def failure(cls, error: str) -> AuthResult:
        """Build a failed result carrying ``error``."""
        return cls(error=error)


@dataclass(slots=True, frozen=True)
class MessageAnalysis:
    """Tags derived by the analysis collaborator."""

    priority: int
    urgent: bool
    category: str
    action_items: tuple[str, ...] = ()

    @classmethod
    def neutral(cls) -> MessageAnalysis:
        """Default tags used when analysis is unavailable."""
        return cls(priority=0, urgent=False, category="general")


@dataclass(slots=True, frozen=True)
class FolderSyncOutcome:
    """Summary of one folder pass."""

    folder_name: str
    folder_kind: FolderKind
    total_found: int
    new_emails: int
    attachments_stored: int
    latest_received_at: datetime | None
    failed: int = 0
    error: str | None = None


@dataclass(slots=True, frozen=True)
class AccountSyncResult:
    """Result of synchronising a single account."""

    success: bool
    synced_at: datetime
    new_emails_count: int = 0
    total_emails_checked: int = 0
    attachments_stored: int = 0
    error_message: str | None = None
    folders: tuple[FolderSyncOutcome, ...] = ()


@dataclass(slots=True, frozen=True)
class HistoricalSyncResult:
    """Aggregate result of syncing every account of a user."""

    user_id: str
    status: SyncStatus
    started_at: datetime
    finished_at: datetime | None = None
    total_emails_found: int = 0
    emails_synced: int = 0
    errors: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class SyncProgress:
    """Progress snapshot reported around each account."""

    user_id: str
    account_email: str
    total_found: int
    processed: int
    message: str


@dataclass(slots=True, frozen=True)
class SyncPreferences:
    """User preferences driving a historical sync."""

    history_months: int = 6
    download_attachments: bool = True
    include_sent_folder: bool = True
    include_drafts_folder: bool = False
    include_archive_folder: bool = False


__all__ = [
    "MAX_CONSECUTIVE_FAILURES",
    "Account",
    "AccountSyncResult",
    "AuthResult",
    "ExternalAttachment",
    "ExternalMessage",
    "FolderKind",
    "FolderSyncOutcome",
    "HistoricalSyncResult",
    "MessageAnalysis",
    "MessageRef",
    "OAuthTokenRecord",
    "PersistedAttachment",
    "PersistedMessage",
    "ProviderKind",
    "StoredBlob",
    "SyncPreferences",
    "SyncProgress",
    "SyncState",
    "SyncStatus",
    "mark_completed",
    "mark_failed",
    "mark_in_progress",
]
