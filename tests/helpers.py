"""Shared fakes and builders for the synchronisation tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

from mailsync.core.config import SyncSettings
from mailsync.core.interfaces import (
    AuthProvider,
    FolderNotFoundError,
    MailSourceError,
)
from mailsync.core.models import (
    Account,
    AuthResult,
    ExternalAttachment,
    ExternalMessage,
    FolderKind,
    MessageAnalysis,
    MessageRef,
    OAuthTokenRecord,
    PersistedMessage,
    ProviderKind,
)
from mailsync.storage import AttachmentStore
from mailsync.sync import AccountSyncOrchestrator, FolderSynchronizer, RetryPolicy

FIXED_NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


class FixedClock:
    """Clock returning a controllable instant."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


def make_account(**overrides: object) -> Account:
    values: dict[str, object] = {
        "id": "acct-1",
        "user_id": "user-1",
        "email_address": "owner@example.com",
        "provider": ProviderKind.IMAP,
        "imap_host": "imap.example.com",
        "password": "secret",
    }
    values.update(overrides)
    return Account(**values)  # type: ignore[arg-type]


def make_message(
    message_id: str | None,
    received_at: datetime,
    *,
    subject: str | None = "Hello",
    attachments: tuple[ExternalAttachment, ...] = (),
    body_text: str | None = "Body",
) -> ExternalMessage:
    return ExternalMessage(
        message_id=message_id,
        subject=subject,
        sender="sender@example.com",
        sender_name="Sender",
        to=("owner@example.com",),
        cc=(),
        bcc=(),
        sent_at=received_at,
        received_at=received_at,
        body_text=body_text,
        body_html=None,
        attachments=attachments,
    )


class InMemoryMailSource:
    """Mail source serving canned messages per folder."""

    def __init__(
        self,
        folders: dict[str, list[ExternalMessage]] | None = None,
        *,
        folder_names: dict[FolderKind, str] | None = None,
        failing_ids: set[str] | None = None,
        connect_error: Exception | None = None,
        auth_error: Exception | None = None,
    ) -> None:
        self.folders = folders if folders is not None else {"INBOX": []}
        self.folder_names = folder_names or {FolderKind.INBOX: "INBOX"}
        self.failing_ids = failing_ids or set()
        self.connect_error = connect_error
        self.auth_error = auth_error
        self.connect_calls = 0
        self.credentials: list[tuple[str, str, bool]] = []
        self.opened: list[str] = []
        self.searched_since: list[datetime] = []
        self.fetched: list[int] = []
        self.closed = False
        self._current: str | None = None

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error

    async def authenticate(self, username: str, secret: str, *, oauth: bool) -> None:
        self.credentials.append((username, secret, oauth))
        if self.auth_error is not None:
            raise self.auth_error

    async def resolve_folder(self, kind: FolderKind) -> str | None:
        return self.folder_names.get(kind)

    async def open_folder(self, name: str) -> None:
        if name not in self.folders:
            raise FolderNotFoundError(f"Unable to select mailbox '{name}'")
        self.opened.append(name)
        self._current = name

    async def search_since(self, since: datetime) -> list[MessageRef]:
        self.searched_since.append(since)
        messages = self.folders[self._current or "INBOX"]
        refs = [
            MessageRef(uid=index + 1, received_at=message.received_at)
            for index, message in enumerate(messages)
            if message.received_at is not None and message.received_at > since
        ]
        refs.sort(key=lambda ref: (ref.received_at, ref.uid))
        return refs

    async def fetch(self, ref: MessageRef) -> ExternalMessage:
        self.fetched.append(ref.uid)
        message = self.folders[self._current or "INBOX"][ref.uid - 1]
        if message.message_id in self.failing_ids:
            raise MailSourceError(f"Cannot parse {message.message_id}")
        return message

    async def close(self) -> None:
        self.closed = True


class InMemoryMessageRepository:
    def __init__(self, store: InMemoryMailStore) -> None:
        self._store = store
        self.saved: dict[str, PersistedMessage] = {}

    def exists(self, message_id: str) -> bool:
        return message_id in self.saved or any(
            isinstance(item, PersistedMessage) and item.message_id == message_id
            for item in self._store.pending
        )

    def add(self, message: PersistedMessage) -> None:
        self._store.pending.append(message)

    def update(self, message: PersistedMessage) -> None:
        self._store.pending.append(message)


class InMemoryAccountRepository:
    def __init__(self, store: InMemoryMailStore) -> None:
        self._store = store
        self.saved: dict[str, Account] = {}

    def get_by_user(self, user_id: str) -> list[Account]:
        return [item for item in self.saved.values() if item.user_id == user_id]

    def get_by_id(self, account_id: str) -> Account | None:
        return self.saved.get(account_id)

    def update(self, account: Account) -> None:
        self._store.pending.append(account)


class InMemoryMailStore:
    """Unit of work staging writes until ``save_changes``."""

    def __init__(self, accounts: list[Account] | None = None) -> None:
        self.pending: list[PersistedMessage | Account] = []
        self.save_calls = 0
        self.messages = InMemoryMessageRepository(self)
        self.accounts = InMemoryAccountRepository(self)
        for account in accounts or []:
            self.accounts.saved[account.id] = account

    def save_changes(self) -> int:
        self.save_calls += 1
        pending = list(self.pending)
        self.pending.clear()
        for item in pending:
            if isinstance(item, Account):
                self.accounts.saved[item.id] = item
            else:
                self.messages.saved[item.message_id] = item
        return len(pending)

    def account(self, account_id: str = "acct-1") -> Account:
        return self.accounts.saved[account_id]


class InMemoryTokenStore:
    def __init__(self) -> None:
        self.tokens: dict[tuple[ProviderKind, str], OAuthTokenRecord] = {}
        self.payloads: dict[str, bytes] = {}

    def get_token(
        self, provider: ProviderKind, account_id: str
    ) -> OAuthTokenRecord | None:
        return self.tokens.get((provider, account_id.lower()))

    def get_all_tokens(self, provider: ProviderKind) -> list[OAuthTokenRecord]:
        return [record for key, record in self.tokens.items() if key[0] is provider]

    def store_token(self, record: OAuthTokenRecord) -> None:
        self.tokens[(record.provider, record.account_id.lower())] = record

    def remove_token(self, provider: ProviderKind, account_id: str) -> None:
        self.tokens.pop((provider, account_id.lower()), None)

    def get_payload(self, key: str) -> bytes | None:
        return self.payloads.get(key)

    def store_payload(self, key: str, payload: bytes) -> None:
        self.payloads[key] = payload

    def remove_payload(self, key: str) -> None:
        self.payloads.pop(key, None)


class StubAnalysisService:
    def __init__(
        self,
        analysis: MessageAnalysis | None = None,
        *,
        error: Exception | None = None,
    ) -> None:
        self.analysis = analysis or MessageAnalysis(
            priority=5, urgent=False, category="project", action_items=("Reply",)
        )
        self.error = error
        self.calls: list[str] = []

    async def analyze(self, message: PersistedMessage) -> MessageAnalysis:
        self.calls.append(message.message_id)
        if self.error is not None:
            raise self.error
        return self.analysis


class StubAuthProvider:
    def __init__(self, provider: ProviderKind, result: AuthResult) -> None:
        self.provider = provider
        self.result = result
        self.requests: list[str] = []

    async def get_access_token(self, account_address, cancel_event=None) -> AuthResult:
        self.requests.append(account_address)
        return self.result


def no_wait_policy(name: str = "test", retries: int = 2) -> RetryPolicy:
    return RetryPolicy(
        name,
        retry_on=(ConnectionError, TimeoutError),
        retries=retries,
        initial_delay=0.0,
        max_delay=0.0,
        jitter=0.0,
    )


def build_orchestrator(
    tmp_path: Path,
    store: InMemoryMailStore,
    source: InMemoryMailSource,
    *,
    analysis: StubAnalysisService | None = None,
    auth_providers: dict[ProviderKind, AuthProvider] | None = None,
    clock: FixedClock | None = None,
) -> AccountSyncOrchestrator:
    clock = clock or FixedClock()
    folders = FolderSynchronizer(
        store.messages,
        store,
        AttachmentStore(tmp_path / "blobs"),
        analysis or StubAnalysisService(),
        no_wait_policy("fetch"),
        clock=clock,
    )
    return AccountSyncOrchestrator(
        accounts=store.accounts,
        unit_of_work=store,
        folders=folders,
        source_factory=lambda _account: source,
        auth_providers=auth_providers or {},
        connectivity_policy=no_wait_policy("connect"),
        settings=SyncSettings(),
        clock=clock,
    )


__all__ = [
    "FIXED_NOW",
    "FixedClock",
    "InMemoryMailSource",
    "InMemoryMailStore",
    "InMemoryTokenStore",
    "StubAnalysisService",
    "StubAuthProvider",
    "build_orchestrator",
    "make_account",
    "make_message",
    "no_wait_policy",
]
