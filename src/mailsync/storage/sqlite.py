"""SQLite-backed repositories, unit of work and token store."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from types import TracebackType

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utc_now
from ..core.interfaces import AccountRepository, MessageRepository, TokenStore
from ..core.models import (
    Account,
    FolderKind,
    OAuthTokenRecord,
    PersistedAttachment,
    PersistedMessage,
    ProviderKind,
    SyncState,
    SyncStatus,
)

LOGGER = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent / "schema"

_MESSAGE_COLUMNS = (
    "message_id",
    "account_id",
    "user_id",
    "folder",
    "subject",
    "sender",
    "sender_name",
    "to_recipients",
    "cc_recipients",
    "bcc_recipients",
    "sent_at",
    "received_at",
    "body_text",
    "body_html",
    "conversation_id",
    "in_reply_to",
    "is_read",
    "is_flagged",
    "priority",
    "is_urgent",
    "category",
    "requires_response",
    "action_items",
)
_ACCOUNT_COLUMNS = (
    "id",
    "user_id",
    "email_address",
    "provider",
    "imap_host",
    "imap_port",
    "use_ssl",
    "password",
    "is_active",
    "include_sent",
    "include_drafts",
    "include_archive",
    "sync_attachments",
    "max_attachment_size_mb",
    "initial_sync_days",
    "sync_status",
    "last_synced_at",
    "last_sync_attempt_at",
    "last_sync_error",
    "consecutive_failures",
    "total_emails_synced",
    "total_attachments_synced",
)


class SqliteMessageRepository(MessageRepository):
    """Stage message writes until the owning store saves changes."""

    def __init__(self, store: SqliteMailStore) -> None:
        self._store = store

    def exists(self, message_id: str) -> bool:
        """Return ``True`` for stored or staged messages with ``message_id``."""
        if self._store.is_message_staged(message_id):
            return True
        cursor = self._store.connection.execute(
            "SELECT 1 FROM messages WHERE message_id = ? LIMIT 1", (message_id,)
        )
        return cursor.fetchone() is not None

    def add(self, message: PersistedMessage) -> None:
        """Stage ``message`` for insertion."""
        if not message.message_id:
            raise ValueError("Message id is required")
        self._store.stage(message)

    def update(self, message: PersistedMessage) -> None:
        """Stage ``message`` for an upsert."""
        self._store.stage(message)

    def get(self, message_id: str) -> PersistedMessage | None:
        """Return the stored message with ``message_id``."""
        row = self._store.connection.execute(
            "SELECT * FROM messages WHERE message_id = ?", (message_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_message(row)

    def list_for_account(
        self, account_id: str, *, limit: int | None = None
    ) -> list[PersistedMessage]:
        """Return messages of ``account_id`` newest first."""
        query = "SELECT * FROM messages WHERE account_id = ? ORDER BY received_at DESC"
        params: tuple[object, ...] = (account_id,)
        if limit is not None:
            query += " LIMIT ?"
            params = (account_id, limit)
        rows = self._store.connection.execute(query, params).fetchall()
        return [self._row_to_message(row) for row in rows]

    def count(self, account_id: str | None = None) -> int:
        """Return how many messages are stored, optionally per account."""
        if account_id is None:
            cursor = self._store.connection.execute("SELECT COUNT(*) FROM messages")
        else:
            cursor = self._store.connection.execute(
                "SELECT COUNT(*) FROM messages WHERE account_id = ?", (account_id,)
            )
        return int(cursor.fetchone()[0])

    def _row_to_message(self, row: sqlite3.Row) -> PersistedMessage:
        return PersistedMessage(
            message_id=row["message_id"],
            account_id=row["account_id"],
            user_id=row["user_id"],
            folder=FolderKind(row["folder"]),
            subject=row["subject"],
            sender=row["sender"],
            sender_name=row["sender_name"],
            to=_split_recipients(row["to_recipients"]),
            cc=_split_recipients(row["cc_recipients"]),
            bcc=_split_recipients(row["bcc_recipients"]),
            sent_at=parse_datetime(row["sent_at"]) or utc_now(),
            received_at=parse_datetime(row["received_at"]) or utc_now(),
            body_text=row["body_text"],
            body_html=row["body_html"],
            conversation_id=row["conversation_id"],
            in_reply_to=row["in_reply_to"],
            is_read=bool(row["is_read"]),
            is_flagged=bool(row["is_flagged"]),
            priority=row["priority"],
            is_urgent=bool(row["is_urgent"]),
            category=row["category"],
            requires_response=bool(row["requires_response"]),
            action_items=tuple(json.loads(row["action_items"] or "[]")),
            attachments=self._load_attachments(row["message_id"]),
        )

    def _load_attachments(self, message_id: str) -> list[PersistedAttachment]:
        rows = self._store.connection.execute(
            """
            SELECT filename, content_type, size, storage_path, content_hash, content_id
            FROM attachments
            WHERE message_id = ?
            ORDER BY id
            """,
            (message_id,),
        ).fetchall()
        return [
            PersistedAttachment(
                filename=row["filename"],
                content_type=row["content_type"],
                size=row["size"],
                storage_path=row["storage_path"],
                content_hash=row["content_hash"],
                content_id=row["content_id"],
            )
            for row in rows
        ]


class SqliteAccountRepository(AccountRepository):
    """Read accounts directly and stage their updates."""

    def __init__(self, store: SqliteMailStore) -> None:
        self._store = store

    def get_by_user(self, user_id: str) -> list[Account]:
        """Return every account owned by ``user_id`` in creation order."""
        rows = self._store.connection.execute(
            "SELECT * FROM accounts WHERE user_id = ? ORDER BY rowid", (user_id,)
        ).fetchall()
        return [_row_to_account(row) for row in rows]

    def get_by_id(self, account_id: str) -> Account | None:
        """Return the account with ``account_id``."""
        row = self._store.connection.execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        ).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_all(self) -> list[Account]:
        """Return every linked account."""
        rows = self._store.connection.execute(
            "SELECT * FROM accounts ORDER BY user_id, rowid"
        ).fetchall()
        return [_row_to_account(row) for row in rows]

    def add(self, account: Account) -> None:
        """Stage a new account."""
        if not account.id:
            raise ValueError("Account id is required")
        if not account.email_address:
            raise ValueError("Account email address is required")
        self._store.stage(account)

    def update(self, account: Account) -> None:
        """Stage the new state of ``account``."""
        self._store.stage(account)


class SqliteMailStore:
    """Own the SQLite connection and commit staged changes atomically."""

    def __init__(self, settings: StorageSettings) -> None:
        """Open the database and apply migrations."""
        self._settings = settings
        self._connection = open_connection(Path(settings.db_path))
        self._pending: list[PersistedMessage | Account] = []
        self._staged_ids: set[str] = set()
        self.messages = SqliteMessageRepository(self)
        self.accounts = SqliteAccountRepository(self)

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteMailStore:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    @property
    def connection(self) -> sqlite3.Connection:
        """Underlying SQLite connection."""
        return self._connection

    @property
    def pending_count(self) -> int:
        """Number of staged changes awaiting ``save_changes``."""
        return len(self._pending)

    def stage(self, entity: PersistedMessage | Account) -> None:
        """Queue ``entity`` for the next commit."""
        self._pending.append(entity)
        if isinstance(entity, PersistedMessage):
            self._staged_ids.add(entity.message_id)

    def is_message_staged(self, message_id: str) -> bool:
        """Return ``True`` if a message with ``message_id`` awaits commit."""
        return message_id in self._staged_ids

    def save_changes(self) -> int:
        """Write every staged change in one transaction.

        Staged changes are discarded when the transaction fails so a later
        save does not replay the broken batch.
        """
        if not self._pending:
            return 0
        pending = list(self._pending)
        self._pending.clear()
        self._staged_ids.clear()

        try:
            with self._connection:
                for entity in pending:
                    if isinstance(entity, Account):
                        _upsert_account(self._connection, entity)
                    else:
                        _upsert_message(self._connection, entity)
        except sqlite3.Error as exc:
            LOGGER.error(
                "Failed to save %d staged changes: %s", len(pending), exc, exc_info=True
            )
            raise
        LOGGER.debug("Saved %d staged changes", len(pending))
        return len(pending)

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()


class SqliteTokenStore(TokenStore):
    """Persist OAuth tokens and opaque payloads in SQLite."""

    def __init__(self, settings: StorageSettings) -> None:
        """Open the database and apply migrations."""
        self._connection = open_connection(Path(settings.db_path))

    def __enter__(self) -> SqliteTokenStore:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    def get_token(
        self, provider: ProviderKind, account_id: str
    ) -> OAuthTokenRecord | None:
        """Return the stored token for an account."""
        row = self._connection.execute(
            "SELECT * FROM oauth_tokens WHERE provider = ? AND account_id = ?",
            (provider.value, account_id),
        ).fetchone()
        return _row_to_token(row) if row is not None else None

    def get_all_tokens(self, provider: ProviderKind) -> list[OAuthTokenRecord]:
        """Return every stored token of ``provider``."""
        rows = self._connection.execute(
            "SELECT * FROM oauth_tokens WHERE provider = ? ORDER BY account_id",
            (provider.value,),
        ).fetchall()
        return [_row_to_token(row) for row in rows]

    def store_token(self, record: OAuthTokenRecord) -> None:
        """Insert or replace a token record."""
        LOGGER.debug(
            "Storing %s token for %s", record.provider.value, record.account_id
        )
        with self._connection:
            self._connection.execute(
                """
                INSERT INTO oauth_tokens (
                    provider, account_id, access_token, refresh_token,
                    expires_at, scopes, stored_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider, account_id) DO UPDATE SET
                    access_token=excluded.access_token,
                    refresh_token=excluded.refresh_token,
                    expires_at=excluded.expires_at,
                    scopes=excluded.scopes,
                    stored_at=excluded.stored_at
                """,
                (
                    record.provider.value,
                    record.account_id,
                    record.access_token,
                    record.refresh_token,
                    serialize_datetime(record.expires_at),
                    " ".join(record.scopes),
                    serialize_datetime(record.stored_at or utc_now()),
                ),
            )

    def remove_token(self, provider: ProviderKind, account_id: str) -> None:
        """Delete a token record if present."""
        with self._connection:
            self._connection.execute(
                "DELETE FROM oauth_tokens WHERE provider = ? AND account_id = ?",
                (provider.value, account_id),
            )

    def get_payload(self, key: str) -> bytes | None:
        """Return an opaque payload stored under ``key``."""
        row = self._connection.execute(
            "SELECT payload FROM token_payloads WHERE key = ?", (key,)
        ).fetchone()
        return bytes(row["payload"]) if row is not None else None

    def store_payload(self, key: str, payload: bytes) -> None:
        """Persist an opaque payload under ``key``."""
        with self._connection:
            self._connection.execute(
                """
                INSERT INTO token_payloads (key, payload, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    payload=excluded.payload,
                    updated_at=excluded.updated_at
                """,
                (key, sqlite3.Binary(payload), serialize_datetime(utc_now())),
            )

    def remove_payload(self, key: str) -> None:
        """Delete the payload stored under ``key``."""
        with self._connection:
            self._connection.execute("DELETE FROM token_payloads WHERE key = ?", (key,))

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()


def open_connection(db_path: Path) -> sqlite3.Connection:
    """Open ``db_path`` with foreign keys enabled and the schema applied."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(
        db_path,
        detect_types=sqlite3.PARSE_DECLTYPES,
        check_same_thread=False,
    )
    connection.row_factory = sqlite3.Row
    with connection:
        connection.execute("PRAGMA foreign_keys = ON")
    _apply_migrations(connection)
    return connection


def _apply_migrations(connection: sqlite3.Connection) -> None:
    for migration in sorted(SCHEMA_DIR.glob("*.sql")):
        LOGGER.debug("Applying migration %s", migration.name)
        script = migration.read_text(encoding="utf-8")
        try:
            with connection:
                connection.executescript(script)
        except sqlite3.Error as exc:  # pragma: no cover - logged for visibility
            LOGGER.warning(
                "Migration %s failed (possibly already applied): %s",
                migration.name,
                exc,
            )


def _upsert_message(connection: sqlite3.Connection, message: PersistedMessage) -> None:
    values = (
        message.message_id,
        message.account_id,
        message.user_id,
        message.folder.value,
        message.subject,
        message.sender,
        message.sender_name,
        ",".join(message.to),
        ",".join(message.cc),
        ",".join(message.bcc),
        serialize_datetime(message.sent_at),
        serialize_datetime(message.received_at),
        message.body_text,
        message.body_html,
        message.conversation_id,
        message.in_reply_to,
        int(message.is_read),
        int(message.is_flagged),
        message.priority,
        int(message.is_urgent),
        message.category,
        int(message.requires_response),
        json.dumps(list(message.action_items)),
    )
    connection.execute(_upsert_statement("messages", _MESSAGE_COLUMNS), values)
    connection.execute(
        "DELETE FROM attachments WHERE message_id = ?", (message.message_id,)
    )
    for attachment in message.attachments:
        connection.execute(
            """
            INSERT INTO attachments (
                message_id, filename, content_type, size,
                storage_path, content_hash, content_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.message_id,
                attachment.filename,
                attachment.content_type,
                attachment.size,
                attachment.storage_path,
                attachment.content_hash,
                attachment.content_id,
            ),
        )


def _upsert_account(connection: sqlite3.Connection, account: Account) -> None:
    state = account.sync_state
    values = (
        account.id,
        account.user_id,
        account.email_address,
        account.provider.value,
        account.imap_host,
        account.imap_port,
        int(account.use_ssl),
        account.password,
        int(account.is_active),
        int(account.include_sent),
        int(account.include_drafts),
        int(account.include_archive),
        int(account.sync_attachments),
        account.max_attachment_size_mb,
        account.initial_sync_days,
        state.status.value,
        serialize_datetime(state.last_synced_at),
        serialize_datetime(state.last_sync_attempt_at),
        state.last_sync_error,
        state.consecutive_failures,
        state.total_emails_synced,
        state.total_attachments_synced,
    )
    connection.execute(_upsert_statement("accounts", _ACCOUNT_COLUMNS), values)


def _upsert_statement(table: str, columns: tuple[str, ...]) -> str:
    key, *rest = columns
    placeholders = ", ".join("?" for _ in columns)
    updates = ",\n    ".join(f"{column}=excluded.{column}" for column in rest)
    return (
        f"INSERT INTO {table} ({', '.join(columns)})\n"
        f"VALUES ({placeholders})\n"
        f"ON CONFLICT({key}) DO UPDATE SET\n    {updates}"
    )


def _row_to_account(row: sqlite3.Row) -> Account:
    state = SyncState(
        status=SyncStatus(row["sync_status"]),
        last_synced_at=parse_datetime(row["last_synced_at"]),
        last_sync_attempt_at=parse_datetime(row["last_sync_attempt_at"]),
        last_sync_error=row["last_sync_error"],
        consecutive_failures=row["consecutive_failures"],
        total_emails_synced=row["total_emails_synced"],
        total_attachments_synced=row["total_attachments_synced"],
    )
    return Account(
        id=row["id"],
        user_id=row["user_id"],
        email_address=row["email_address"],
        provider=ProviderKind(row["provider"]),
        imap_host=row["imap_host"],
        imap_port=row["imap_port"],
        use_ssl=bool(row["use_ssl"]),
        password=row["password"],
        sync_state=state,
        is_active=bool(row["is_active"]),
        include_sent=bool(row["include_sent"]),
        include_drafts=bool(row["include_drafts"]),
        include_archive=bool(row["include_archive"]),
        sync_attachments=bool(row["sync_attachments"]),
        max_attachment_size_mb=row["max_attachment_size_mb"],
        initial_sync_days=row["initial_sync_days"],
    )


def _row_to_token(row: sqlite3.Row) -> OAuthTokenRecord:
    return OAuthTokenRecord(
        provider=ProviderKind(row["provider"]),
        account_id=row["account_id"],
        access_token=row["access_token"],
        expires_at=parse_datetime(row["expires_at"]) or utc_now(),
        refresh_token=row["refresh_token"],
        scopes=tuple(row["scopes"].split()) if row["scopes"] else (),
        stored_at=parse_datetime(row["stored_at"]),
    )


def _split_recipients(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(
        part for part in (segment.strip() for segment in value.split(",")) if part
    )


__all__ = [
    "SqliteAccountRepository",
    "SqliteMailStore",
    "SqliteMessageRepository",
    "SqliteTokenStore",
    "open_connection",
]
