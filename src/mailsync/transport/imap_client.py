"""IMAP transport adapter implementing the asynchronous mail source contract."""

from __future__ import annotations

import asyncio
import imaplib
import logging
import re
import time
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime, timedelta

from ..core.interfaces import (
    AuthenticationError,
    ConnectivityError,
    FolderNotFoundError,
    MailSource,
    MailSourceError,
    TransientFetchError,
)
from ..core.models import Account, ExternalMessage, FolderKind, MessageRef, ProviderKind
from ..ingestion.parser import EmailParser

LOGGER = logging.getLogger(__name__)

OAUTH_ENDPOINTS: dict[ProviderKind, tuple[str, int]] = {
    ProviderKind.GMAIL: ("imap.gmail.com", 993),
    ProviderKind.OUTLOOK: ("outlook.office365.com", 993),
}

# RFC 6154 special-use attributes, most specific first.
_SPECIAL_USE: dict[FolderKind, tuple[bytes, ...]] = {
    FolderKind.SENT: (rb"\Sent",),
    FolderKind.DRAFTS: (rb"\Drafts",),
    FolderKind.ARCHIVE: (rb"\Archive", rb"\All"),
}
_FALLBACK_NAMES: dict[FolderKind, tuple[str, ...]] = {
    FolderKind.SENT: ("Sent", "Sent Items", "Sent Mail", "Sent Messages"),
    FolderKind.DRAFTS: ("Drafts", "Draft"),
    FolderKind.ARCHIVE: ("Archive", "Archives", "All Mail"),
}
_LIST_PATTERN = re.compile(
    rb'\((?P<flags>[^)]*)\)\s+(?P<delimiter>"[^"]*"|NIL)\s+(?P<name>.+)$'
)
_UID_PATTERN = re.compile(rb"UID (\d+)")
_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)  # fmt: skip
_INTERNALDATE_BATCH = 200


class ImapMailSource(MailSource):
    """``imaplib`` session exposed through awaitable operations.

    Every blocking call runs in a worker thread so the event loop stays free
    for cancellation and other I/O.
    """

    def __init__(
        self,
        host: str,
        port: int = 993,
        *,
        use_ssl: bool = True,
        timeout: float = 60.0,
        parser: EmailParser | None = None,
    ) -> None:
        """Initialise the source for ``host``; no network I/O happens yet."""
        self._host = host
        self._port = port
        self._use_ssl = use_ssl
        self._timeout = timeout
        self._parser = parser or EmailParser()
        self._connection: imaplib.IMAP4 | imaplib.IMAP4_SSL | None = None
        self._selected: str | None = None
        self._credentials: tuple[str, str, bool] | None = None

    # Public API ---------------------------------------------------------------
    async def connect(self) -> None:
        """Establish the IMAP connection."""
        await asyncio.to_thread(self._connect)

    async def authenticate(self, username: str, secret: str, *, oauth: bool) -> None:
        """Log in with a password or an XOAUTH2 bearer token."""
        await asyncio.to_thread(self._authenticate, username, secret, oauth)

    async def resolve_folder(self, kind: FolderKind) -> str | None:
        """Map a logical folder to the server's name using special-use flags."""
        if kind is FolderKind.INBOX:
            return "INBOX"
        return await asyncio.to_thread(self._resolve_folder, kind)

    async def open_folder(self, name: str) -> None:
        """Select ``name`` read-only."""
        await asyncio.to_thread(self._open_folder, name)

    async def search_since(self, since: datetime) -> list[MessageRef]:
        """Return UIDs whose INTERNALDATE is after ``since``, oldest first."""
        return await asyncio.to_thread(self._search_since, since)

    async def fetch(self, ref: MessageRef) -> ExternalMessage:
        """Download and parse the RFC822 payload for ``ref``."""
        payload = await asyncio.to_thread(self._fetch_rfc822, ref.uid)
        return self._parser.parse(payload, received_at=ref.received_at)

    async def close(self) -> None:
        """Terminate the IMAP session cleanly."""
        await asyncio.to_thread(self._close)

    # Blocking implementations -------------------------------------------------
    def _connect(self) -> None:
        if self._connection is not None:
            return
        LOGGER.debug(
            "Connecting to IMAP host %s:%s (ssl=%s)",
            self._host,
            self._port,
            self._use_ssl,
        )
        try:
            self._connection = self._open_connection()
        except imaplib.IMAP4.error as exc:
            raise ConnectivityError(
                f"Failed to connect to IMAP server {self._host}:{self._port}"
            ) from exc

    def _open_connection(self) -> imaplib.IMAP4 | imaplib.IMAP4_SSL:
        if self._use_ssl:
            return imaplib.IMAP4_SSL(self._host, self._port, timeout=self._timeout)
        return imaplib.IMAP4(self._host, self._port, timeout=self._timeout)

    def _authenticate(self, username: str, secret: str, oauth: bool) -> None:
        if self._connection is None:
            self._connect()
        self._login(self._require_connection(), username, secret, oauth)
        self._credentials = (username, secret, oauth)

    def _login(
        self,
        connection: imaplib.IMAP4 | imaplib.IMAP4_SSL,
        username: str,
        secret: str,
        oauth: bool,
    ) -> None:
        LOGGER.debug("Authenticating as %s (oauth=%s)", username, oauth)
        try:
            if oauth:
                auth_string = f"user={username}\x01auth=Bearer {secret}\x01\x01"
                connection.authenticate("XOAUTH2", lambda _: auth_string.encode())
            else:
                connection.login(username, secret)
        except imaplib.IMAP4.abort as exc:
            self._drop_connection()
            raise ConnectivityError("IMAP connection dropped during login") from exc
        except imaplib.IMAP4.error as exc:
            raise AuthenticationError(
                f"IMAP authentication failed for {username}: {exc}"
            ) from exc

    def _resolve_folder(self, kind: FolderKind) -> str | None:
        connection = self._require_connection()
        status, data = connection.list()
        if status != "OK":
            raise MailSourceError("Failed to list mailboxes")
        folders = list(_parse_list_response(data))

        for attribute in _SPECIAL_USE.get(kind, ()):
            for flags, name in folders:
                if attribute.lower() in (flag.lower() for flag in flags):
                    return name

        by_name = {name.rsplit("/", 1)[-1].lower(): name for _, name in folders}
        for candidate in _FALLBACK_NAMES.get(kind, ()):
            match = by_name.get(candidate.lower())
            if match is not None:
                return match
        LOGGER.debug("Server does not expose a %s folder", kind.value)
        return None

    def _open_folder(self, name: str) -> None:
        connection = self._require_connection()
        try:
            status, _ = connection.select(_quote_mailbox(name), readonly=True)
        except imaplib.IMAP4.abort as exc:
            self._drop_connection()
            raise ConnectivityError(f"Connection lost selecting '{name}'") from exc
        except imaplib.IMAP4.error as exc:
            raise FolderNotFoundError(f"Unable to select mailbox '{name}'") from exc
        if status != "OK":
            raise FolderNotFoundError(f"Unable to select mailbox '{name}'")
        self._selected = name

    def _search_since(self, since: datetime) -> list[MessageRef]:
        connection = self._require_connection()
        # SINCE has day granularity in the server's zone; widen and filter.
        since_utc = since.astimezone(UTC)
        criterion = _imap_date(since_utc - timedelta(days=1))
        LOGGER.debug("Searching %s for messages SINCE %s", self._selected, criterion)
        status, data = connection.uid("SEARCH", "SINCE", criterion)
        if status != "OK":
            raise MailSourceError("Failed to search for message UIDs")

        raw_ids = data[0].split() if data and data[0] else []
        if not raw_ids:
            return []

        refs: list[MessageRef] = []
        for chunk in _chunked(raw_ids, _INTERNALDATE_BATCH):
            uid_set = b",".join(chunk).decode()
            status_fetch, fetch_data = connection.uid(
                "FETCH", uid_set, "(INTERNALDATE)"
            )
            if status_fetch != "OK":
                raise MailSourceError("Failed to fetch INTERNALDATE for candidates")
            refs.extend(_parse_internaldates(fetch_data))

        candidates = [
            ref
            for ref in refs
            if ref.received_at is None or ref.received_at > since_utc
        ]
        candidates.sort(key=lambda ref: (ref.received_at or since_utc, ref.uid))
        return candidates

    def _fetch_rfc822(self, uid: int) -> bytes:
        connection = self._require_connection()
        uid_str = str(uid)
        LOGGER.debug("Fetching RFC822 payload for UID %s", uid_str)
        try:
            status, fetch_data = connection.uid("FETCH", uid_str, "(RFC822)")
        except imaplib.IMAP4.abort as exc:
            self._drop_connection()
            raise TransientFetchError(
                f"Connection aborted fetching UID {uid_str}"
            ) from exc
        if status != "OK":
            raise TransientFetchError(f"Failed to fetch message UID {uid_str}")
        payload = _extract_rfc822(fetch_data)
        if payload is None:
            raise MailSourceError(f"No RFC822 payload returned for UID {uid_str}")
        return payload

    def _close(self) -> None:
        if self._connection is None:
            return
        try:
            if self._selected is not None:
                LOGGER.debug("Closing IMAP mailbox %s", self._selected)
                self._connection.close()
        except (imaplib.IMAP4.error, OSError):  # pragma: no cover - server state
            LOGGER.debug("IMAP close raised; continuing with logout")
        finally:
            try:
                self._connection.logout()
            except (imaplib.IMAP4.error, OSError):  # pragma: no cover
                LOGGER.debug("IMAP logout raised; suppressing during shutdown")
            self._connection = None
            self._selected = None
            self._credentials = None

    def _require_connection(self) -> imaplib.IMAP4 | imaplib.IMAP4_SSL:
        if self._connection is None and self._credentials is not None:
            self._reconnect(*self._credentials)
        if self._connection is None:
            raise ConnectivityError("IMAP connection has not been established")
        return self._connection

    def _reconnect(self, username: str, secret: str, oauth: bool) -> None:
        """Open a new session after an abort and restore the selected mailbox."""
        LOGGER.info("Reconnecting to IMAP host %s as %s", self._host, username)
        self._connect()
        connection = self._require_connection()
        self._login(connection, username, secret, oauth)
        if self._selected is not None:
            self._open_folder(self._selected)

    def _drop_connection(self) -> None:
        """Forget an aborted session; the next call reconnects."""
        if self._connection is None:
            return
        try:
            self._connection.shutdown()
        except (imaplib.IMAP4.error, OSError):
            LOGGER.debug("IMAP shutdown raised after abort; discarding connection")
        self._connection = None


def create_mail_source(account: Account) -> ImapMailSource:
    """Build an IMAP source for ``account`` based on its provider kind."""
    if account.provider is ProviderKind.IMAP:
        if not account.imap_host:
            raise MailSourceError("IMAP server is not configured for this account")
        port = account.imap_port if account.imap_port > 0 else 993
        return ImapMailSource(account.imap_host, port, use_ssl=account.use_ssl)

    endpoint = OAUTH_ENDPOINTS.get(account.provider)
    if endpoint is None:
        raise MailSourceError(f"Provider {account.provider.value} is not supported")
    host, port = endpoint
    return ImapMailSource(host, port, use_ssl=True)


def _quote_mailbox(name: str) -> str:
    if name.upper() == "INBOX":
        return name
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _imap_date(value: datetime) -> str:
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year:04d}"


def _parse_list_response(
    data: Iterable[bytes | tuple[bytes, bytes] | None],
) -> Iterator[tuple[tuple[bytes, ...], str]]:
    for entry in data:
        if entry is None:
            continue
        if isinstance(entry, tuple):
            # Literal mailbox names arrive as (prefix, name).
            prefix, literal = entry
            match = _LIST_PATTERN.match(prefix.strip() + b' "' + literal + b'"')
        else:
            match = _LIST_PATTERN.match(entry.strip())
        if match is None:
            continue
        flags = tuple(match.group("flags").split())
        name = match.group("name").strip()
        if name.startswith(b'"') and name.endswith(b'"'):
            name = name[1:-1].replace(b'\\"', b'"').replace(b"\\\\", b"\\")
        yield flags, name.decode("utf-8", errors="replace")


def _parse_internaldates(
    fetch_data: Iterable[bytes | tuple[bytes, bytes] | None],
) -> Iterator[MessageRef]:
    for entry in fetch_data:
        line = entry[0] if isinstance(entry, tuple) else entry
        if not line:
            continue
        uid_match = _UID_PATTERN.search(line)
        if uid_match is None:
            continue
        parsed = imaplib.Internaldate2tuple(line)
        received_at = (
            datetime.fromtimestamp(time.mktime(parsed), tz=UTC) if parsed else None
        )
        yield MessageRef(uid=int(uid_match.group(1)), received_at=received_at)


def _chunked(items: Iterable[bytes], size: int) -> Iterator[list[bytes]]:
    """Yield successive lists of ``size`` elements."""
    bucket: list[bytes] = []
    for item in items:
        bucket.append(item)
        if len(bucket) >= size:
            yield bucket
            bucket = []
    if bucket:
        yield bucket


def _extract_rfc822(fetch_data: list[tuple[bytes, bytes] | bytes]) -> bytes | None:
    """Extract RFC822 payload from ``imaplib`` response chunks."""
    for entry in fetch_data:
        if isinstance(entry, tuple) and len(entry) == 2:
            return entry[1]
    return None


__all__ = [
    "OAUTH_ENDPOINTS",
    "ImapMailSource",
    "create_mail_source",
]
