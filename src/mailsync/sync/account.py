"""Orchestrate a full synchronisation pass for one account."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

from ..core.config import SyncSettings
from ..core.datetime_utils import ensure_utc, max_datetime, utc_now
from ..core.interfaces import (
    AccountRepository,
    AuthenticationError,
    AuthProvider,
    MailSource,
    MailSourceError,
    MailSourceFactory,
    UnitOfWork,
)
from ..core.models import (
    Account,
    AccountSyncResult,
    FolderKind,
    FolderSyncOutcome,
    ProviderKind,
    mark_completed,
    mark_failed,
    mark_in_progress,
)
from .folder import FolderSynchronizer
from .retry import RetryPolicy

LOGGER = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Sync cancelled"


class SyncCancelled(Exception):
    """Raised internally when the caller requests cancellation."""


def compute_watermark(
    account: Account,
    resume_from: datetime | None,
    *,
    now: datetime,
    overlap: timedelta,
    default_initial_days: int,
) -> datetime:
    """Return the instant after which messages are considered new.

    An explicit ``resume_from`` wins. Otherwise the stored watermark minus
    ``overlap`` is used, never earlier than the account's initial window.
    The result is never in the future.
    """
    if resume_from is not None:
        return min(ensure_utc(resume_from) or now, now)

    initial_days = (
        account.initial_sync_days
        if account.initial_sync_days > 0
        else default_initial_days
    )
    baseline = now - timedelta(days=initial_days)
    last_synced = ensure_utc(account.sync_state.last_synced_at)
    candidate = last_synced - overlap if last_synced is not None else baseline
    return min(max(candidate, baseline), now)


class AccountSyncOrchestrator:
    """Authenticate, walk the selected folders and record the outcome."""

    def __init__(
        self,
        *,
        accounts: AccountRepository,
        unit_of_work: UnitOfWork,
        folders: FolderSynchronizer,
        source_factory: MailSourceFactory,
        auth_providers: Mapping[ProviderKind, AuthProvider],
        connectivity_policy: RetryPolicy,
        settings: SyncSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._accounts = accounts
        self._unit_of_work = unit_of_work
        self._folders = folders
        self._source_factory = source_factory
        self._auth_providers = dict(auth_providers)
        self._connectivity = connectivity_policy
        self._settings = settings
        self._clock = clock

    async def sync_account_by_id(
        self,
        account_id: str,
        resume_from: datetime | None = None,
        sync_attachments_override: bool | None = None,
        include_sent: bool = False,
        include_drafts: bool = False,
        include_archive: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> AccountSyncResult:
        """Load ``account_id`` and synchronise it."""
        account = self._accounts.get_by_id(account_id)
        if account is None:
            LOGGER.warning("Account %s not found", account_id)
            return AccountSyncResult(
                success=False,
                synced_at=self._clock(),
                error_message=f"Account {account_id} not found",
            )
        return await self.sync_account(
            account,
            resume_from=resume_from,
            sync_attachments_override=sync_attachments_override,
            include_sent=include_sent,
            include_drafts=include_drafts,
            include_archive=include_archive,
            cancel_event=cancel_event,
        )

    async def sync_account(
        self,
        account: Account,
        resume_from: datetime | None = None,
        sync_attachments_override: bool | None = None,
        include_sent: bool = False,
        include_drafts: bool = False,
        include_archive: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> AccountSyncResult:
        """Synchronise ``account`` and persist its new sync state.

        Never raises for sync failures; the returned result carries the error
        and the account is marked failed.
        """
        LOGGER.info(
            "Starting sync for account %s (provider %s)",
            account.email_address,
            account.provider.value,
        )
        account = mark_in_progress(account, self._clock())
        source: MailSource | None = None
        try:
            self._accounts.update(account)
            self._unit_of_work.save_changes()
            _raise_if_cancelled(cancel_event)
            secret = await self._resolve_secret(account, cancel_event)
            _raise_if_cancelled(cancel_event)

            source = self._source_factory(account)
            await self._connectivity.execute(source.connect)
            await self._connectivity.execute(
                functools.partial(
                    source.authenticate,
                    account.email_address,
                    secret,
                    oauth=account.provider.uses_oauth,
                )
            )
            LOGGER.info("Connected to IMAP server for %s", account.email_address)

            watermark = compute_watermark(
                account,
                resume_from,
                now=self._clock(),
                overlap=timedelta(minutes=self._settings.overlap_minutes),
                default_initial_days=self._settings.initial_sync_months * 30,
            )
            sync_attachments = (
                sync_attachments_override
                if sync_attachments_override is not None
                else account.sync_attachments
            )
            selection = (
                (FolderKind.INBOX, True),
                (FolderKind.SENT, include_sent),
                (FolderKind.DRAFTS, include_drafts),
                (FolderKind.ARCHIVE, include_archive),
            )

            outcomes: list[FolderSyncOutcome] = []
            for kind, enabled in selection:
                if not enabled:
                    continue
                _raise_if_cancelled(cancel_event)
                folder_name = await _resolve_folder(source, kind)
                if folder_name is None:
                    continue
                outcome = await self._folders.sync_folder(
                    source,
                    account,
                    kind,
                    folder_name,
                    watermark,
                    sync_attachments,
                    cancel_event,
                )
                outcomes.append(outcome)
            _raise_if_cancelled(cancel_event)

            return self._complete(account, outcomes)
        except SyncCancelled:
            LOGGER.info("Sync cancelled for %s", account.email_address)
            return self._fail(account, CANCELLED_MESSAGE)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            if cancel_event is not None and cancel_event.is_set():
                return self._fail(account, CANCELLED_MESSAGE)
            LOGGER.error(
                "Email sync failed for %s: %s",
                account.email_address,
                exc,
                exc_info=True,
            )
            return self._fail(account, str(exc) or type(exc).__name__)
        finally:
            if source is not None:
                await _close_quietly(source)

    async def _resolve_secret(
        self, account: Account, cancel_event: asyncio.Event | None
    ) -> str:
        if account.provider is ProviderKind.IMAP:
            if not account.password:
                raise AuthenticationError("Password is required for IMAP provider")
            if not account.imap_host:
                raise MailSourceError("IMAP server is not configured for this account")
            return account.password

        provider = self._auth_providers.get(account.provider)
        if provider is None:
            raise AuthenticationError(
                f"Provider {account.provider.value} is not supported"
            )
        result = await provider.get_access_token(account.email_address, cancel_event)
        if not result.success or result.access_token is None:
            raise AuthenticationError(
                result.error or f"Failed to acquire {account.provider.value} token"
            )
        return result.access_token

    def _complete(
        self, account: Account, outcomes: list[FolderSyncOutcome]
    ) -> AccountSyncResult:
        new_count = sum(outcome.new_emails for outcome in outcomes)
        total_checked = sum(outcome.total_found for outcome in outcomes)
        attachments = sum(outcome.attachments_stored for outcome in outcomes)
        synced_through = max_datetime(
            account.sync_state.last_synced_at,
            *(outcome.latest_received_at for outcome in outcomes),
        )
        now = self._clock()
        completed = mark_completed(
            account,
            new_emails=new_count,
            attachments=attachments,
            synced_through=synced_through,
            now=now,
        )
        self._accounts.update(completed)
        self._unit_of_work.save_changes()
        LOGGER.info(
            "Sync completed for %s. New emails: %d, attachments stored: %d, "
            "folders processed: %d",
            account.email_address,
            new_count,
            attachments,
            len(outcomes),
        )
        return AccountSyncResult(
            success=True,
            synced_at=now,
            new_emails_count=new_count,
            total_emails_checked=total_checked,
            attachments_stored=attachments,
            folders=tuple(outcomes),
        )

    def _fail(self, account: Account, error: str) -> AccountSyncResult:
        now = self._clock()
        failed = mark_failed(account, error, now)
        if not failed.is_active and account.is_active:
            LOGGER.warning(
                "Deactivating %s after %d consecutive failures",
                account.email_address,
                failed.sync_state.consecutive_failures,
            )
        try:
            self._accounts.update(failed)
            self._unit_of_work.save_changes()
        except Exception:  # pylint: disable=broad-exception-caught
            LOGGER.error(
                "Unable to record sync failure for %s",
                account.email_address,
                exc_info=True,
            )
        return AccountSyncResult(success=False, synced_at=now, error_message=error)


async def _resolve_folder(source: MailSource, kind: FolderKind) -> str | None:
    try:
        name = await source.resolve_folder(kind)
    except MailSourceError as exc:
        LOGGER.debug("Provider does not expose %s: %s", kind.value, exc)
        return None
    if name is None:
        LOGGER.debug("Provider does not expose %s", kind.value)
    return name


async def _close_quietly(source: MailSource) -> None:
    try:
        await source.close()
    except Exception:  # pylint: disable=broad-exception-caught
        LOGGER.debug("Closing the mail source failed", exc_info=True)


def _raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelled()


__all__ = [
    "CANCELLED_MESSAGE",
    "AccountSyncOrchestrator",
    "SyncCancelled",
    "compute_watermark",
]
