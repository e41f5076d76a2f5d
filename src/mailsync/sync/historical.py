"""Back-fill every account of a user over a configurable history window."""

from __future__ import annotations

import asyncio
import calendar
import logging
from collections.abc import Callable
from datetime import datetime

from ..core.datetime_utils import utc_now
from ..core.interfaces import AccountRepository
from ..core.models import (
    HistoricalSyncResult,
    SyncPreferences,
    SyncProgress,
    SyncStatus,
)
from .account import CANCELLED_MESSAGE, AccountSyncOrchestrator

LOGGER = logging.getLogger(__name__)

# Look-back used when no positive history window is configured.
UNBOUNDED_HISTORY_MONTHS = 120

ProgressCallback = Callable[[SyncProgress], None]


def subtract_months(value: datetime, months: int) -> datetime:
    """Return ``value`` moved back by ``months`` calendar months."""
    month_index = value.year * 12 + (value.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def history_start(now: datetime, history_months: int) -> datetime:
    """Return the start of the look-back window, never after ``now``."""
    months = history_months if history_months > 0 else UNBOUNDED_HISTORY_MONTHS
    return min(subtract_months(now, months), now)


class HistoricalSyncCoordinator:
    """Run account syncs sequentially from a common history start."""

    def __init__(
        self,
        accounts: AccountRepository,
        orchestrator: AccountSyncOrchestrator,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._accounts = accounts
        self._orchestrator = orchestrator
        self._clock = clock

    async def sync_historical(
        self,
        user_id: str,
        preferences: SyncPreferences,
        progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> HistoricalSyncResult:
        """Synchronise all accounts of ``user_id`` and aggregate the results."""
        started_at = self._clock()
        total_found = 0
        synced = 0
        errors: list[str] = []
        status = SyncStatus.IN_PROGRESS

        try:
            accounts = self._accounts.get_by_user(user_id)
            if not accounts:
                LOGGER.info("No accounts configured for user %s", user_id)
                return HistoricalSyncResult(
                    user_id=user_id,
                    status=SyncStatus.NO_ACCOUNTS_CONFIGURED,
                    started_at=started_at,
                    finished_at=self._clock(),
                )

            since = history_start(self._clock(), preferences.history_months)
            status = SyncStatus.COMPLETED
            LOGGER.info(
                "Historical sync for user %s across %d accounts since %s",
                user_id,
                len(accounts),
                since.isoformat(),
            )

            for account in accounts:
                if cancel_event is not None and cancel_event.is_set():
                    LOGGER.info("Historical sync for user %s cancelled", user_id)
                    status = SyncStatus.FAILED
                    errors.append(CANCELLED_MESSAGE)
                    break
                if not account.is_active:
                    LOGGER.info("Skipping inactive account %s", account.email_address)
                    continue

                _report(
                    progress,
                    SyncProgress(
                        user_id=user_id,
                        account_email=account.email_address,
                        total_found=0,
                        processed=0,
                        message=(
                            f"Starting sync for {account.email_address} "
                            f"(since {since:%Y-%m-%d %H:%M:%SZ})"
                        ),
                    ),
                )

                result = await self._orchestrator.sync_account(
                    account,
                    resume_from=since,
                    sync_attachments_override=preferences.download_attachments,
                    include_sent=preferences.include_sent_folder,
                    include_drafts=preferences.include_drafts_folder,
                    include_archive=preferences.include_archive_folder,
                    cancel_event=cancel_event,
                )
                total_found += result.total_emails_checked
                synced += result.new_emails_count
                if not result.success:
                    error = result.error_message or "unknown error"
                    errors.append(f"{account.email_address}: {error}")

                _report(
                    progress,
                    SyncProgress(
                        user_id=user_id,
                        account_email=account.email_address,
                        total_found=result.total_emails_checked,
                        processed=result.new_emails_count,
                        message=(
                            f"Completed sync for {account.email_address}: "
                            f"{result.new_emails_count} new of "
                            f"{result.total_emails_checked} checked"
                        ),
                    ),
                )
            if cancel_event is not None and cancel_event.is_set():
                status = SyncStatus.FAILED
        except Exception as exc:  # pylint: disable=broad-exception-caught
            LOGGER.error(
                "Historical sync failed for user %s: %s", user_id, exc, exc_info=True
            )
            errors.append(str(exc) or type(exc).__name__)
            status = SyncStatus.FAILED

        return HistoricalSyncResult(
            user_id=user_id,
            status=status,
            started_at=started_at,
            finished_at=self._clock(),
            total_emails_found=total_found,
            emails_synced=synced,
            errors=tuple(errors),
        )


def _report(progress: ProgressCallback | None, snapshot: SyncProgress) -> None:
    if progress is not None:
        progress(snapshot)


__all__ = [
    "HistoricalSyncCoordinator",
    "ProgressCallback",
    "history_start",
    "subtract_months",
]
