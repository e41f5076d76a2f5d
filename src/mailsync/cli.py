"""Command-line entry point for mailsync."""

from __future__ import annotations

import argparse
import asyncio
import signal
import uuid
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

from mailsync.auth import build_auth_providers
from mailsync.core import AppSettings, configure_logging, load_app_settings
from mailsync.core.models import (
    Account,
    ProviderKind,
    SyncPreferences,
    SyncProgress,
)
from mailsync.intelligence import build_analysis_service
from mailsync.storage import AttachmentStore, SqliteMailStore, SqliteTokenStore
from mailsync.sync import (
    AccountSyncOrchestrator,
    FolderSynchronizer,
    HistoricalSyncCoordinator,
    connectivity_policy,
    fetch_policy,
)
from mailsync.transport import create_mail_source

DEFAULT_USER = "default"


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Multi-account IMAP mail sync")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=["info", "add-account", "sync", "sync-historical"],
        help="Operation to execute.",
    )
    parser.add_argument(
        "--user-id",
        dest="user_id",
        default=DEFAULT_USER,
        help="Owner of the accounts to manage (default: default).",
    )
    parser.add_argument(
        "--account-id",
        dest="account_id",
        default=None,
        help="Synchronise only this account.",
    )
    parser.add_argument("--email", default=None, help="Mailbox address to add.")
    parser.add_argument(
        "--provider",
        choices=[kind.value for kind in ProviderKind],
        default=ProviderKind.IMAP.value,
        help="Mail provider of the new account (default: imap).",
    )
    parser.add_argument("--imap-host", dest="imap_host", default=None)
    parser.add_argument("--imap-port", dest="imap_port", type=int, default=993)
    parser.add_argument("--password", default=None, help="IMAP password.")
    parser.add_argument(
        "--no-ssl", dest="use_ssl", action="store_false", help="Disable IMAP TLS."
    )
    parser.add_argument(
        "--authorize",
        action="store_true",
        help="Run the OAuth sign-in immediately when adding an OAuth account.",
    )
    parser.add_argument("--include-sent", dest="include_sent", action="store_true")
    parser.add_argument(
        "--include-drafts", dest="include_drafts", action="store_true"
    )
    parser.add_argument(
        "--include-archive", dest="include_archive", action="store_true"
    )
    parser.add_argument(
        "--skip-sent",
        dest="skip_sent",
        action="store_true",
        help="Exclude the sent folder from a historical sync.",
    )
    parser.add_argument(
        "--no-attachments",
        dest="sync_attachments",
        action="store_false",
        help="Do not download attachments.",
    )
    parser.add_argument(
        "--max-attachment-mb",
        dest="max_attachment_mb",
        type=int,
        default=25,
        help="Skip attachments above this size; 0 disables the limit.",
    )
    parser.add_argument(
        "--initial-days",
        dest="initial_days",
        type=int,
        default=0,
        help="History pulled on the first sync of a new account.",
    )
    parser.add_argument(
        "--months",
        type=int,
        default=None,
        help="Look-back for sync-historical; 0 or less means ten years.",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return the exit status."""
    command = args.command
    if command == "info":
        return _run_info(settings, args.user_id)
    if command == "add-account":
        return _run_add_account(settings, args)
    if command == "sync":
        return _run_with_cancellation(lambda event: _run_sync(settings, args, event))
    if command == "sync-historical":
        return _run_with_cancellation(
            lambda event: _run_historical(settings, args, event)
        )
    return 2


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    return execute(args, settings)


def _run_info(settings: AppSettings, user_id: str) -> int:
    print("mailsync is ready. Add an account and run 'sync' to get started.")
    print(f"Database path: {settings.storage.db_path}")
    print(f"Attachments directory: {settings.storage.attachments_dir}")
    with SqliteMailStore(settings.storage) as store:
        accounts = store.accounts.get_by_user(user_id)
        if not accounts:
            print(f"No accounts configured for user '{user_id}'.")
            return 0
        for account in accounts:
            state = account.sync_state
            synced = (
                state.last_synced_at.isoformat() if state.last_synced_at else "never"
            )
            flag = "" if account.is_active else " (inactive)"
            print(
                f"- {account.id} {account.email_address} [{account.provider.value}]"
                f"{flag} status={state.status.value} last_synced={synced} "
                f"messages={store.messages.count(account.id)}"
            )
            if state.last_sync_error:
                print(f"  last error: {state.last_sync_error}")
    return 0


def _run_add_account(settings: AppSettings, args: argparse.Namespace) -> int:
    if not args.email:
        print("add-account requires --email")
        return 2
    provider = ProviderKind(args.provider)
    if provider is ProviderKind.IMAP and not args.imap_host:
        print("IMAP accounts require --imap-host")
        return 2

    account = Account(
        id=uuid.uuid4().hex,
        user_id=args.user_id,
        email_address=args.email,
        provider=provider,
        imap_host=args.imap_host,
        imap_port=args.imap_port,
        use_ssl=args.use_ssl,
        password=args.password,
        include_sent=args.include_sent,
        include_drafts=args.include_drafts,
        include_archive=args.include_archive,
        sync_attachments=args.sync_attachments,
        max_attachment_size_mb=args.max_attachment_mb,
        initial_sync_days=args.initial_days,
    )

    if provider.uses_oauth and args.authorize:
        with SqliteTokenStore(settings.storage) as token_store:
            auth = build_auth_providers(settings, token_store)[provider]
            try:
                record = asyncio.run(auth.authorize(args.email))
            except Exception as exc:  # pylint: disable=broad-exception-caught
                print(f"Authorization failed: {exc}")
                return 1
            print(f"Authorized {record.account_id}")

    with SqliteMailStore(settings.storage) as store:
        store.accounts.add(account)
        store.save_changes()
    print(f"Added account {account.id} for {account.email_address}")
    return 0


async def _run_sync(
    settings: AppSettings, args: argparse.Namespace, cancel_event: asyncio.Event
) -> int:
    with (
        SqliteMailStore(settings.storage) as store,
        SqliteTokenStore(settings.storage) as token_store,
    ):
        orchestrator = _build_orchestrator(settings, store, token_store)
        if args.account_id:
            accounts = [store.accounts.get_by_id(args.account_id)]
            if accounts[0] is None:
                print(f"Account {args.account_id} not found")
                return 1
        else:
            accounts = [
                account
                for account in store.accounts.get_by_user(args.user_id)
                if account.is_active
            ]
        if not accounts:
            print(f"No active accounts configured for user '{args.user_id}'.")
            return 0

        exit_code = 0
        for account in accounts:
            if account is None or cancel_event.is_set():
                break
            result = await orchestrator.sync_account(
                account,
                sync_attachments_override=None if args.sync_attachments else False,
                include_sent=account.include_sent or args.include_sent,
                include_drafts=account.include_drafts or args.include_drafts,
                include_archive=account.include_archive or args.include_archive,
                cancel_event=cancel_event,
            )
            if result.success:
                print(
                    f"{account.email_address}: {result.new_emails_count} new of "
                    f"{result.total_emails_checked} checked, "
                    f"{result.attachments_stored} attachment(s) stored"
                )
            else:
                print(f"{account.email_address}: sync failed: {result.error_message}")
                exit_code = 1
        return exit_code


async def _run_historical(
    settings: AppSettings, args: argparse.Namespace, cancel_event: asyncio.Event
) -> int:
    months = args.months if args.months is not None else (
        settings.sync.default_history_months
    )
    preferences = SyncPreferences(
        history_months=months,
        download_attachments=args.sync_attachments,
        include_sent_folder=not args.skip_sent,
        include_drafts_folder=args.include_drafts,
        include_archive_folder=args.include_archive,
    )
    with (
        SqliteMailStore(settings.storage) as store,
        SqliteTokenStore(settings.storage) as token_store,
    ):
        coordinator = HistoricalSyncCoordinator(
            store.accounts, _build_orchestrator(settings, store, token_store)
        )
        result = await coordinator.sync_historical(
            args.user_id,
            preferences,
            progress=_print_progress,
            cancel_event=cancel_event,
        )

    print(
        f"Historical sync {result.status.value}: {result.emails_synced} new of "
        f"{result.total_emails_found} found"
    )
    for error in result.errors:
        print(f"  error: {error}")
    return 0 if not result.errors else 1


def _build_orchestrator(
    settings: AppSettings, store: SqliteMailStore, token_store: SqliteTokenStore
) -> AccountSyncOrchestrator:
    folders = FolderSynchronizer(
        store.messages,
        store,
        AttachmentStore(settings.storage.attachments_dir),
        build_analysis_service(settings.llm),
        fetch_policy(settings.retry),
    )
    return AccountSyncOrchestrator(
        accounts=store.accounts,
        unit_of_work=store,
        folders=folders,
        source_factory=create_mail_source,
        auth_providers=build_auth_providers(settings, token_store),
        connectivity_policy=connectivity_policy(settings.retry),
        settings=settings.sync,
    )


def _print_progress(snapshot: SyncProgress) -> None:
    print(snapshot.message)


def _run_with_cancellation(
    command: Callable[[asyncio.Event], Awaitable[int]],
) -> int:
    async def runner() -> int:
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows
            pass
        return await command(cancel_event)

    return asyncio.run(runner())


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
