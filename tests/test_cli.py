"""Tests for the command-line entry point."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from mailsync import cli
from mailsync.auth import TokenGrant
from mailsync.cli import build_parser, execute
from mailsync.core.config import AppSettings, StorageSettings
from mailsync.core.models import ProviderKind
from mailsync.storage import SqliteMailStore, SqliteTokenStore
from tests.helpers import FIXED_NOW


def _settings(tmp_path: Path) -> AppSettings:
    return AppSettings(
        storage=StorageSettings(
            db_path=tmp_path / "mail.db", attachments_dir=tmp_path / "blobs"
        )
    )


def test_parser_defaults_to_info() -> None:
    args = build_parser().parse_args([])

    assert args.command == "info"
    assert args.user_id == "default"
    assert args.sync_attachments is True


def test_add_account_then_info_lists_it(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    settings = _settings(tmp_path)
    parser = build_parser()

    added = execute(
        parser.parse_args(
            [
                "add-account",
                "--email",
                "owner@example.com",
                "--imap-host",
                "imap.example.com",
                "--password",
                "secret",
                "--include-sent",
            ]
        ),
        settings,
    )
    shown = execute(parser.parse_args(["info"]), settings)

    output = capsys.readouterr().out
    assert added == 0
    assert shown == 0
    assert "owner@example.com [imap]" in output
    assert "status=NotStarted" in output
    with SqliteMailStore(settings.storage) as store:
        (account,) = store.accounts.get_by_user("default")
    assert account.provider is ProviderKind.IMAP
    assert account.include_sent is True
    assert account.password == "secret"


def test_add_imap_account_requires_host(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    args = build_parser().parse_args(["add-account", "--email", "a@example.com"])

    assert execute(args, _settings(tmp_path)) == 2
    assert "--imap-host" in capsys.readouterr().out


def test_sync_without_accounts_is_a_no_op(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    args = build_parser().parse_args(["sync", "--user-id", "nobody"])

    assert execute(args, _settings(tmp_path)) == 0
    assert "No active accounts" in capsys.readouterr().out


def test_historical_sync_without_accounts_reports_status(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    args = build_parser().parse_args(["sync-historical", "--months", "2"])

    assert execute(args, _settings(tmp_path)) == 0
    assert "Historical sync NoAccountsConfigured" in capsys.readouterr().out


def _authorizing_providers(monkeypatch: pytest.MonkeyPatch, signed_in: str) -> None:
    async def interactive(login_hint: str | None) -> TokenGrant:
        return TokenGrant(
            account_address=signed_in,
            access_token="cli-token",
            expires_at=FIXED_NOW + timedelta(hours=1),
            refresh_token="cli-refresh",
        )

    real = cli.build_auth_providers

    def build(settings, token_store):
        return real(settings, token_store, interactive=interactive)

    monkeypatch.setattr(cli, "build_auth_providers", build)


def test_add_oauth_account_with_authorize_stores_token(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    settings = _settings(tmp_path)
    _authorizing_providers(monkeypatch, "owner@gmail.com")
    args = build_parser().parse_args(
        [
            "add-account",
            "--email",
            "owner@gmail.com",
            "--provider",
            "gmail",
            "--authorize",
        ]
    )

    assert execute(args, settings) == 0
    assert "Authorized owner@gmail.com" in capsys.readouterr().out
    with SqliteTokenStore(settings.storage) as token_store:
        record = token_store.get_token(ProviderKind.GMAIL, "owner@gmail.com")
    assert record is not None
    assert record.access_token == "cli-token"


def test_authorize_as_other_account_adds_nothing(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    settings = _settings(tmp_path)
    _authorizing_providers(monkeypatch, "intruder@gmail.com")
    args = build_parser().parse_args(
        [
            "add-account",
            "--email",
            "owner@gmail.com",
            "--provider",
            "gmail",
            "--authorize",
        ]
    )

    assert execute(args, settings) == 1
    assert "Signed in as intruder@gmail.com" in capsys.readouterr().out
    with SqliteTokenStore(settings.storage) as token_store:
        assert token_store.get_token(ProviderKind.GMAIL, "intruder@gmail.com") is None
    with SqliteMailStore(settings.storage) as store:
        assert store.accounts.get_by_user("default") == []
