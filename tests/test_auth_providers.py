"""Tests for the OAuth2 token lifecycle of the Gmail and Outlook providers."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx

from mailsync.auth import (
    GmailAuthProvider,
    OutlookAuthProvider,
    TokenGrant,
    build_auth_providers,
)
from mailsync.auth.outlook import TOKEN_CACHE_KEY
from mailsync.core.config import (
    AppSettings,
    GmailOAuthSettings,
    OutlookOAuthSettings,
)
from mailsync.core.models import OAuthTokenRecord, ProviderKind
from tests.helpers import FIXED_NOW, FixedClock, InMemoryTokenStore

ADDRESS = "owner@example.com"


class RecordingInteractive:
    """Interactive login stand-in returning a prepared grant."""

    def __init__(self, address: str | None = ADDRESS, error: Exception | None = None):
        self.address = address
        self.error = error
        self.hints: list[str | None] = []

    async def __call__(self, login_hint: str | None) -> TokenGrant:
        self.hints.append(login_hint)
        if self.error is not None:
            raise self.error
        return TokenGrant(
            account_address=self.address,
            access_token="interactive-token",
            expires_at=FIXED_NOW + timedelta(hours=1),
            refresh_token="interactive-refresh",
        )


def _stored(provider: ProviderKind, expires_in: timedelta, **extra) -> OAuthTokenRecord:
    return OAuthTokenRecord(
        provider=provider,
        account_id=ADDRESS,
        access_token="stored-token",
        expires_at=FIXED_NOW + expires_in,
        refresh_token=extra.pop("refresh_token", "stored-refresh"),
        **extra,
    )


def _gmail(store, handler, interactive=None) -> tuple[GmailAuthProvider, list]:
    requests: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    provider = GmailAuthProvider(
        GmailOAuthSettings(client_id="client", client_secret="secret"),
        store,
        http_client=client,
        interactive=interactive or RecordingInteractive(),
        clock=FixedClock(),
    )
    return provider, requests


def test_token_outside_refresh_window_is_reused() -> None:
    store = InMemoryTokenStore()
    store.store_token(_stored(ProviderKind.GMAIL, timedelta(minutes=10)))
    provider, requests = _gmail(store, lambda request: httpx.Response(500))

    result = asyncio.run(provider.get_access_token(ADDRESS))

    assert result.success is True
    assert result.access_token == "stored-token"
    assert requests == []


def test_token_inside_refresh_window_is_refreshed() -> None:
    store = InMemoryTokenStore()
    store.store_token(_stored(ProviderKind.GMAIL, timedelta(minutes=4)))
    provider, requests = _gmail(
        store,
        lambda request: httpx.Response(
            200, json={"access_token": "fresh-token", "expires_in": 3600}
        ),
    )

    result = asyncio.run(provider.get_access_token(ADDRESS))

    assert result.access_token == "fresh-token"
    assert len(requests) == 1
    assert b"grant_type=refresh_token" in requests[0].content
    saved = store.get_token(ProviderKind.GMAIL, ADDRESS)
    assert saved is not None
    assert saved.access_token == "fresh-token"
    assert saved.refresh_token == "stored-refresh"
    assert saved.expires_at == FIXED_NOW + timedelta(hours=1)


def test_rejected_refresh_token_is_purged_before_interactive_login() -> None:
    store = InMemoryTokenStore()
    store.store_token(_stored(ProviderKind.GMAIL, timedelta(minutes=1)))
    interactive = RecordingInteractive()
    provider, _ = _gmail(
        store,
        lambda request: httpx.Response(400, json={"error": "invalid_grant"}),
        interactive,
    )

    result = asyncio.run(provider.get_access_token(ADDRESS))

    assert result.access_token == "interactive-token"
    assert interactive.hints == [ADDRESS]
    saved = store.get_token(ProviderKind.GMAIL, ADDRESS)
    assert saved is not None
    assert saved.refresh_token == "interactive-refresh"


def test_server_error_during_refresh_falls_back_to_interactive() -> None:
    store = InMemoryTokenStore()
    store.store_token(_stored(ProviderKind.GMAIL, timedelta(minutes=1)))
    interactive = RecordingInteractive()
    provider, _ = _gmail(store, lambda request: httpx.Response(503), interactive)

    result = asyncio.run(provider.get_access_token(ADDRESS))

    assert result.access_token == "interactive-token"
    assert interactive.hints == [ADDRESS]


def test_missing_refresh_token_goes_interactive() -> None:
    store = InMemoryTokenStore()
    store.store_token(
        _stored(ProviderKind.GMAIL, timedelta(minutes=-5), refresh_token=None)
    )
    interactive = RecordingInteractive()
    provider, requests = _gmail(store, lambda request: httpx.Response(500), interactive)

    result = asyncio.run(provider.get_access_token(ADDRESS))

    assert result.success is True
    assert requests == []
    assert interactive.hints == [ADDRESS]


def test_first_login_persists_token() -> None:
    store = InMemoryTokenStore()
    provider, _ = _gmail(store, lambda request: httpx.Response(500))

    result = asyncio.run(provider.get_access_token(ADDRESS))

    assert result.access_token == "interactive-token"
    assert store.get_token(ProviderKind.GMAIL, ADDRESS) is not None


def test_signed_in_account_must_match_requested_address() -> None:
    store = InMemoryTokenStore()
    provider, _ = _gmail(
        store,
        lambda request: httpx.Response(500),
        RecordingInteractive(address="someone-else@example.com"),
    )

    result = asyncio.run(provider.get_access_token(ADDRESS))

    assert result.success is False
    assert "someone-else@example.com" in (result.error or "")
    assert store.get_token(ProviderKind.GMAIL, "someone-else@example.com") is None
    assert store.get_token(ProviderKind.GMAIL, ADDRESS) is None


def test_interactive_failure_is_reported_as_result() -> None:
    store = InMemoryTokenStore()
    provider, _ = _gmail(
        store,
        lambda request: httpx.Response(500),
        RecordingInteractive(error=RuntimeError("Authentication cancelled by user")),
    )

    result = asyncio.run(provider.get_access_token(ADDRESS))

    assert result.success is False
    assert result.error == "Authentication cancelled by user"


def test_empty_address_and_cancellation_fail_fast() -> None:
    store = InMemoryTokenStore()
    interactive = RecordingInteractive()
    provider, _ = _gmail(store, lambda request: httpx.Response(500), interactive)
    cancel_event = asyncio.Event()
    cancel_event.set()

    empty = asyncio.run(provider.get_access_token(""))
    cancelled = asyncio.run(provider.get_access_token(ADDRESS, cancel_event))

    assert empty.error == "Email address is required"
    assert cancelled.error == "Authentication cancelled"
    assert interactive.hints == []


def test_missing_gmail_credentials_fail_refresh_and_login() -> None:
    store = InMemoryTokenStore()
    store.store_token(_stored(ProviderKind.GMAIL, timedelta(minutes=1)))
    provider = GmailAuthProvider(GmailOAuthSettings(), store, clock=FixedClock())

    result = asyncio.run(provider.get_access_token(ADDRESS))

    assert result.success is False
    assert "not configured" in (result.error or "")


class FakeMsalApp:
    """Subset of ``msal.PublicClientApplication`` used by the provider."""

    def __init__(self, silent_result=None, interactive_result=None, accounts=None):
        self.silent_result = silent_result
        self.interactive_result = interactive_result
        self.accounts = [{"username": ADDRESS}] if accounts is None else accounts
        self.silent_calls = 0
        self.interactive_calls: list[str | None] = []

    def get_accounts(self, username=None):
        return [acct for acct in self.accounts if acct["username"] == username]

    def acquire_token_silent_with_error(self, scopes, account):
        self.silent_calls += 1
        return self.silent_result

    def acquire_token_interactive(self, scopes, login_hint=None, prompt=None):
        self.interactive_calls.append(login_hint)
        return self.interactive_result


def _outlook(store, app: FakeMsalApp, interactive=None) -> OutlookAuthProvider:
    return OutlookAuthProvider(
        OutlookOAuthSettings(client_id="app-id"),
        store,
        interactive=interactive,
        clock=FixedClock(),
        app_factory=lambda cache: app,
    )


def test_outlook_silent_refresh_updates_token() -> None:
    store = InMemoryTokenStore()
    store.store_token(_stored(ProviderKind.OUTLOOK, timedelta(minutes=2)))
    app = FakeMsalApp(
        silent_result={"access_token": "silent-token", "expires_in": 1800}
    )

    result = asyncio.run(_outlook(store, app).get_access_token(ADDRESS))

    assert result.access_token == "silent-token"
    assert app.silent_calls == 1
    saved = store.get_token(ProviderKind.OUTLOOK, ADDRESS)
    assert saved is not None
    assert saved.expires_at == FIXED_NOW + timedelta(minutes=30)


def test_outlook_invalid_grant_purges_and_reauthorises() -> None:
    store = InMemoryTokenStore()
    store.store_token(_stored(ProviderKind.OUTLOOK, timedelta(minutes=2)))
    app = FakeMsalApp(
        silent_result={"error": "invalid_grant", "error_description": "expired"}
    )
    interactive = RecordingInteractive()

    result = asyncio.run(_outlook(store, app, interactive).get_access_token(ADDRESS))

    assert result.access_token == "interactive-token"
    assert interactive.hints == [ADDRESS]


def test_outlook_without_cached_account_goes_interactive() -> None:
    store = InMemoryTokenStore()
    store.store_token(_stored(ProviderKind.OUTLOOK, timedelta(minutes=2)))
    app = FakeMsalApp(accounts=[])
    interactive = RecordingInteractive()

    result = asyncio.run(_outlook(store, app, interactive).get_access_token(ADDRESS))

    assert result.success is True
    assert app.silent_calls == 0
    assert interactive.hints == [ADDRESS]


def test_outlook_interactive_login_reads_signed_in_address() -> None:
    store = InMemoryTokenStore()
    app = FakeMsalApp(
        interactive_result={
            "access_token": "msal-token",
            "refresh_token": "msal-refresh",
            "expires_in": 3600,
            "id_token_claims": {"preferred_username": ADDRESS},
        }
    )

    record = asyncio.run(_outlook(store, app).authorize(ADDRESS))

    assert record.account_id == ADDRESS
    assert record.access_token == "msal-token"
    assert app.interactive_calls == [ADDRESS]
    assert TOKEN_CACHE_KEY not in store.payloads


def test_outlook_access_denied_is_reported() -> None:
    store = InMemoryTokenStore()
    app = FakeMsalApp(interactive_result={"error": "access_denied"})

    result = asyncio.run(_outlook(store, app).get_access_token(ADDRESS))

    assert result.success is False
    assert result.error == "Authentication cancelled by user"


def test_build_auth_providers_covers_oauth_kinds() -> None:
    providers = build_auth_providers(AppSettings(), InMemoryTokenStore())

    assert set(providers) == {ProviderKind.GMAIL, ProviderKind.OUTLOOK}
    assert providers[ProviderKind.GMAIL].provider is ProviderKind.GMAIL
    assert providers[ProviderKind.OUTLOOK].provider is ProviderKind.OUTLOOK
