"""Microsoft identity platform provider for Outlook IMAP access."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import msal

from ..core.config import OutlookOAuthSettings
from ..core.datetime_utils import utc_now
from ..core.interfaces import TokenStore
from ..core.models import OAuthTokenRecord, ProviderKind
from .base import (
    InteractiveLogin,
    OAuthConfigurationError,
    OAuthTokenProvider,
    RefreshRejected,
    TokenGrant,
)

LOGGER = logging.getLogger(__name__)

TOKEN_CACHE_KEY = "OUTLOOK_MSAL_CACHE"
SCOPES = ("https://outlook.office.com/IMAP.AccessAsUser.All",)
AUTHORITY_HOST = "https://login.microsoftonline.com"
_REJECTED_ERRORS = frozenset({"invalid_grant", "interaction_required"})


class OutlookAuthProvider(OAuthTokenProvider):
    """Token provider using an MSAL public client with a persisted cache.

    The serialised MSAL cache is kept in the token store as an opaque
    payload so silent refreshes survive restarts.
    """

    provider = ProviderKind.OUTLOOK

    def __init__(
        self,
        settings: OutlookOAuthSettings,
        token_store: TokenStore,
        *,
        interactive: InteractiveLogin | None = None,
        clock: Callable[[], datetime] = utc_now,
        app_factory: Callable[[msal.SerializableTokenCache], Any] | None = None,
    ) -> None:
        super().__init__(token_store, interactive=interactive, clock=clock)
        self._settings = settings
        self._app_factory = app_factory or self._build_public_client

    async def _refresh(self, record: OAuthTokenRecord) -> TokenGrant | None:
        return await asyncio.to_thread(self._refresh_silently, record.account_id)

    async def _interactive_login(self, login_hint: str | None) -> TokenGrant:
        LOGGER.info("Starting Outlook interactive sign-in")
        return await asyncio.to_thread(self._acquire_interactively, login_hint)

    def _refresh_silently(self, account_address: str) -> TokenGrant | None:
        cache = self._load_cache()
        app = self._app_factory(cache)
        accounts = app.get_accounts(username=account_address)
        if not accounts:
            LOGGER.warning("No cached Outlook account available for silent refresh")
            return None

        result = app.acquire_token_silent_with_error(list(SCOPES), account=accounts[0])
        self._save_cache(cache)
        if result is None:
            return None
        if "access_token" not in result:
            error = result.get("error")
            description = result.get("error_description") or error
            if error in _REJECTED_ERRORS:
                raise RefreshRejected(f"Outlook refresh rejected: {description}")
            raise RuntimeError(f"Outlook refresh failed: {description}")
        return self._grant_from_result(result, fallback_address=account_address)

    def _acquire_interactively(self, login_hint: str | None) -> TokenGrant:
        cache = self._load_cache()
        app = self._app_factory(cache)
        result = app.acquire_token_interactive(
            list(SCOPES), login_hint=login_hint, prompt="select_account"
        )
        self._save_cache(cache)
        if "access_token" not in result:
            if result.get("error") == "access_denied":
                raise RuntimeError("Authentication cancelled by user")
            raise RuntimeError(
                result.get("error_description")
                or result.get("error")
                or "Outlook authentication failed"
            )
        grant = self._grant_from_result(result, fallback_address=login_hint)
        LOGGER.info("Outlook authentication successful for %s", grant.account_address)
        return grant

    def _grant_from_result(
        self, result: dict[str, Any], *, fallback_address: str | None
    ) -> TokenGrant:
        claims = result.get("id_token_claims") or {}
        address = claims.get("preferred_username") or fallback_address
        expires_in = int(result.get("expires_in") or 3600)
        scope = result.get("scope")
        return TokenGrant(
            account_address=address,
            access_token=result["access_token"],
            expires_at=self._clock() + timedelta(seconds=expires_in),
            refresh_token=result.get("refresh_token"),
            scopes=tuple(scope.split()) if isinstance(scope, str) else SCOPES,
        )

    def _build_public_client(
        self, cache: msal.SerializableTokenCache
    ) -> msal.PublicClientApplication:
        if not self._settings.client_id:
            raise OAuthConfigurationError("Outlook OAuth client id is not configured")
        return msal.PublicClientApplication(
            self._settings.client_id,
            authority=f"{AUTHORITY_HOST}/{self._settings.tenant_id}",
            token_cache=cache,
        )

    def _load_cache(self) -> msal.SerializableTokenCache:
        cache = msal.SerializableTokenCache()
        payload = self._token_store.get_payload(TOKEN_CACHE_KEY)
        if payload:
            cache.deserialize(payload.decode("utf-8"))
        return cache

    def _save_cache(self, cache: msal.SerializableTokenCache) -> None:
        if cache.has_state_changed:
            self._token_store.store_payload(
                TOKEN_CACHE_KEY, cache.serialize().encode("utf-8")
            )


__all__ = ["OutlookAuthProvider", "SCOPES", "TOKEN_CACHE_KEY"]
