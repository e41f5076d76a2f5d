"""Google OAuth2 provider for Gmail IMAP access."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from google_auth_oauthlib.flow import InstalledAppFlow

from ..core.config import GmailOAuthSettings
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

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
PROFILE_URI = "https://gmail.googleapis.com/gmail/v1/users/me/profile"
# IMAP XOAUTH2 requires the full mail scope.
SCOPES = ("https://mail.google.com/",)
DEFAULT_EXPIRY_SECONDS = 3600


class GmailAuthProvider(OAuthTokenProvider):
    """Token provider backed by Google's OAuth endpoints."""

    provider = ProviderKind.GMAIL

    def __init__(
        self,
        settings: GmailOAuthSettings,
        token_store: TokenStore,
        *,
        http_client: httpx.AsyncClient | None = None,
        interactive: InteractiveLogin | None = None,
        clock: Callable[[], datetime] = utc_now,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(token_store, interactive=interactive, clock=clock)
        self._settings = settings
        self._http_client = http_client
        self._timeout = timeout

    async def _refresh(self, record: OAuthTokenRecord) -> TokenGrant | None:
        if not record.refresh_token:
            return None
        client_id, client_secret = self._client_credentials()
        payload = await self._post_token(
            {
                "grant_type": "refresh_token",
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": record.refresh_token,
            }
        )
        return self._grant_from_payload(record.account_id, payload)

    async def _interactive_login(self, login_hint: str | None) -> TokenGrant:
        client_id, client_secret = self._client_credentials()
        LOGGER.info("Starting Gmail OAuth consent flow")
        credentials = await asyncio.to_thread(
            _run_consent_flow, client_id, client_secret, login_hint
        )
        address = await self._fetch_profile_address(credentials.token)
        expiry = credentials.expiry
        expires_at = (
            expiry.replace(tzinfo=UTC)
            if expiry is not None
            else self._clock() + timedelta(seconds=DEFAULT_EXPIRY_SECONDS)
        )
        LOGGER.info("Gmail authentication successful for %s", address)
        return TokenGrant(
            account_address=address,
            access_token=credentials.token,
            expires_at=expires_at,
            refresh_token=credentials.refresh_token,
            scopes=tuple(credentials.scopes or SCOPES),
        )

    def _client_credentials(self) -> tuple[str, str]:
        client_id = self._settings.client_id
        client_secret = self._settings.client_secret
        if not client_id or not client_secret:
            raise OAuthConfigurationError("Gmail OAuth credentials are not configured")
        return client_id, client_secret

    def _grant_from_payload(
        self, account_address: str, payload: dict[str, Any]
    ) -> TokenGrant:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise RuntimeError("Google token response is missing 'access_token'")
        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRY_SECONDS)
        scope = payload.get("scope")
        return TokenGrant(
            account_address=account_address,
            access_token=access_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
            refresh_token=payload.get("refresh_token"),
            scopes=tuple(scope.split()) if isinstance(scope, str) else SCOPES,
        )

    async def _post_token(self, form: dict[str, str]) -> dict[str, Any]:
        if self._http_client is not None:
            response = await self._http_client.post(TOKEN_URI, data=form)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(TOKEN_URI, data=form)

        if response.status_code in (400, 401):
            error = _error_code(response)
            if error == "invalid_grant":
                raise RefreshRejected("Google rejected the refresh token")
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise RuntimeError("Unexpected Google token response")
        return data

    async def _fetch_profile_address(self, access_token: str) -> str | None:
        headers = {"Authorization": f"Bearer {access_token}"}
        if self._http_client is not None:
            response = await self._http_client.get(PROFILE_URI, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(PROFILE_URI, headers=headers)
        response.raise_for_status()
        address = response.json().get("emailAddress")
        return address if isinstance(address, str) and address else None


def _run_consent_flow(client_id: str, client_secret: str, login_hint: str | None):
    config = {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": AUTH_URI,
            "token_uri": TOKEN_URI,
        }
    }
    flow = InstalledAppFlow.from_client_config(config, scopes=list(SCOPES))
    extra: dict[str, str] = {"prompt": "consent"}
    if login_hint:
        extra["login_hint"] = login_hint
    return flow.run_local_server(port=0, **extra)


def _error_code(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        error = payload.get("error")
        return error if isinstance(error, str) else None
    return None


__all__ = ["GmailAuthProvider", "SCOPES"]
