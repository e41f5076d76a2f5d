"""Shared OAuth2 token lifecycle for provider-specific auth providers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..core.datetime_utils import ensure_utc, utc_now
from ..core.interfaces import TokenStore
from ..core.models import AuthResult, OAuthTokenRecord, ProviderKind

LOGGER = logging.getLogger(__name__)

REFRESH_LEAD = timedelta(minutes=5)


class OAuthConfigurationError(RuntimeError):
    """Raised when the OAuth client registration is missing."""


class RefreshRejected(RuntimeError):
    """The provider permanently rejected the stored refresh credentials."""


@dataclass(slots=True, frozen=True)
class TokenGrant:
    """Tokens returned by a refresh or an interactive login."""

    account_address: str | None
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None
    scopes: tuple[str, ...] = ()


InteractiveLogin = Callable[[str | None], Awaitable[TokenGrant]]


class OAuthTokenProvider:
    """Resolve access tokens from the store, refreshing or re-authorising.

    Subclasses implement ``_refresh`` and ``_interactive_login``; the
    interactive step can be replaced with any awaitable callable so headless
    runs never open a browser.
    """

    provider: ProviderKind

    def __init__(
        self,
        token_store: TokenStore,
        *,
        interactive: InteractiveLogin | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._token_store = token_store
        self._interactive = interactive or self._interactive_login
        self._clock = clock

    async def get_access_token(
        self, account_address: str, cancel_event: asyncio.Event | None = None
    ) -> AuthResult:
        """Return a usable access token for ``account_address``."""
        if not account_address:
            return AuthResult.failure("Email address is required")
        if _cancelled(cancel_event):
            return AuthResult.failure("Authentication cancelled")

        record = self._token_store.get_token(self.provider, account_address)
        if record is None:
            LOGGER.info(
                "No stored %s token for %s; starting interactive login",
                self.provider.value,
                account_address,
            )
            return await self._authorize(account_address, cancel_event)

        if not record.is_expiring(REFRESH_LEAD, self._clock()):
            return AuthResult.ok(record.access_token)

        LOGGER.debug("Refreshing %s token for %s", self.provider.value, account_address)
        try:
            grant = await self._refresh(record)
        except RefreshRejected as exc:
            LOGGER.warning(
                "Stored %s token for %s was rejected (%s); purging it",
                self.provider.value,
                account_address,
                exc,
            )
            self._token_store.remove_token(self.provider, account_address)
            return await self._authorize(account_address, cancel_event)
        except Exception:  # pylint: disable=broad-exception-caught
            LOGGER.warning(
                "Silent refresh failed for %s", account_address, exc_info=True
            )
            return await self._authorize(account_address, cancel_event)

        if grant is None:
            return await self._authorize(account_address, cancel_event)

        self._persist(account_address, grant, fallback_refresh=record.refresh_token)
        return AuthResult.ok(grant.access_token)

    async def authorize(self, login_hint: str | None = None) -> OAuthTokenRecord:
        """Run the interactive login and persist the resulting token.

        Nothing is stored when the signed-in account differs from
        ``login_hint``. Returns the stored record so callers learn the
        authorised address.
        """
        grant = await self._interactive(login_hint)
        address = grant.account_address or login_hint
        if not address:
            raise OAuthConfigurationError(
                f"Unable to determine the {self.provider.value} account address"
            )
        if login_hint and address.lower() != login_hint.lower():
            raise OAuthConfigurationError(
                f"Signed in as {address} but {login_hint} was requested"
            )
        return self._persist(address, grant)

    async def _authorize(
        self, account_address: str, cancel_event: asyncio.Event | None
    ) -> AuthResult:
        if _cancelled(cancel_event):
            return AuthResult.failure("Authentication cancelled")
        try:
            record = await self.authorize(account_address)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            LOGGER.error(
                "%s authentication failed for %s: %s",
                self.provider.value,
                account_address,
                exc,
            )
            return AuthResult.failure(str(exc) or type(exc).__name__)
        return AuthResult.ok(record.access_token)

    def _persist(
        self,
        account_address: str,
        grant: TokenGrant,
        *,
        fallback_refresh: str | None = None,
    ) -> OAuthTokenRecord:
        record = OAuthTokenRecord(
            provider=self.provider,
            account_id=account_address,
            access_token=grant.access_token,
            expires_at=ensure_utc(grant.expires_at) or self._clock(),
            refresh_token=grant.refresh_token or fallback_refresh,
            scopes=grant.scopes,
            stored_at=self._clock(),
        )
        self._token_store.store_token(record)
        return record

    async def _refresh(self, record: OAuthTokenRecord) -> TokenGrant | None:
        """Return fresh tokens, ``None`` when a refresh is impossible."""
        raise NotImplementedError

    async def _interactive_login(self, login_hint: str | None) -> TokenGrant:
        """Obtain tokens with user interaction."""
        raise NotImplementedError


def _cancelled(cancel_event: asyncio.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


__all__ = [
    "REFRESH_LEAD",
    "InteractiveLogin",
    "OAuthConfigurationError",
    "OAuthTokenProvider",
    "RefreshRejected",
    "TokenGrant",
]
