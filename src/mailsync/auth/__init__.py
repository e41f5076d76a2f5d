"""OAuth2 token providers keyed by mail provider kind."""

from __future__ import annotations

from ..core.config import AppSettings
from ..core.interfaces import TokenStore
from ..core.models import ProviderKind
from .base import (
    REFRESH_LEAD,
    InteractiveLogin,
    OAuthConfigurationError,
    OAuthTokenProvider,
    RefreshRejected,
    TokenGrant,
)
from .gmail import GmailAuthProvider
from .outlook import OutlookAuthProvider


def build_auth_providers(
    settings: AppSettings,
    token_store: TokenStore,
    *,
    interactive: InteractiveLogin | None = None,
) -> dict[ProviderKind, OAuthTokenProvider]:
    """Return the dispatch table used to resolve OAuth credentials."""
    return {
        ProviderKind.GMAIL: GmailAuthProvider(
            settings.gmail, token_store, interactive=interactive
        ),
        ProviderKind.OUTLOOK: OutlookAuthProvider(
            settings.outlook, token_store, interactive=interactive
        ),
    }


__all__ = [
    "REFRESH_LEAD",
    "GmailAuthProvider",
    "InteractiveLogin",
    "OAuthConfigurationError",
    "OAuthTokenProvider",
    "OutlookAuthProvider",
    "RefreshRejected",
    "TokenGrant",
    "build_auth_providers",
]
