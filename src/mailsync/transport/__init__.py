"""Transport adapters for external mailbox providers."""

from .imap_client import OAUTH_ENDPOINTS, ImapMailSource, create_mail_source

__all__ = ["OAUTH_ENDPOINTS", "ImapMailSource", "create_mail_source"]
