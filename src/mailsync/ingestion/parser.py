"""Utilities for parsing raw RFC822 messages into external messages."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parseaddr, parsedate_to_datetime

from ..core.datetime_utils import ensure_utc
from ..core.models import ExternalAttachment, ExternalMessage

LOGGER = logging.getLogger(__name__)


class EmailParser:
    """Convert raw email payloads into provider-agnostic messages."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def parse(
        self, payload: bytes, *, received_at: datetime | None = None
    ) -> ExternalMessage:
        """Parse raw RFC822 bytes; ``received_at`` overrides the Date header."""
        message = self._parser.parsebytes(payload)
        sent_at = _try_parse_datetime(message.get("Date"))
        sender_name, sender = _split_sender(message.get("From"))

        body_text, body_html = _extract_bodies(message)

        return ExternalMessage(
            message_id=_clean_header(message.get("Message-ID")),
            subject=_clean_header(message.get("Subject")),
            sender=sender,
            sender_name=sender_name,
            to=tuple(_extract_addresses(message.get_all("To", []))),
            cc=tuple(_extract_addresses(message.get_all("Cc", []))),
            bcc=tuple(_extract_addresses(message.get_all("Bcc", []))),
            sent_at=sent_at,
            received_at=ensure_utc(received_at) or sent_at,
            body_text=body_text,
            body_html=body_html,
            in_reply_to=_clean_header(message.get("In-Reply-To")),
            references=tuple(str(message.get("References") or "").split()),
            thread_index=_clean_header(message.get("Thread-Index")),
            attachments=tuple(_collect_attachments(message)),
        )


def _clean_header(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _extract_addresses(headers: Iterable[str]) -> Iterable[str]:
    for _, email_address in getaddresses([str(header) for header in headers]):
        if email_address:
            yield email_address


def _split_sender(header_value: object) -> tuple[str | None, str | None]:
    if header_value is None:
        return None, None
    name, address = parseaddr(str(header_value))
    return (name or None), (address or None)


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        try:
            content_obj = part.get_content()
        except (LookupError, ValueError):
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        if content_type == "text/plain":
            plain_chunks.append(content)
        elif content_type == "text/html":
            html_chunks.append(content)

    return _collapse_chunks(plain_chunks, "\n\n"), _collapse_chunks(html_chunks, "\n")


def _collect_attachments(message: EmailMessage) -> Iterable[ExternalAttachment]:
    for part in message.iter_attachments():
        if part.is_multipart():
            continue
        try:
            payload = part.get_payload(decode=True) or b""
        except (LookupError, ValueError) as exc:
            LOGGER.warning(
                "Unable to decode attachment %s: %s", part.get_filename(), exc
            )
            continue
        content_id = part.get("Content-ID")
        yield ExternalAttachment(
            filename=part.get_filename(),
            content_type=part.get_content_type(),
            data=payload,
            content_id=str(content_id).strip("<> ") if content_id else None,
        )


def _try_parse_datetime(header_value: str | None) -> datetime | None:
    if header_value is None:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(str(header_value)))
    except (TypeError, ValueError):
        return None


__all__ = ["EmailParser"]
