"""Tests for RFC822 parsing into external messages."""

from __future__ import annotations

from datetime import UTC, datetime
from email.message import EmailMessage

from mailsync.ingestion import EmailParser


def _sample_payload() -> bytes:
    message = EmailMessage()
    message["Subject"] = "Test Email"
    message["From"] = "Sender Name <sender@example.com>"
    message["To"] = "user@example.com"
    message["Cc"] = "another@example.com"
    message["Date"] = "Fri, 24 Oct 2025 15:00:00 +0200"
    message["Message-ID"] = "<1234@example.com>"
    message["In-Reply-To"] = "<root@example.com>"
    message["References"] = "<root@example.com> <middle@example.com>"
    message.set_content("Hello world.")
    message.add_alternative("<p>Hello <strong>world</strong></p>", subtype="html")
    message.add_attachment(
        b"attachment payload",
        maintype="application",
        subtype="octet-stream",
        filename="note.txt",
    )
    return message.as_bytes()


def test_email_parser_extracts_headers_and_bodies() -> None:
    parser = EmailParser()

    parsed = parser.parse(_sample_payload())

    assert parsed.subject == "Test Email"
    assert parsed.sender == "sender@example.com"
    assert parsed.sender_name == "Sender Name"
    assert parsed.to == ("user@example.com",)
    assert parsed.cc == ("another@example.com",)
    assert parsed.bcc == ()
    assert parsed.message_id == "<1234@example.com>"
    assert parsed.in_reply_to == "<root@example.com>"
    assert parsed.references == ("<root@example.com>", "<middle@example.com>")
    assert parsed.sent_at == datetime(2025, 10, 24, 13, 0, tzinfo=UTC)
    assert parsed.received_at == parsed.sent_at
    assert parsed.body_text == "Hello world."
    assert "<strong>world</strong>" in (parsed.body_html or "")
    assert len(parsed.attachments) == 1
    attachment = parsed.attachments[0]
    assert attachment.filename == "note.txt"
    assert attachment.content_type == "application/octet-stream"
    assert attachment.size == 18


def test_internal_date_overrides_date_header() -> None:
    received = datetime(2025, 10, 25, 8, 30, tzinfo=UTC)

    parsed = EmailParser().parse(_sample_payload(), received_at=received)

    assert parsed.received_at == received
    assert parsed.sent_at == datetime(2025, 10, 24, 13, 0, tzinfo=UTC)


def test_missing_headers_become_none() -> None:
    parsed = EmailParser().parse(b"Subject: \r\n\r\nJust a body\r\n")

    assert parsed.message_id is None
    assert parsed.subject is None
    assert parsed.sender is None
    assert parsed.sent_at is None
    assert parsed.body_text == "Just a body"
    assert parsed.attachments == ()
