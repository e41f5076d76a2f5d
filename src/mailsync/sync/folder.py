"""Synchronise a single mailbox folder into the message repository."""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from ..core.datetime_utils import max_datetime, utc_now
from ..core.interfaces import (
    AnalysisService,
    MailSource,
    MessageRepository,
    UnitOfWork,
)
from ..core.models import (
    Account,
    ExternalMessage,
    FolderKind,
    FolderSyncOutcome,
    PersistedAttachment,
    PersistedMessage,
)
from ..storage.attachments import AttachmentStore
from .retry import RetryPolicy

LOGGER = logging.getLogger(__name__)

PROGRESS_INTERVAL = 25
DEFAULT_SUBJECT = "(No Subject)"
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class FolderSynchronizer:
    """Pull new messages from one folder, enrich them and stage them."""

    def __init__(
        self,
        messages: MessageRepository,
        unit_of_work: UnitOfWork,
        attachments: AttachmentStore,
        analysis: AnalysisService,
        fetch_policy: RetryPolicy,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._messages = messages
        self._unit_of_work = unit_of_work
        self._attachments = attachments
        self._analysis = analysis
        self._fetch_policy = fetch_policy
        self._clock = clock

    async def sync_folder(
        self,
        source: MailSource,
        account: Account,
        folder_kind: FolderKind,
        folder_name: str,
        watermark: datetime,
        sync_attachments: bool,
        cancel_event: asyncio.Event | None = None,
    ) -> FolderSyncOutcome:
        """Synchronise ``folder_name`` from ``watermark`` onwards.

        Per-message failures are logged and counted without aborting the
        folder; staged messages are saved once after the loop.
        """
        await source.open_folder(folder_name)
        refs = await source.search_since(watermark)
        total = len(refs)
        LOGGER.info(
            "Folder %s: %d emails to evaluate since %s",
            folder_name,
            total,
            watermark.isoformat(),
        )

        new_count = 0
        attachments_stored = 0
        failed = 0
        processed = 0
        latest: datetime | None = None

        for ref in refs:
            if cancel_event is not None and cancel_event.is_set():
                LOGGER.info("Folder %s: cancellation requested", folder_name)
                break
            try:
                external = await self._fetch_policy.execute(
                    functools.partial(source.fetch, ref)
                )
                if external.message_id and self._messages.exists(external.message_id):
                    LOGGER.debug(
                        "Folder %s: %s already stored", folder_name, external.message_id
                    )
                else:
                    message = build_persisted_message(
                        external, account, folder_kind, now=self._clock()
                    )
                    if sync_attachments:
                        attachments_stored += await self._store_attachments(
                            external, message, account
                        )
                    await self._apply_analysis(message, folder_name)
                    self._messages.add(message)
                    latest = max_datetime(latest, message.received_at)
                    new_count += 1
            except Exception as exc:  # pylint: disable=broad-exception-caught
                failed += 1
                LOGGER.error(
                    "Folder %s: failed to process email UID %s: %s",
                    folder_name,
                    ref.uid,
                    exc,
                    exc_info=True,
                )

            processed += 1
            if processed % PROGRESS_INTERVAL == 0:
                LOGGER.info(
                    "Folder %s: processed %d/%d", folder_name, processed, total
                )

        saved = self._unit_of_work.save_changes()
        LOGGER.info(
            "Folder %s: %d new, %d failed, %d changes saved",
            folder_name,
            new_count,
            failed,
            saved,
        )
        return FolderSyncOutcome(
            folder_name=folder_name,
            folder_kind=folder_kind,
            total_found=total,
            new_emails=new_count,
            attachments_stored=attachments_stored,
            latest_received_at=latest,
            failed=failed,
        )

    async def _store_attachments(
        self, external: ExternalMessage, message: PersistedMessage, account: Account
    ) -> int:
        limit = (
            account.max_attachment_size_mb * 1024 * 1024
            if account.max_attachment_size_mb > 0
            else None
        )
        stored = 0
        for attachment in external.attachments:
            if not attachment.data:
                continue
            filename = attachment.filename or f"attachment-{uuid.uuid4().hex}"
            content_type = attachment.content_type or DEFAULT_CONTENT_TYPE
            if limit is not None and attachment.size > limit:
                LOGGER.info(
                    "Skipping attachment %s for %s because size %d exceeds limit %d",
                    filename,
                    account.email_address,
                    attachment.size,
                    limit,
                )
                continue
            try:
                blob = await asyncio.to_thread(
                    self._attachments.store, filename, content_type, attachment.data
                )
            except Exception as exc:  # pylint: disable=broad-exception-caught
                LOGGER.warning(
                    "Failed to persist attachment %s for message %s: %s",
                    filename,
                    message.message_id,
                    exc,
                    exc_info=True,
                )
                continue
            message.attachments.append(
                PersistedAttachment(
                    filename=filename,
                    content_type=content_type,
                    size=attachment.size,
                    storage_path=blob.path,
                    content_hash=blob.digest,
                    content_id=attachment.content_id,
                )
            )
            stored += 1
        return stored

    async def _apply_analysis(
        self, message: PersistedMessage, folder_name: str
    ) -> None:
        try:
            analysis = await self._analysis.analyze(message)
        except Exception:  # pylint: disable=broad-exception-caught
            LOGGER.warning(
                "Analysis failed for folder %s; using defaults",
                folder_name,
                exc_info=True,
            )
            return
        message.priority = analysis.priority
        message.is_urgent = analysis.urgent
        message.category = analysis.category
        message.action_items = analysis.action_items
        message.requires_response = bool(analysis.action_items)


def build_persisted_message(
    external: ExternalMessage,
    account: Account,
    folder_kind: FolderKind,
    *,
    now: datetime,
) -> PersistedMessage:
    """Convert a fetched message into its stored form for ``account``."""
    message_id = external.message_id or uuid.uuid4().hex
    sender = external.sender or account.email_address
    sent_at = external.sent_at or now
    received_at = external.received_at or sent_at
    if external.thread_index:
        conversation_id = external.thread_index
    elif external.references:
        conversation_id = external.references[0]
    else:
        conversation_id = message_id

    return PersistedMessage(
        message_id=message_id,
        account_id=account.id,
        user_id=account.user_id,
        folder=folder_kind,
        subject=external.subject or DEFAULT_SUBJECT,
        sender=sender,
        sender_name=external.sender_name or sender,
        to=external.to or (account.email_address,),
        cc=external.cc,
        bcc=external.bcc,
        sent_at=sent_at,
        received_at=received_at,
        body_text=external.body_text or external.body_html or "",
        body_html=external.body_html,
        conversation_id=conversation_id,
        in_reply_to=external.in_reply_to,
    )


__all__ = ["FolderSynchronizer", "build_persisted_message"]
