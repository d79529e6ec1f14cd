"""
Persistence adapter: blob first, record second.

Raw content is written under a deterministic key so a retried write simply
overwrites the same object. The record insert is guarded by the unique
index on provider_message_id.
"""

from typing import Protocol

from nailit.features.email_ingestion.domain.errors import MalformedContentError
from nailit.features.email_ingestion.domain.models import (
    GmailProviderMetadata,
    IngestionSource,
    IngestionStatus,
    Message,
    MessageState,
    RawMessage,
)
from nailit.infrastructure.observability.logging import get_logger
from nailit.models.domain.gmail_domain import GmailParseError, decode_base64url
from nailit.services.storage.blob_storage import attachment_key, content_key

logger = get_logger(__name__)


class MessageStore(Protocol):
    async def exists(self, provider_message_id: str) -> bool: ...

    async def get_state(self, provider_message_id: str) -> MessageState | None: ...

    async def create(self, message: Message) -> Message: ...

    async def complete_pending(self, message: Message) -> Message: ...

    async def record_failure(
        self,
        provider_message_id: str,
        *,
        project_id: str | None,
        user_id: str | None,
        error_details: dict,
        permanent: bool,
        max_retries: int,
        provider_metadata: GmailProviderMetadata | None = None,
    ) -> MessageState | None: ...


class BlobStore(Protocol):
    async def write_blob(self, key: str, data: bytes, content_type: str) -> str: ...

    async def write_json(self, key: str, document: dict) -> str: ...


class AttachmentSource(Protocol):
    async def fetch_attachment(self, provider_message_id: str, attachment_id: str) -> bytes: ...


def provider_metadata_for(raw: RawMessage, source: IngestionSource) -> GmailProviderMetadata:
    extra = {}
    if raw.size_estimate:
        extra["size_estimate"] = raw.size_estimate
    return GmailProviderMetadata(
        history_id=raw.history_id,
        label_ids=list(raw.label_ids),
        internet_message_id=raw.internet_message_id,
        in_reply_to=raw.in_reply_to,
        references=raw.references,
        ingestion_source=source,
        extra=extra,
    )


class PersistenceService:
    """Stores raw content in the blob store and the message record in Postgres."""

    def __init__(
        self,
        repository: MessageStore,
        blob_store: BlobStore,
        attachment_source: AttachmentSource | None = None,
        inline_body_max_bytes: int = 64000,
    ):
        self.repository = repository
        self.blob_store = blob_store
        self.attachment_source = attachment_source
        self.inline_body_max_bytes = inline_body_max_bytes

    def _inline(self, body: str) -> str | None:
        if not body:
            return None
        if len(body.encode("utf-8")) > self.inline_body_max_bytes:
            return None
        return body

    async def _store_attachments(
        self, raw: RawMessage, user_id: str | None, project_id: str | None
    ) -> list[str]:
        pointers: list[str] = []
        for index, attachment in enumerate(raw.attachments):
            if attachment.data:
                try:
                    data = decode_base64url(attachment.data)
                except GmailParseError as e:
                    raise MalformedContentError(
                        f"Attachment {attachment.filename!r} is undecodable",
                        provider_message_id=raw.provider_message_id,
                    ) from e
            elif attachment.attachment_id and self.attachment_source:
                data = await self.attachment_source.fetch_attachment(
                    raw.provider_message_id, attachment.attachment_id
                )
            else:
                continue

            key = attachment_key(user_id, project_id, raw.provider_message_id, index, attachment.filename)
            pointers.append(
                await self.blob_store.write_blob(
                    key, data, attachment.mime_type or "application/octet-stream"
                )
            )
        return pointers

    async def persist(
        self,
        raw: RawMessage,
        *,
        project_id: str | None,
        user_id: str | None,
        source: IngestionSource,
        retry: bool = False,
    ) -> Message:
        """
        Write the content blob, then create (or complete) the record.

        Raises:
            DuplicateSkip: If another path stored the message first
            BlobStorageError: If the content could not be written
            TransientProviderError: If an attachment download failed transiently
            MalformedContentError: If inline attachment data is not valid base64
        """
        pointer = await self.blob_store.write_json(
            content_key(user_id, project_id, raw.provider_message_id), raw.content_document()
        )
        attachment_pointers = await self._store_attachments(raw, user_id, project_id)

        message = Message(
            provider_message_id=raw.provider_message_id,
            thread_id=raw.thread_id,
            sender=raw.sender,
            sender_name=raw.sender_name,
            recipients=list(raw.recipients),
            cc_recipients=list(raw.cc_recipients),
            subject=raw.subject,
            sent_at=raw.sent_at,
            received_at=raw.received_at,
            body_text=self._inline(raw.body_text),
            body_html=self._inline(raw.body_html),
            raw_content_pointer=pointer,
            attachment_pointers=attachment_pointers,
            ingestion_status=IngestionStatus.COMPLETED,
            provider_metadata=provider_metadata_for(raw, source),
            project_id=project_id,
            user_id=user_id,
        )

        if retry:
            stored = await self.repository.complete_pending(message)
        else:
            stored = await self.repository.create(message)

        logger.debug(
            "Message persisted",
            provider_message_id=raw.provider_message_id,
            raw_content_pointer=pointer,
            attachment_count=len(attachment_pointers),
            retried=retry,
        )
        return stored
