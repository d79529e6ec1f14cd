"""
Mail provider seam for ingestion.

MailProvider is the protocol the services depend on. GmailProvider adapts the
low-level GoogleGmailService to it for one mailbox, turning Gmail payloads
into RawMessage values and Gmail HTTP failures into the ingestion error
taxonomy.
"""

from typing import Protocol

from nailit.features.email_ingestion.domain.errors import (
    AuthError,
    IngestionError,
    MalformedContentError,
    TransientProviderError,
)
from nailit.features.email_ingestion.domain.models import AttachmentRef, RawMessage, WatchSubscription
from nailit.infrastructure.observability.logging import get_logger
from nailit.models.domain.gmail_domain import GmailMessage, GmailParseError, decode_base64url
from nailit.services.gmail.google_client import GoogleGmailError, GoogleGmailService

logger = get_logger(__name__)

METADATA_HEADERS = ["From", "To", "Cc", "Subject", "Date"]

AUTH_STATUS_CODES = {401, 403}
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class HistoryCursorExpiredError(IngestionError):
    """The stored history cursor is older than the provider retains."""

    def __init__(self, start_history_id: str):
        super().__init__(f"History cursor {start_history_id} is no longer valid", recoverable=True)
        self.start_history_id = start_history_id


class MailProvider(Protocol):
    async def search_page(
        self, query: str, page_size: int, page_token: str | None = None
    ) -> tuple[list[str], str | None]: ...

    async def fetch_metadata(self, provider_message_id: str) -> RawMessage: ...

    async def fetch(self, provider_message_id: str) -> RawMessage: ...

    async def fetch_attachment(self, provider_message_id: str, attachment_id: str) -> bytes: ...

    async def list_history(self, start_history_id: str) -> list[str]: ...

    async def watch(self, topic_name: str, label_ids: list[str] | None = None) -> WatchSubscription: ...

    async def stop(self) -> None: ...


def classify_gmail_error(error: GoogleGmailError, operation: str) -> IngestionError:
    """Map a Gmail HTTP failure onto the ingestion error taxonomy."""
    status = error.status_code
    if status in AUTH_STATUS_CODES:
        return AuthError(str(error), status_code=status)
    if status is None or status in TRANSIENT_STATUS_CODES or status >= 500:
        return TransientProviderError(str(error), status_code=status)
    if status == 404 and operation in {"fetch", "fetch_metadata", "fetch_attachment"}:
        return MalformedContentError(f"Message no longer exists: {error}")
    return IngestionError(f"Gmail {operation} failed: {error}", recoverable=False)


def to_raw_message(gmail_message: GmailMessage, require_body: bool = True) -> RawMessage:
    """Build a RawMessage from a parsed Gmail message."""
    sent_at = gmail_message.get_sent_datetime()
    if require_body:
        if not gmail_message.sender_email:
            raise MalformedContentError(
                "Message has no parseable From header", provider_message_id=gmail_message.id
            )
        if sent_at is None:
            raise MalformedContentError(
                "Message has no parseable date", provider_message_id=gmail_message.id
            )

    headers = dict(gmail_message.headers)
    return RawMessage(
        provider_message_id=gmail_message.id,
        thread_id=gmail_message.thread_id,
        sender=gmail_message.sender_email,
        sender_name=gmail_message.sender["name"] or None,
        recipients=gmail_message.recipient_emails,
        cc_recipients=gmail_message.cc_emails,
        subject=gmail_message.subject,
        sent_at=sent_at,
        received_at=gmail_message.get_received_datetime(),
        body_text=gmail_message.body_text,
        body_html=gmail_message.body_html,
        attachments=[
            AttachmentRef(
                filename=a["filename"],
                mime_type=a["mime_type"],
                size=a["size"],
                attachment_id=a["attachment_id"],
                data=a["data"],
            )
            for a in gmail_message.attachments
        ],
        headers=headers,
        history_id=gmail_message.history_id,
        label_ids=list(gmail_message.label_ids),
        internet_message_id=gmail_message.message_id_header or None,
        in_reply_to=gmail_message.in_reply_to or None,
        references=gmail_message.references or None,
        size_estimate=gmail_message.size_estimate,
    )


class GmailProvider:
    """MailProvider for one Gmail mailbox, bound to a stored access token."""

    def __init__(self, client: GoogleGmailService, access_token: str, mailbox: str | None = None):
        self.client = client
        self.access_token = access_token
        self.mailbox = mailbox

    async def search_page(
        self, query: str, page_size: int, page_token: str | None = None
    ) -> tuple[list[str], str | None]:
        try:
            return await self.client.list_message_ids(
                self.access_token, query, max_results=page_size, page_token=page_token
            )
        except GoogleGmailError as e:
            raise classify_gmail_error(e, "search") from e

    async def fetch_metadata(self, provider_message_id: str) -> RawMessage:
        try:
            message = await self.client.get_message(
                self.access_token,
                provider_message_id,
                format="metadata",
                metadata_headers=METADATA_HEADERS,
            )
        except GoogleGmailError as e:
            raise classify_gmail_error(e, "fetch_metadata") from e
        except GmailParseError as e:
            raise MalformedContentError(str(e), provider_message_id=provider_message_id) from e
        return to_raw_message(message, require_body=False)

    async def fetch(self, provider_message_id: str) -> RawMessage:
        try:
            message = await self.client.get_message(self.access_token, provider_message_id)
        except GoogleGmailError as e:
            raise classify_gmail_error(e, "fetch") from e
        except GmailParseError as e:
            raise MalformedContentError(str(e), provider_message_id=provider_message_id) from e
        return to_raw_message(message)

    async def fetch_attachment(self, provider_message_id: str, attachment_id: str) -> bytes:
        try:
            data = await self.client.get_attachment(
                self.access_token, provider_message_id, attachment_id
            )
        except GoogleGmailError as e:
            raise classify_gmail_error(e, "fetch_attachment") from e
        try:
            return decode_base64url(data)
        except GmailParseError as e:
            raise MalformedContentError(
                f"Attachment {attachment_id} is undecodable", provider_message_id=provider_message_id
            ) from e

    async def list_history(self, start_history_id: str) -> list[str]:
        """Walk every history page since start_history_id; returns added IDs in order."""
        message_ids: list[str] = []
        seen: set[str] = set()
        page_token = None
        while True:
            try:
                page_ids, page_token, _ = await self.client.list_history(
                    self.access_token, start_history_id, page_token=page_token
                )
            except GoogleGmailError as e:
                if e.status_code == 404:
                    raise HistoryCursorExpiredError(start_history_id) from e
                raise classify_gmail_error(e, "list_history") from e

            for message_id in page_ids:
                if message_id not in seen:
                    seen.add(message_id)
                    message_ids.append(message_id)

            if not page_token:
                return message_ids

    async def watch(self, topic_name: str, label_ids: list[str] | None = None) -> WatchSubscription:
        try:
            watch = await self.client.watch(self.access_token, topic_name, label_ids)
        except GoogleGmailError as e:
            raise classify_gmail_error(e, "watch") from e
        return WatchSubscription(
            history_id=watch.history_id,
            expiration=watch.get_expiration_datetime(),
        )

    async def stop(self) -> None:
        try:
            await self.client.stop(self.access_token)
        except GoogleGmailError as e:
            raise classify_gmail_error(e, "stop") from e
