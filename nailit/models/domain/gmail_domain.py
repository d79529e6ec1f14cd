"""
Gmail Domain Models
Domain models built from raw Gmail API responses.
Used by the ingestion pipeline for header/body extraction.
"""

import base64
import binascii
from datetime import UTC, datetime
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any


class GmailParseError(ValueError):
    """Raised when a Gmail API payload cannot be turned into a message."""


def normalize_address(value: str | None) -> str:
    """Return the bare, lower-cased address from 'Name <addr>' or 'addr'."""
    if not value:
        return ""
    parsed = getaddresses([value])
    if not parsed:
        return ""
    return parsed[0][1].strip().lower()


def parse_address_list(value: str | None) -> list[dict[str, str]]:
    """Parse a comma-separated header into [{'name', 'email'}] entries."""
    if not value:
        return []
    addresses = []
    for name, address in getaddresses([value]):
        address = address.strip().lower()
        if address:
            addresses.append({"name": name.strip(), "email": address})
    return addresses


def decode_base64url(data: str) -> bytes:
    """Decode Gmail's URL-safe base64 with missing padding restored."""
    if not isinstance(data, str):
        raise GmailParseError("Gmail body data is not a string")
    try:
        return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    except (binascii.Error, ValueError) as e:
        raise GmailParseError("Gmail body data is not valid base64") from e


class GmailMessage:
    """Domain model for Gmail messages fetched with format=full or format=metadata."""

    def __init__(self, data: dict):
        if not isinstance(data, dict) or not data.get("id"):
            raise GmailParseError("Gmail message payload is missing an id")

        self.id: str = data["id"]
        self.thread_id: str | None = data.get("threadId")
        self.label_ids: list[str] = data.get("labelIds", [])
        self.snippet: str = data.get("snippet", "")
        self.size_estimate: int = data.get("sizeEstimate", 0)
        self.history_id: str | None = data.get("historyId")
        self.internal_date: str | None = data.get("internalDate")
        self.payload: dict = data.get("payload") or {}
        self.raw_data = data

        self._parse_headers()
        self._parse_body()

    def _parse_headers(self):
        """Parse email headers from payload."""
        headers = self.payload.get("headers")
        if headers is None:
            raise GmailParseError(f"Gmail message {self.id} has no headers")

        try:
            self.headers = {h["name"].lower(): h["value"] for h in headers}
        except (KeyError, TypeError, AttributeError) as e:
            raise GmailParseError(f"Gmail message {self.id} has malformed headers") from e

        self.subject = self.headers.get("subject", "")
        sender = parse_address_list(self.headers.get("from", ""))
        self.sender = sender[0] if sender else {"name": "", "email": ""}
        self.recipients = parse_address_list(self.headers.get("to", ""))
        self.cc = parse_address_list(self.headers.get("cc", ""))
        self.message_id_header = self.headers.get("message-id", "")
        self.in_reply_to = self.headers.get("in-reply-to", "")
        self.references = self.headers.get("references", "")

    def _parse_body(self):
        """Parse email body content from payload."""
        self.body_text = ""
        self.body_html = ""
        self.attachments: list[dict[str, Any]] = []

        if self.payload.get("body", {}).get("data"):
            content = self._decode_part_data(self.payload["body"]["data"])
            if self.payload.get("mimeType", "text/plain").startswith("text/html"):
                self.body_html = content
            else:
                self.body_text = content
        elif self.payload.get("parts"):
            self._parse_multipart_body(self.payload["parts"])

    def _parse_multipart_body(self, parts: list):
        """Parse multipart email body, descending into nested multiparts."""
        for part in parts:
            mime_type = part.get("mimeType", "")
            body = part.get("body", {})

            if part.get("filename"):
                self.attachments.append(
                    {
                        "filename": part["filename"],
                        "mime_type": mime_type,
                        "size": body.get("size", 0),
                        "attachment_id": body.get("attachmentId"),
                        "data": body.get("data"),
                    }
                )
            elif mime_type == "text/plain" and body.get("data") and not self.body_text:
                self.body_text = self._decode_part_data(body["data"])
            elif mime_type == "text/html" and body.get("data") and not self.body_html:
                self.body_html = self._decode_part_data(body["data"])
            elif mime_type.startswith("multipart/"):
                self._parse_multipart_body(part.get("parts", []))

    def _decode_part_data(self, data: str) -> str:
        try:
            return decode_base64url(data).decode("utf-8", errors="replace")
        except GmailParseError as e:
            raise GmailParseError(f"Gmail message {self.id} has undecodable body") from e

    @property
    def sender_email(self) -> str:
        return self.sender["email"]

    @property
    def recipient_emails(self) -> list[str]:
        return [r["email"] for r in self.recipients]

    @property
    def cc_emails(self) -> list[str]:
        return [r["email"] for r in self.cc]

    def get_received_datetime(self) -> datetime | None:
        """Get received datetime from internal date (milliseconds since epoch)."""
        if self.internal_date:
            try:
                return datetime.fromtimestamp(int(self.internal_date) / 1000, tz=UTC)
            except (ValueError, OSError, OverflowError):
                pass
        return None

    def get_sent_datetime(self) -> datetime | None:
        """Date header as a tz-aware datetime, falling back to internalDate."""
        date_header = self.headers.get("date")
        if date_header:
            try:
                sent = parsedate_to_datetime(date_header)
                if sent.tzinfo is None:
                    sent = sent.replace(tzinfo=UTC)
                return sent
            except (TypeError, ValueError):
                pass
        return self.get_received_datetime()


class GmailWatch:
    """Domain model for a users.watch response."""

    def __init__(self, data: dict):
        self.history_id: str | None = data.get("historyId")
        self.expiration_ms: str | None = data.get("expiration")

    def get_expiration_datetime(self) -> datetime | None:
        if not self.expiration_ms:
            return None
        try:
            return datetime.fromtimestamp(int(self.expiration_ms) / 1000, tz=UTC)
        except (ValueError, OSError, OverflowError):
            return None


def extract_added_message_ids(history_page: dict) -> list[str]:
    """Collect message IDs from a users.history.list page's messagesAdded records."""
    message_ids: list[str] = []
    for record in history_page.get("history", []):
        for added in record.get("messagesAdded", []):
            message_id = (added.get("message") or {}).get("id")
            if message_id:
                message_ids.append(message_id)
    return message_ids
