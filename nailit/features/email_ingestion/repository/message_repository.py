"""
Persistence for ingested messages (email_messages table).

The unique index on provider_message_id is the final word on duplicates:
inserts that lose a race surface as DuplicateSkip.
"""

from datetime import datetime

from psycopg.types.json import Jsonb

from nailit.db.helpers import (
    UniqueConstraintError,
    execute_query,
    fetch_all,
    fetch_one,
    fetch_val,
    with_db_retry,
)
from nailit.features.email_ingestion.domain.errors import DuplicateSkip
from nailit.features.email_ingestion.domain.models import (
    GmailProviderMetadata,
    IngestionStatus,
    Message,
    MessageState,
)
from nailit.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class MessageRepository:
    """Raw-SQL access to email_messages."""

    SELECT_COLUMNS = """
        provider_message_id, thread_id, sender, sender_name, recipients, cc_recipients,
        sent_at, received_at, subject, body_text, body_html, raw_content_pointer,
        attachment_pointers, ingestion_status, analysis_status, assignment_status,
        relevance_score, retry_count, error_details, provider_metadata, project_id, user_id
    """

    @classmethod
    def _row_to_message(cls, row: dict) -> Message:
        return Message(
            provider_message_id=row["provider_message_id"],
            thread_id=row.get("thread_id"),
            sender=row.get("sender") or "",
            sender_name=row.get("sender_name"),
            recipients=list(row.get("recipients") or []),
            cc_recipients=list(row.get("cc_recipients") or []),
            sent_at=row.get("sent_at"),
            received_at=row.get("received_at"),
            subject=row.get("subject") or "",
            body_text=row.get("body_text"),
            body_html=row.get("body_html"),
            raw_content_pointer=row.get("raw_content_pointer"),
            attachment_pointers=list(row.get("attachment_pointers") or []),
            ingestion_status=IngestionStatus(row["ingestion_status"]),
            analysis_status=row.get("analysis_status") or "pending",
            assignment_status=row.get("assignment_status") or "pending",
            relevance_score=row.get("relevance_score"),
            retry_count=row.get("retry_count") or 0,
            error_details=row.get("error_details"),
            provider_metadata=GmailProviderMetadata.from_dict(row.get("provider_metadata")),
            project_id=row.get("project_id"),
            user_id=row.get("user_id"),
        )

    @classmethod
    def _content_params(cls, message: Message) -> dict:
        return {
            "provider_message_id": message.provider_message_id,
            "thread_id": message.thread_id,
            "sender": message.sender,
            "sender_name": message.sender_name,
            "recipients": message.recipients,
            "cc_recipients": message.cc_recipients,
            "sent_at": message.sent_at,
            "received_at": message.received_at,
            "subject": message.subject,
            "body_text": message.body_text,
            "body_html": message.body_html,
            "raw_content_pointer": message.raw_content_pointer,
            "attachment_pointers": message.attachment_pointers,
            "ingestion_status": message.ingestion_status.value,
            "analysis_status": message.analysis_status,
            "assignment_status": message.assignment_status,
            "provider_metadata": Jsonb(message.provider_metadata.to_dict()),
            "project_id": message.project_id,
            "user_id": message.user_id,
        }

    @classmethod
    @with_db_retry()
    async def exists(cls, provider_message_id: str) -> bool:
        query = "SELECT EXISTS (SELECT 1 FROM email_messages WHERE provider_message_id = %s)"
        return bool(await fetch_val(query, (provider_message_id,)))

    @classmethod
    @with_db_retry()
    async def get_state(cls, provider_message_id: str) -> MessageState | None:
        query = """
            SELECT provider_message_id, ingestion_status, retry_count
            FROM email_messages
            WHERE provider_message_id = %s
        """
        row = await fetch_one(query, (provider_message_id,))
        if not row:
            return None
        return MessageState(
            provider_message_id=row["provider_message_id"],
            ingestion_status=IngestionStatus(row["ingestion_status"]),
            retry_count=row["retry_count"],
        )

    @classmethod
    async def create(cls, message: Message) -> Message:
        """
        Insert a new message.

        Raises:
            DuplicateSkip: If the provider_message_id is already stored
        """
        query = """
            INSERT INTO email_messages (
                provider_message_id, thread_id, sender, sender_name, recipients, cc_recipients,
                sent_at, received_at, subject, body_text, body_html, raw_content_pointer,
                attachment_pointers, ingestion_status, analysis_status, assignment_status,
                provider_metadata, project_id, user_id
            )
            VALUES (
                %(provider_message_id)s, %(thread_id)s, %(sender)s, %(sender_name)s,
                %(recipients)s, %(cc_recipients)s, %(sent_at)s,
                COALESCE(%(received_at)s, NOW()), %(subject)s, %(body_text)s, %(body_html)s,
                %(raw_content_pointer)s, %(attachment_pointers)s, %(ingestion_status)s,
                %(analysis_status)s, %(assignment_status)s, %(provider_metadata)s,
                %(project_id)s, %(user_id)s
            )
        """
        try:
            await execute_query(query, cls._content_params(message))
        except UniqueConstraintError as e:
            raise DuplicateSkip(message.provider_message_id) from e

        logger.debug(
            "Message record created",
            provider_message_id=message.provider_message_id,
            project_id=message.project_id,
        )
        return message

    @classmethod
    async def complete_pending(cls, message: Message) -> Message:
        """
        Fill in a previously failed (pending) record and mark it completed.

        Raises:
            DuplicateSkip: If the record is no longer pending
        """
        query = """
            UPDATE email_messages
            SET thread_id = %(thread_id)s,
                sender = %(sender)s,
                sender_name = %(sender_name)s,
                recipients = %(recipients)s,
                cc_recipients = %(cc_recipients)s,
                sent_at = %(sent_at)s,
                received_at = COALESCE(%(received_at)s, received_at),
                subject = %(subject)s,
                body_text = %(body_text)s,
                body_html = %(body_html)s,
                raw_content_pointer = %(raw_content_pointer)s,
                attachment_pointers = %(attachment_pointers)s,
                ingestion_status = %(ingestion_status)s,
                provider_metadata = %(provider_metadata)s,
                error_details = NULL,
                updated_at = NOW()
            WHERE provider_message_id = %(provider_message_id)s
              AND ingestion_status = 'pending'
        """
        updated = await execute_query(query, cls._content_params(message))
        if updated == 0:
            raise DuplicateSkip(message.provider_message_id)

        logger.debug(
            "Pending message record completed",
            provider_message_id=message.provider_message_id,
        )
        return message

    @classmethod
    async def record_failure(
        cls,
        provider_message_id: str,
        *,
        project_id: str | None,
        user_id: str | None,
        error_details: dict,
        permanent: bool,
        max_retries: int,
        provider_metadata: GmailProviderMetadata | None = None,
    ) -> MessageState | None:
        """
        Record a failed attempt.

        Creates a pending placeholder on first failure, otherwise bumps
        retry_count. The row becomes failed once retry_count reaches
        max_retries, or immediately for permanent errors. Completed rows
        are left untouched (returns None).
        """
        query = """
            INSERT INTO email_messages (
                provider_message_id, project_id, user_id, ingestion_status,
                retry_count, error_details, provider_metadata
            )
            VALUES (
                %(provider_message_id)s, %(project_id)s, %(user_id)s,
                CASE WHEN %(permanent)s OR 1 >= %(max_retries)s THEN 'failed' ELSE 'pending' END,
                1, %(error_details)s, %(provider_metadata)s
            )
            ON CONFLICT (provider_message_id) DO UPDATE
            SET retry_count = LEAST(email_messages.retry_count + 1, %(max_retries)s),
                ingestion_status = CASE
                    WHEN %(permanent)s OR email_messages.retry_count + 1 >= %(max_retries)s
                    THEN 'failed' ELSE 'pending' END,
                error_details = EXCLUDED.error_details,
                updated_at = NOW()
            WHERE email_messages.ingestion_status = 'pending'
            RETURNING provider_message_id, ingestion_status, retry_count
        """
        params = {
            "provider_message_id": provider_message_id,
            "project_id": project_id,
            "user_id": user_id,
            "permanent": permanent,
            "max_retries": max_retries,
            "error_details": Jsonb(error_details),
            "provider_metadata": Jsonb((provider_metadata or GmailProviderMetadata()).to_dict()),
        }
        row = await fetch_one(query, params)
        if not row:
            return None

        state = MessageState(
            provider_message_id=row["provider_message_id"],
            ingestion_status=IngestionStatus(row["ingestion_status"]),
            retry_count=row["retry_count"],
        )
        logger.info(
            "Message failure recorded",
            provider_message_id=provider_message_id,
            ingestion_status=state.ingestion_status.value,
            retry_count=state.retry_count,
        )
        return state

    @classmethod
    @with_db_retry()
    async def list_project_messages(
        cls,
        project_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Message]:
        """Completed messages for a project, oldest first."""
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM email_messages
            WHERE project_id = %s
              AND ingestion_status = 'completed'
              AND (%s::timestamptz IS NULL OR sent_at >= %s::timestamptz)
              AND (%s::timestamptz IS NULL OR sent_at < %s::timestamptz)
            ORDER BY sent_at ASC NULLS LAST
        """
        rows = await fetch_all(query, (project_id, start, start, end, end))
        return [cls._row_to_message(row) for row in rows]
