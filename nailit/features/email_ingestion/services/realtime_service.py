"""
Real-time ingestion from Gmail push notifications.

A Pub/Sub push carries only the mailbox address and a new historyId. The
handler walks history from the mailbox's stored cursor, runs every added
message through the shared pipeline, then advances the cursor.
A recoverable failure that left no row behind holds the cursor, so the next
notification walks the same history again. Concurrent notifications for one
mailbox may overlap; the dedup guard and unique index keep that safe
without a lock.
"""

import base64
import binascii
import json
import time
from collections.abc import Awaitable, Callable
from typing import Any

from nailit.config import Settings, settings
from nailit.features.email_ingestion.domain.errors import MalformedNotificationError
from nailit.features.email_ingestion.domain.models import (
    Failed,
    IngestionSource,
    NotificationSummary,
    Skipped,
    SkipReason,
)
from nailit.features.email_ingestion.provider import HistoryCursorExpiredError
from nailit.features.email_ingestion.services.context import IngestionContext
from nailit.features.email_ingestion.services.cursor_store import HistoryCursorStore
from nailit.features.email_ingestion.services.message_pipeline import MessageIngestionPipeline
from nailit.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ContextFactory = Callable[[str], Awaitable[list[IngestionContext]]]


def decode_push_envelope(envelope: Any) -> tuple[str, str]:
    """
    Extract (emailAddress, historyId) from a Pub/Sub push envelope.

    Raises:
        MalformedNotificationError: If any layer of the envelope is invalid
    """
    if not isinstance(envelope, dict):
        raise MalformedNotificationError("Push envelope must be a JSON object")

    message = envelope.get("message")
    if not isinstance(message, dict):
        raise MalformedNotificationError("Push envelope has no message")

    data = message.get("data")
    if not isinstance(data, str) or not data:
        raise MalformedNotificationError("Push message has no data")

    try:
        decoded = base64.b64decode(data + "=" * (-len(data) % 4), altchars=b"-_")
        payload = json.loads(decoded)
    except (binascii.Error, ValueError) as e:
        raise MalformedNotificationError(f"Push data is not base64-encoded JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedNotificationError("Push data must decode to a JSON object")

    email_address = payload.get("emailAddress")
    history_id = payload.get("historyId")
    if not isinstance(email_address, str) or "@" not in email_address:
        raise MalformedNotificationError("Push data has no valid emailAddress")
    if isinstance(history_id, bool) or not str(history_id or "").isdigit():
        raise MalformedNotificationError("Push data has no valid historyId")

    return email_address.strip().lower(), str(history_id)


class RealtimeIngestionService:
    def __init__(
        self,
        cursor_store: HistoryCursorStore,
        context_factory: ContextFactory,
        config: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cursor_store = cursor_store
        self.context_factory = context_factory
        self.config = config or settings
        self._clock = clock

    async def handle_notification(self, envelope: Any) -> NotificationSummary:
        """
        Process one push notification.

        Raises:
            MalformedNotificationError: Bad payload; nothing was touched
            AuthError: The mailbox token was rejected
            TransientProviderError: History could not be read; cursor unchanged
        """
        received = self._clock()
        try:
            email_address, history_id = decode_push_envelope(envelope)
        except MalformedNotificationError as e:
            logger.warning("Rejected malformed push notification", error=str(e))
            raise

        summary = NotificationSummary(email_address=email_address, history_id=history_id)

        contexts = await self.context_factory(email_address)
        if not contexts:
            logger.info("Push notification for unmonitored mailbox", mailbox=email_address)
            return self._finish(summary, received)
        summary.project_id = contexts[0].project_id

        cursor = await self.cursor_store.get(email_address)
        if cursor is None:
            await self.cursor_store.advance(email_address, history_id)
            summary.baseline_recorded = True
            logger.info("History cursor baseline recorded", mailbox=email_address, history_id=history_id)
            return self._finish(summary, received)

        try:
            message_ids = await contexts[0].provider.list_history(cursor)
        except HistoryCursorExpiredError:
            await self.cursor_store.reset(email_address, history_id)
            summary.baseline_recorded = True
            return self._finish(summary, received)

        summary.candidates = len(message_ids)
        pipelines = [MessageIngestionPipeline(c, IngestionSource.REALTIME) for c in contexts]

        for message_id in message_ids:
            result = None
            for pipeline in pipelines:
                result = await pipeline.ingest(message_id)
                if not (isinstance(result, Skipped) and result.reason is SkipReason.NON_MEMBER):
                    break

            summary.record(result)
            if isinstance(result, Failed) and result.recoverable and not result.recorded:
                summary.cursor_held = True

        if summary.cursor_held:
            logger.warning(
                "History cursor held after unrecorded failure", mailbox=email_address, cursor=cursor
            )
        else:
            await self.cursor_store.advance(email_address, history_id)
        return self._finish(summary, received)

    def _finish(self, summary: NotificationSummary, received: float) -> NotificationSummary:
        summary.latency_seconds = round(self._clock() - received, 3)
        ceiling = self.config.REALTIME_LATENCY_CEILING_SECONDS
        summary.latency_exceeded = summary.latency_seconds > ceiling

        log_data = {
            "mailbox": summary.email_address,
            "history_id": summary.history_id,
            "candidates": summary.candidates,
            "succeeded": summary.succeeded,
            "skipped_duplicate": summary.skipped_duplicate,
            "skipped_non_member": summary.skipped_non_member,
            "failed": summary.failed,
            "cursor_held": summary.cursor_held,
            "latency_seconds": summary.latency_seconds,
        }
        if summary.latency_exceeded:
            logger.warning("Push notification exceeded latency ceiling", ceiling_seconds=ceiling, **log_data)
        else:
            logger.info("Push notification processed", **log_data)
        return summary
