"""
Deduplication guard.

Fast pre-check against the message store before fetching full content.
The unique index on provider_message_id stays authoritative; this check
only avoids wasted provider calls.
"""

from typing import Protocol

from nailit.features.email_ingestion.domain.models import (
    DedupDecision,
    IngestionStatus,
    MessageState,
)
from nailit.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class MessageStateReader(Protocol):
    async def get_state(self, provider_message_id: str) -> MessageState | None: ...


class DedupGuard:
    """Classifies a provider message ID as NEW, RETRY or DUPLICATE."""

    def __init__(self, repository: MessageStateReader, max_retries: int):
        self.repository = repository
        self.max_retries = max_retries

    async def check(self, provider_message_id: str) -> DedupDecision:
        state = await self.repository.get_state(provider_message_id)
        if state is None:
            return DedupDecision.NEW

        if state.ingestion_status is IngestionStatus.PENDING and state.retry_count < self.max_retries:
            logger.debug(
                "Pending message eligible for retry",
                provider_message_id=provider_message_id,
                retry_count=state.retry_count,
            )
            return DedupDecision.RETRY

        logger.debug(
            "Duplicate message skipped",
            provider_message_id=provider_message_id,
            ingestion_status=state.ingestion_status.value,
        )
        return DedupDecision.DUPLICATE
