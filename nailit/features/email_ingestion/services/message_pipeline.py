"""
Per-message ingestion pipeline shared by batch import and push handling.

    metadata fetch -> membership -> dedup -> full fetch -> persist

Every outcome is returned as Persisted, Skipped or Failed, including
unexpected errors. Only AuthError escapes, since a rejected credential
fails every remaining message too.
"""

from nailit.db.helpers import DatabaseError
from nailit.features.email_ingestion.domain.errors import (
    AuthError,
    DuplicateSkip,
    IngestionError,
    MalformedContentError,
)
from nailit.features.email_ingestion.domain.models import (
    DedupDecision,
    Failed,
    IngestionResult,
    IngestionSource,
    Persisted,
    Skipped,
    SkipReason,
)
from nailit.features.email_ingestion.services.context import IngestionContext
from nailit.infrastructure.observability.logging import get_logger, log_ingestion_outcome
from nailit.services.storage.blob_storage import BlobStorageError

logger = get_logger(__name__)


class MessageIngestionPipeline:
    def __init__(self, context: IngestionContext, source: IngestionSource):
        self.context = context
        self.source = source
        self.membership = context.membership_filter()
        self.dedup = context.dedup_guard()
        self.persistence = context.persistence()

    async def ingest(self, provider_message_id: str) -> IngestionResult:
        try:
            result = await self._ingest(provider_message_id)
        except AuthError:
            raise
        except Exception as e:
            logger.exception("Unexpected error ingesting message", provider_message_id=provider_message_id)
            result = _failed(provider_message_id, e, recoverable=False)

        reason = None
        if isinstance(result, Failed):
            reason = result.reason
        elif isinstance(result, Skipped):
            reason = result.reason.value
        log_ingestion_outcome(provider_message_id, _outcome_name(result), self.source.value, reason)
        return result

    async def _ingest(self, provider_message_id: str) -> IngestionResult:
        provider = self.context.provider

        try:
            metadata = await provider.fetch_metadata(provider_message_id)
        except AuthError:
            raise
        except IngestionError as e:
            # Membership is unknown, so nothing is recorded; the next run retries as NEW
            return _failed(provider_message_id, e)

        decision = self.membership.evaluate(
            metadata.sender, metadata.recipients, metadata.cc_recipients
        )
        if not decision.allowed:
            return Skipped(provider_message_id, SkipReason.NON_MEMBER, decision.reason)

        try:
            dedup_decision = await self.dedup.check(provider_message_id)
        except DatabaseError as e:
            return _failed(provider_message_id, e)
        if dedup_decision is DedupDecision.DUPLICATE:
            return Skipped(provider_message_id, SkipReason.DUPLICATE)

        try:
            raw = await provider.fetch(provider_message_id)
            message = await self.persistence.persist(
                raw,
                project_id=self.context.project_id,
                user_id=self.context.user_id,
                source=self.source,
                retry=dedup_decision is DedupDecision.RETRY,
            )
        except AuthError:
            raise
        except DuplicateSkip:
            return Skipped(provider_message_id, SkipReason.DUPLICATE, "unique constraint")
        except (IngestionError, BlobStorageError, DatabaseError) as e:
            recorded = await self._record_failure(provider_message_id, e)
            return _failed(provider_message_id, e, recorded=recorded)
        except Exception as e:
            logger.exception("Unexpected error persisting message", provider_message_id=provider_message_id)
            recorded = await self._record_failure(provider_message_id, e, permanent=True)
            return _failed(provider_message_id, e, recoverable=False, recorded=recorded)

        return Persisted(provider_message_id, message, retried=dedup_decision is DedupDecision.RETRY)

    async def _record_failure(
        self, provider_message_id: str, error: Exception, permanent: bool | None = None
    ) -> bool:
        """Write the failure to the message row; False when the store itself is down."""
        if permanent is None:
            permanent = isinstance(error, MalformedContentError) or not getattr(error, "recoverable", True)
        try:
            await self.context.repository.record_failure(
                provider_message_id,
                project_id=self.context.project_id,
                user_id=self.context.user_id,
                error_details={
                    "error_type": type(error).__name__,
                    "message": str(error),
                    "source": self.source.value,
                },
                permanent=permanent,
                max_retries=self.context.config.INGESTION_MAX_RETRIES,
            )
        except DatabaseError as e:
            logger.error(
                "Failed to record ingestion failure",
                provider_message_id=provider_message_id,
                error=str(e),
            )
            return False
        return True


def _failed(
    provider_message_id: str,
    error: Exception,
    recoverable: bool | None = None,
    recorded: bool = False,
) -> Failed:
    if recoverable is None:
        recoverable = bool(getattr(error, "recoverable", False))
    return Failed(
        provider_message_id=provider_message_id,
        reason=str(error),
        recoverable=recoverable,
        error_type=type(error).__name__,
        recorded=recorded,
    )


def _outcome_name(result: IngestionResult) -> str:
    if isinstance(result, Persisted):
        return "persisted"
    if isinstance(result, Skipped):
        return f"skipped_{result.reason.value}"
    return "failed"
