"""
Gmail push watch lifecycle: start, stop, and periodic renewal.
Gmail expires a watch after 7 days unless it is re-issued.
"""

from typing import Any

from nailit.features.email_ingestion.domain.errors import IngestionError
from nailit.features.email_ingestion.domain.models import WatchSubscription
from nailit.features.email_ingestion.repository.team_repository import TeamRepository
from nailit.features.email_ingestion.services.context import IngestionContext
from nailit.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class WatchService:
    def __init__(self, team_repository: Any = TeamRepository):
        self.team_repository = team_repository

    async def start_watch(
        self, context: IngestionContext, topic_name: str, label_ids: list[str] | None = None
    ) -> WatchSubscription:
        subscription = await context.provider.watch(topic_name, label_ids)
        subscription.project_id = context.project_id

        await self.team_repository.update_watch_state(
            context.project_id,
            monitoring_enabled=True,
            watch_expiration=subscription.expiration,
        )

        # The watch response's historyId is the first valid cursor
        if context.cursor_store and context.mailbox and subscription.history_id:
            await context.cursor_store.advance(context.mailbox, subscription.history_id)

        logger.info(
            "Mailbox watch active",
            project_id=context.project_id,
            mailbox=context.mailbox,
            history_id=subscription.history_id,
        )
        return subscription

    async def stop_watch(self, context: IngestionContext) -> None:
        await context.provider.stop()
        await self.team_repository.update_watch_state(
            context.project_id, monitoring_enabled=False, watch_expiration=None
        )
        logger.info("Mailbox watch stopped", project_id=context.project_id, mailbox=context.mailbox)

    async def renew_all(self, contexts: list[IngestionContext], topic_name: str) -> dict[str, Any]:
        """Re-issue the watch for every context; one mailbox failing does not stop the rest."""
        renewed, failed = [], []
        for context in contexts:
            try:
                await self.start_watch(context, topic_name)
                renewed.append(context.project_id)
            except IngestionError as e:
                logger.error(
                    "Watch renewal failed",
                    project_id=context.project_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                failed.append({"project_id": context.project_id, "error": str(e)})

        logger.info("Watch renewal completed", renewed=len(renewed), failed=len(failed))
        return {"renewed": renewed, "failed": failed}
