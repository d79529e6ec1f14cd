"""
Watch renewal job.
Gmail push watches lapse after 7 days; this re-issues them for every
monitored mailbox on a fixed interval.
"""

import asyncio

from nailit.config import settings
from nailit.features.email_ingestion.jobs.runtime import ingestion_runtime
from nailit.features.email_ingestion.services.context import IngestionResources
from nailit.features.email_ingestion.services.watch_service import WatchService
from nailit.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


async def run_watch_renewal(resources: IngestionResources) -> dict:
    """Renew the watch on every monitored mailbox once."""
    topic = resources.config.GMAIL_PUBSUB_TOPIC
    if not topic:
        logger.warning("Watch renewal skipped, GMAIL_PUBSUB_TOPIC not set")
        return {"skipped": True, "renewed": [], "failed": []}

    contexts = await resources.monitored_contexts()
    result = await WatchService().renew_all(contexts, topic)
    return {"skipped": False, **result}


async def start_watch_renewal_scheduler() -> None:
    """Run watch renewal forever at GMAIL_WATCH_RENEWAL_HOURS intervals."""
    interval_seconds = settings.GMAIL_WATCH_RENEWAL_HOURS * 3600
    logger.info("Starting watch renewal scheduler", interval_hours=settings.GMAIL_WATCH_RENEWAL_HOURS)

    async with ingestion_runtime() as resources:
        while True:
            try:
                result = await run_watch_renewal(resources)
                logger.info(
                    "Watch renewal cycle completed",
                    renewed=len(result["renewed"]),
                    failed=len(result["failed"]),
                )
                await asyncio.sleep(interval_seconds)
            except Exception as e:
                logger.error(
                    "Error in watch renewal scheduler", error=str(e), error_type=type(e).__name__
                )
                # Back off before retrying to avoid tight error loops
                await asyncio.sleep(60)
