"""
Resource lifecycle for jobs and the CLI, mirroring the API lifespan.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from nailit.db.pool import db_pool
from nailit.features.email_ingestion.services.context import IngestionResources
from nailit.features.email_ingestion.services.cursor_store import HistoryCursorStore
from nailit.infrastructure.observability.logging import get_logger
from nailit.services.gmail.google_client import GoogleGmailService
from nailit.services.redis_client import fast_redis
from nailit.services.storage.blob_storage import S3BlobStore

logger = get_logger(__name__)


@asynccontextmanager
async def ingestion_runtime(with_redis: bool = True) -> AsyncIterator[IngestionResources]:
    await db_pool.initialize()
    if with_redis:
        await fast_redis.initialize()

    resources = IngestionResources(
        gmail_client=GoogleGmailService(),
        blob_store=S3BlobStore(),
        cursor_store=HistoryCursorStore(fast_redis) if with_redis else None,
    )
    try:
        yield resources
    finally:
        await resources.close()
        if with_redis:
            await fast_redis.close()
        await db_pool.close()
        logger.debug("Ingestion runtime closed")
