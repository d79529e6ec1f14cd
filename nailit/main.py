"""
FastAPI application: Gmail push webhook, operator endpoints and health checks.

Run with ``uvicorn nailit.main:app``.
"""

import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from nailit.config import settings
from nailit.db.pool import db_pool
from nailit.features.email_ingestion.api.router import router as ingestion_router
from nailit.features.email_ingestion.services.context import IngestionResources
from nailit.features.email_ingestion.services.cursor_store import HistoryCursorStore
from nailit.infrastructure.observability.logging import get_logger, setup_logging
from nailit.routes import health
from nailit.services.gmail.google_client import GoogleGmailService
from nailit.services.redis_client import fast_redis
from nailit.services.storage.blob_storage import S3BlobStore

setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)

Closer = tuple[str, Callable[[], Awaitable[None]]]


async def _close_all(closers: list[Closer]) -> list[str]:
    """Run closers newest first; collect failures instead of stopping."""
    errors = []
    for name, close in reversed(closers):
        try:
            await close()
        except Exception as e:
            logger.error("Error closing resource", resource=name, error=str(e))
            errors.append(f"{name}: {e}")
    return errors


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Ingestion API starting", environment=settings.environment, debug=settings.debug)
    closers: list[Closer] = []

    try:
        await db_pool.initialize()
        closers.append(("database_pool", db_pool.close))

        await fast_redis.initialize()
        closers.append(("redis", fast_redis.close))

        resources = IngestionResources(
            gmail_client=GoogleGmailService(),
            blob_store=S3BlobStore(),
            cursor_store=HistoryCursorStore(fast_redis),
        )
        closers.append(("gmail_client", resources.close))
        app.state.ingestion_resources = resources
    except Exception as e:
        logger.error(
            "Startup failed",
            error=str(e),
            started=[name for name, _ in closers],
        )
        await _close_all(closers)
        raise

    logger.info("Ingestion API ready", resources=[name for name, _ in closers])
    yield

    errors = await _close_all(closers)
    if errors:
        logger.warning("Shutdown finished with errors", errors=errors)
    else:
        logger.info("Ingestion API stopped")


app = FastAPI(
    title="NailIt Mail Ingestion",
    description="Historical and real-time Gmail ingestion for renovation projects",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(ingestion_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
