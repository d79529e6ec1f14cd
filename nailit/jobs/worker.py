"""
Process entrypoint for scheduled ingestion jobs.

    nailit-worker historical_import
    WORKER_JOB=watch_renewal nailit-worker

The first CLI argument wins over WORKER_JOB; the default is watch_renewal.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from nailit.config import settings
from nailit.features.email_ingestion.jobs.historical_import_job import run_historical_import
from nailit.features.email_ingestion.jobs.watch_renewal_job import start_watch_renewal_scheduler
from nailit.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

DEFAULT_JOB = "watch_renewal"

JOB_REGISTRY: dict[str, Callable[[], Awaitable[Any]]] = {
    "historical_import": run_historical_import,
    "watch_renewal": start_watch_renewal_scheduler,
}


def _normalize(name: str) -> str:
    return name.strip().lower()


def _resolve_job_name() -> str:
    requested = sys.argv[1] if len(sys.argv) > 1 else os.getenv("WORKER_JOB", DEFAULT_JOB)
    return _normalize(requested)


async def run_worker(job_name: str | None = None) -> None:
    name = _normalize(job_name or _resolve_job_name())
    job = JOB_REGISTRY.get(name)
    if job is None:
        raise ValueError(f"Unknown worker job '{name}'. Available jobs: {', '.join(sorted(JOB_REGISTRY))}")

    logger.info("Worker job starting", job=name)
    result = await job()
    if result is not None:
        logger.info("Worker job finished", job=name, result=result)


def main() -> None:
    setup_logging(log_level=settings.LOG_LEVEL)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
