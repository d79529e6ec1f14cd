"""
Historical import job for the background worker.

Configured through IMPORT_PROJECT_ID plus either IMPORT_START_DATE /
IMPORT_END_DATE (YYYY-MM-DD) or IMPORT_DAYS_BACK (default 90).
"""

import os
from datetime import UTC, date, datetime, timedelta

from nailit.config import settings
from nailit.features.email_ingestion.domain.models import DiscoveryRequest
from nailit.features.email_ingestion.jobs.runtime import ingestion_runtime
from nailit.features.email_ingestion.services.batch_import_service import BatchImportService
from nailit.infrastructure.observability.logging import (
    bind_ingestion_context,
    clear_ingestion_context,
    get_logger,
)

logger = get_logger(__name__)

DEFAULT_DAYS_BACK = 90


def _resolve_request() -> tuple[str, DiscoveryRequest]:
    project_id = os.getenv("IMPORT_PROJECT_ID", "").strip()
    if not project_id:
        raise ValueError("IMPORT_PROJECT_ID must be set for the historical_import job")

    today = datetime.now(UTC).date()
    end_date = date.fromisoformat(os.getenv("IMPORT_END_DATE") or today.isoformat())
    if os.getenv("IMPORT_START_DATE"):
        start_date = date.fromisoformat(os.environ["IMPORT_START_DATE"])
    else:
        days_back = int(os.getenv("IMPORT_DAYS_BACK", DEFAULT_DAYS_BACK))
        start_date = end_date - timedelta(days=days_back)

    keywords = [k for k in os.getenv("IMPORT_KEYWORDS", "").split(",") if k.strip()]
    return project_id, DiscoveryRequest(
        start_date=start_date,
        end_date=end_date,
        keywords=keywords,
        max_results=settings.DISCOVERY_MAX_RESULTS,
    )


async def run_historical_import() -> dict:
    project_id, request = _resolve_request()
    bind_ingestion_context(project_id=project_id, job="historical_import")
    try:
        async with ingestion_runtime(with_redis=False) as resources:
            context = await resources.context_for_project(project_id)
            summary = await BatchImportService(context).import_range(request)
        if summary.aborted:
            logger.error(
                "Historical import aborted",
                reason=summary.abort_reason,
                succeeded=summary.succeeded,
                processed=summary.processed,
            )
        return summary.to_dict()
    finally:
        clear_ingestion_context()
