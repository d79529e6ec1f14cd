"""
Batch import orchestrator for historical backfills.

Candidates are processed in fixed-size chunks with a pause between chunks to
stay under provider quotas. A failing message never stops its neighbours.
An AuthError aborts the run, and the summary still reports what was
persisted before it.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from nailit.features.email_ingestion.domain.errors import AuthError
from nailit.features.email_ingestion.domain.models import (
    DiscoveryRequest,
    ImportJob,
    ImportSummary,
    IngestionResult,
    IngestionSource,
    ProgressEvent,
)
from nailit.features.email_ingestion.services.context import IngestionContext
from nailit.features.email_ingestion.services.discovery_service import DiscoveryService
from nailit.features.email_ingestion.services.message_pipeline import MessageIngestionPipeline
from nailit.infrastructure.observability.logging import get_logger, log_batch_progress

logger = get_logger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


def chunked(items: list[str], size: int) -> list[list[str]]:
    if size <= 0:
        raise ValueError("batch_size must be positive")
    return [items[i : i + size] for i in range(0, len(items), size)]


class BatchImportService:
    def __init__(
        self,
        context: IngestionContext,
        *,
        batch_size: int | None = None,
        inter_batch_delay: float | None = None,
        max_concurrency: int | None = None,
        progress_callback: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        config = context.config
        self.context = context
        self.batch_size = batch_size or config.INGESTION_BATCH_SIZE
        self.inter_batch_delay = (
            config.INGESTION_BATCH_DELAY_SECONDS if inter_batch_delay is None else inter_batch_delay
        )
        self.max_concurrency = max(1, max_concurrency or config.INGESTION_MAX_CONCURRENCY)
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event or asyncio.Event()
        self._sleep = sleep
        self.pipeline = MessageIngestionPipeline(context, IngestionSource.HISTORICAL)

    async def import_range(self, request: DiscoveryRequest) -> ImportSummary:
        """Discover candidates for a date range, then import them."""
        discovery = DiscoveryService(self.context.provider, page_size=self.context.config.DISCOVERY_PAGE_SIZE)
        result = await discovery.discover(request)
        return await self.run(result.message_ids)

    async def run(self, candidate_ids: list[str]) -> ImportSummary:
        chunks = chunked(list(candidate_ids), self.batch_size)
        job = ImportJob(
            project_id=self.context.project_id,
            total_candidates=len(candidate_ids),
            total_batches=len(chunks),
            started_at=datetime.now(UTC),
        )
        started = time.monotonic()

        logger.info(
            "Batch import started",
            project_id=job.project_id,
            total_candidates=job.total_candidates,
            total_batches=job.total_batches,
            batch_size=self.batch_size,
            max_concurrency=self.max_concurrency,
        )

        for index, chunk in enumerate(chunks):
            if self.cancel_event.is_set():
                job.cancelled = True
                logger.warning(
                    "Batch import cancelled",
                    project_id=job.project_id,
                    batches_completed=job.batches_completed,
                    processed=job.processed_count,
                )
                break

            results, auth_error = await self._process_chunk(chunk)
            for result in results:
                job.record(result)
            job.processed_count += len(results)

            if auth_error is not None:
                job.aborted = True
                job.abort_reason = str(auth_error)
                logger.error(
                    "Mailbox authorization rejected, aborting import",
                    project_id=job.project_id,
                    batches_completed=job.batches_completed,
                    processed=job.processed_count,
                    error=str(auth_error),
                )
                break

            job.batches_completed += 1
            self._update_eta(job, time.monotonic() - started)
            self._emit_progress(job)

            if index < len(chunks) - 1 and self.inter_batch_delay > 0:
                await self._sleep(self.inter_batch_delay)

        summary = ImportSummary.from_job(job, datetime.now(UTC))
        logger.info(
            "Batch import finished",
            project_id=summary.project_id,
            processed=summary.processed,
            succeeded=summary.succeeded,
            skipped_duplicate=summary.skipped_duplicate,
            skipped_non_member=summary.skipped_non_member,
            failed=summary.failed,
            cancelled=summary.cancelled,
            aborted=summary.aborted,
            duration_seconds=summary.duration_seconds,
        )
        return summary

    async def _process_chunk(
        self, chunk: list[str]
    ) -> tuple[list[IngestionResult], AuthError | None]:
        """Results for the chunk, plus the AuthError that cut it short if any."""
        if self.max_concurrency == 1:
            results: list[IngestionResult] = []
            for message_id in chunk:
                try:
                    results.append(await self.pipeline.ingest(message_id))
                except AuthError as e:
                    return results, e
            return results, None

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(message_id: str) -> IngestionResult:
            async with semaphore:
                return await self.pipeline.ingest(message_id)

        outcomes = await asyncio.gather(*(bounded(m) for m in chunk), return_exceptions=True)
        auth_error = None
        results = []
        for outcome in outcomes:
            if isinstance(outcome, AuthError):
                auth_error = auth_error or outcome
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)
        return results, auth_error

    def _update_eta(self, job: ImportJob, elapsed_seconds: float) -> None:
        if elapsed_seconds <= 0 or job.processed_count == 0:
            return
        throughput = job.processed_count / elapsed_seconds
        job.throughput_per_second = round(throughput, 3)
        remaining = job.total_candidates - job.processed_count
        job.estimated_completion = datetime.now(UTC) + timedelta(seconds=remaining / throughput)

    def _emit_progress(self, job: ImportJob) -> None:
        eta_seconds = None
        if job.estimated_completion is not None:
            eta_seconds = max(0.0, (job.estimated_completion - datetime.now(UTC)).total_seconds())

        log_batch_progress(
            job.project_id,
            job.batches_completed,
            job.total_batches,
            job.processed_count,
            job.total_candidates,
            eta_seconds,
        )

        if self.progress_callback:
            self.progress_callback(
                ProgressEvent(
                    project_id=job.project_id,
                    batch_number=job.batches_completed,
                    total_batches=job.total_batches,
                    processed_count=job.processed_count,
                    total_candidates=job.total_candidates,
                    throughput_per_second=job.throughput_per_second,
                    eta_seconds=None if eta_seconds is None else round(eta_seconds, 1),
                )
            )
