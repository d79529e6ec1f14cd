"""
Mail ingestion routes.

The Gmail push webhook is authenticated by a shared token on the push
subscription URL. Operational endpoints (discovery, import, thread
validation, watch control) require the X-Api-Key header.
"""

import hmac
from datetime import UTC, datetime, time, timedelta

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from nailit.config import settings
from nailit.db.helpers import DatabaseError
from nailit.features.email_ingestion.api.schemas import (
    DiscoveryRequestBody,
    DiscoveryResponse,
    ImportRequestBody,
    ImportSummaryResponse,
    NotificationResponse,
    ThreadReportResponse,
    ThreadResponse,
    ThreadValidationRequest,
    ThreadValidationResponse,
    ThreadWarningResponse,
    WatchRequest,
    WatchResponse,
)
from nailit.features.email_ingestion.domain.errors import (
    AuthError,
    IngestionError,
    MailboxNotConfiguredError,
    MalformedNotificationError,
    TransientProviderError,
)
from nailit.features.email_ingestion.domain.models import ConversationThread, DiscoveryRequest
from nailit.features.email_ingestion.repository.message_repository import MessageRepository
from nailit.features.email_ingestion.repository.team_repository import TeamRepository
from nailit.features.email_ingestion.services.batch_import_service import BatchImportService
from nailit.features.email_ingestion.services.context import IngestionResources
from nailit.features.email_ingestion.services.discovery_service import DiscoveryService
from nailit.features.email_ingestion.services.realtime_service import RealtimeIngestionService
from nailit.features.email_ingestion.services.thread_reconstruction import (
    ThreadReconstructionEngine,
    build_role_directory,
    summarize,
)
from nailit.features.email_ingestion.services.watch_service import WatchService
from nailit.infrastructure.observability.logging import (
    bind_ingestion_context,
    clear_ingestion_context,
    get_logger,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/ingestion", tags=["ingestion"])


def get_ingestion_resources(request: Request) -> IngestionResources:
    resources = getattr(request.app.state, "ingestion_resources", None)
    if resources is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Ingestion not initialized"
        )
    return resources


def verify_webhook_token(token: str | None = Query(default=None)) -> None:
    expected = settings.GMAIL_WEBHOOK_TOKEN
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook token not configured"
        )
    if not token or not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token")


def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
    expected = settings.OPERATIONS_API_KEY
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Operations API key not configured"
        )
    if not x_api_key or not hmac.compare_digest(x_api_key.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


def _to_http_error(e: Exception, operation: str, project_id: str | None = None) -> HTTPException:
    """Map ingestion failures onto HTTP status codes."""
    logger.error(
        "Ingestion operation failed",
        operation=operation,
        project_id=project_id,
        error_type=type(e).__name__,
        error=str(e),
    )
    if isinstance(e, MailboxNotConfiguredError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, AuthError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, TransientProviderError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if isinstance(e, IngestionError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to run {operation}"
    )


@router.post(
    "/webhooks/gmail",
    response_model=NotificationResponse,
    dependencies=[Depends(verify_webhook_token)],
)
async def gmail_push_webhook(
    request: Request, resources: IngestionResources = Depends(get_ingestion_resources)
):
    """
    Pub/Sub push endpoint for Gmail notifications.

    Non-2xx responses make Pub/Sub redeliver, so only transient failures
    return 503. Rejected credentials are acknowledged to stop redelivery.
    """
    try:
        envelope = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not JSON")

    service = RealtimeIngestionService(
        resources.cursor_store, resources.contexts_for_mailbox, resources.config
    )
    try:
        summary = await service.handle_notification(envelope)
    except MalformedNotificationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AuthError as e:
        logger.error("Push notification mailbox authorization rejected", error=str(e))
        return NotificationResponse(status="auth_failed")
    except (TransientProviderError, DatabaseError) as e:
        logger.warning("Push notification deferred", error_type=type(e).__name__, error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Retry later")

    return NotificationResponse(status="processed", **summary.to_dict())


@router.post(
    "/discovery", response_model=DiscoveryResponse, dependencies=[Depends(require_api_key)]
)
async def discover_messages(
    body: DiscoveryRequestBody, resources: IngestionResources = Depends(get_ingestion_resources)
):
    """Run discovery for a project's mailbox and return candidate IDs."""
    try:
        context = await resources.context_for_project(body.project_id)
        discovery = DiscoveryService(context.provider, page_size=resources.config.DISCOVERY_PAGE_SIZE)
        result = await discovery.discover(
            DiscoveryRequest(
                start_date=body.start_date,
                end_date=body.end_date,
                keywords=body.keywords,
                max_results=body.max_results,
            )
        )
    except (IngestionError, DatabaseError) as e:
        raise _to_http_error(e, "discovery", body.project_id) from e

    return DiscoveryResponse(
        project_id=body.project_id,
        query=result.query,
        pages=result.pages,
        total=result.total,
        message_ids=result.message_ids,
    )


@router.post(
    "/import", response_model=ImportSummaryResponse, dependencies=[Depends(require_api_key)]
)
async def import_messages(
    body: ImportRequestBody, resources: IngestionResources = Depends(get_ingestion_resources)
):
    """
    Run a historical import (discovery + batch import) and return the summary.

    A run cut short by rejected credentials answers 409 with the partial
    summary in the detail.
    """
    bind_ingestion_context(project_id=body.project_id, job="historical_import")
    try:
        context = await resources.context_for_project(body.project_id)
        service = BatchImportService(
            context,
            batch_size=body.batch_size,
            inter_batch_delay=body.inter_batch_delay,
            max_concurrency=body.max_concurrency,
        )
        summary = await service.import_range(
            DiscoveryRequest(
                start_date=body.start_date,
                end_date=body.end_date,
                keywords=body.keywords,
                max_results=body.max_results,
            )
        )
    except (IngestionError, DatabaseError) as e:
        raise _to_http_error(e, "import", body.project_id) from e
    finally:
        clear_ingestion_context()

    if summary.aborted:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": summary.abort_reason, "summary": summary.to_dict()},
        )
    return ImportSummaryResponse(**summary.to_dict())


def _thread_response(thread: ConversationThread) -> ThreadResponse:
    sent_times = [m.sent_at for m in thread.ordered_messages if m.sent_at]
    return ThreadResponse(
        thread_key=thread.thread_key,
        subject=thread.subject,
        message_count=thread.message_count,
        provider_message_ids=[m.provider_message_id for m in thread.ordered_messages],
        participants=sorted(thread.participants),
        first_sent_at=min(sent_times) if sent_times else None,
        last_sent_at=max(sent_times) if sent_times else None,
        is_valid=thread.is_valid,
        is_bidirectional=thread.is_bidirectional,
        has_proper_threading=thread.has_proper_threading,
        has_realistic_timing=thread.has_realistic_timing,
        has_authentic_content=thread.has_authentic_content,
        validation_errors=thread.validation_errors,
        warnings=[ThreadWarningResponse(code=w.code, message=w.message) for w in thread.warnings],
    )


@router.post(
    "/threads/validate",
    response_model=ThreadValidationResponse,
    dependencies=[Depends(require_api_key)],
)
async def validate_threads(body: ThreadValidationRequest):
    """Reconstruct a project's stored messages into threads and validate them."""
    start = datetime.combine(body.start_date, time.min, tzinfo=UTC) if body.start_date else None
    end = (
        datetime.combine(body.end_date + timedelta(days=1), time.min, tzinfo=UTC)
        if body.end_date
        else None
    )
    try:
        messages = await MessageRepository.list_project_messages(body.project_id, start, end)
        team_members = await TeamRepository.get_team_members(body.project_id)
        mailbox = await TeamRepository.get_mailbox(body.project_id)
    except DatabaseError as e:
        raise _to_http_error(e, "thread_validation", body.project_id) from e

    engine = ThreadReconstructionEngine(
        build_role_directory(team_members, mailbox.owner_email if mailbox else None)
    )
    threads = engine.reconstruct(messages)
    report = summarize(threads)

    return ThreadValidationResponse(
        project_id=body.project_id,
        threads=[_thread_response(t) for t in threads],
        report=ThreadReportResponse(**report.to_dict()),
    )


@router.post("/watch", response_model=WatchResponse, dependencies=[Depends(require_api_key)])
async def start_watch(
    body: WatchRequest, resources: IngestionResources = Depends(get_ingestion_resources)
):
    """Start Gmail push notifications for a project's mailbox."""
    topic = resources.config.GMAIL_PUBSUB_TOPIC
    if not topic:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pub/Sub topic not configured"
        )
    try:
        context = await resources.context_for_project(body.project_id)
        subscription = await WatchService().start_watch(context, topic, body.label_ids)
    except (IngestionError, DatabaseError) as e:
        raise _to_http_error(e, "watch", body.project_id) from e

    return WatchResponse(
        project_id=body.project_id,
        history_id=subscription.history_id,
        expiration=subscription.expiration,
        monitoring_enabled=True,
    )


@router.delete("/watch", response_model=WatchResponse, dependencies=[Depends(require_api_key)])
async def stop_watch(
    project_id: str = Query(..., min_length=1),
    resources: IngestionResources = Depends(get_ingestion_resources),
):
    """Stop Gmail push notifications for a project's mailbox."""
    try:
        context = await resources.context_for_project(project_id)
        await WatchService().stop_watch(context)
    except (IngestionError, DatabaseError) as e:
        raise _to_http_error(e, "stop_watch", project_id) from e

    return WatchResponse(
        project_id=project_id, history_id=None, expiration=None, monitoring_enabled=False
    )
