"""
structlog configuration and the ingestion log helpers.

Every line is a JSON object on stdout. Helpers below emit the events
dashboards key on (``event_type`` = batch_progress / message_ingestion),
so keep their field names stable.
"""

import logging
import sys
from typing import Any

import structlog

NOISY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "uvicorn.access")


def setup_logging(log_level: str = "INFO") -> None:
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_ingestion_context(**fields: Any) -> None:
    """Attach fields such as project_id or job to every line logged in this context."""
    structlog.contextvars.bind_contextvars(**fields)


def clear_ingestion_context() -> None:
    structlog.contextvars.clear_contextvars()


def log_batch_progress(
    project_id: str,
    batch_number: int,
    total_batches: int,
    processed: int,
    total: int,
    eta_seconds: float | None,
) -> None:
    fields: dict[str, Any] = {
        "event_type": "batch_progress",
        "project_id": project_id,
        "batch": batch_number,
        "total_batches": total_batches,
        "processed": processed,
        "total": total,
        "percent_complete": round(100 * processed / total, 1) if total else 100.0,
    }
    if eta_seconds is not None:
        fields["eta_seconds"] = round(eta_seconds, 1)
    get_logger("ingestion.progress").info("Batch import progress", **fields)


_OUTCOME_LEVELS = {"failed": ("warning", "Message ingestion failed"), "persisted": ("info", "Message ingested")}


def log_ingestion_outcome(
    provider_message_id: str, outcome: str, source: str, reason: str | None = None
) -> None:
    """One line per message: persisted at info, failed at warning, skips at debug."""
    fields: dict[str, Any] = {
        "event_type": "message_ingestion",
        "provider_message_id": provider_message_id,
        "outcome": outcome,
        "source": source,
    }
    if reason:
        fields["reason"] = reason

    level, message = _OUTCOME_LEVELS.get(outcome, ("debug", "Message skipped"))
    getattr(get_logger("ingestion.outcome"), level)(message, **fields)
