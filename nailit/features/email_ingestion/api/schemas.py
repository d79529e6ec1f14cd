"""
Ingestion API request/response models.
Used by the ingestion router for input validation and serialization.
"""

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator


class DateRangeRequest(BaseModel):
    """Shared project + inclusive date range input."""

    project_id: str = Field(..., min_length=1, description="Project whose mailbox is searched")
    start_date: date = Field(..., description="First day to include")
    end_date: date = Field(..., description="Last day to include")
    keywords: list[str] = Field(default_factory=list, description="Optional OR-ed search terms")
    max_results: int = Field(default=1000, ge=1, le=10000, description="Candidate cap")

    @model_validator(mode="after")
    def check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class DiscoveryRequestBody(DateRangeRequest):
    """Request for discovering candidate messages."""


class DiscoveryResponse(BaseModel):
    project_id: str
    query: str
    pages: int
    total: int
    message_ids: list[str]


class ImportRequestBody(DateRangeRequest):
    """Request for a historical import run."""

    batch_size: int | None = Field(default=None, ge=1, le=100, description="Messages per batch")
    inter_batch_delay: float | None = Field(
        default=None, ge=0, le=60, description="Seconds to wait between batches"
    )
    max_concurrency: int | None = Field(
        default=None, ge=1, le=10, description="Messages processed concurrently within a batch"
    )


class ImportSummaryResponse(BaseModel):
    project_id: str
    total_candidates: int
    processed: int
    succeeded: int
    skipped_duplicate: int
    skipped_non_member: int
    failed: int
    batches_completed: int
    total_batches: int
    duration_seconds: float
    cancelled: bool
    errors: list[dict[str, Any]]
    aborted: bool = False
    abort_reason: str | None = None


class ThreadValidationRequest(BaseModel):
    """Request for reconstructing and validating a project's threads."""

    project_id: str = Field(..., min_length=1)
    start_date: date | None = Field(default=None, description="Only messages sent on/after")
    end_date: date | None = Field(default=None, description="Only messages sent on/before")


class ThreadWarningResponse(BaseModel):
    code: str
    message: str


class ThreadResponse(BaseModel):
    thread_key: str
    subject: str
    message_count: int
    provider_message_ids: list[str]
    participants: list[str]
    first_sent_at: datetime | None
    last_sent_at: datetime | None
    is_valid: bool
    is_bidirectional: bool
    has_proper_threading: bool
    has_realistic_timing: bool
    has_authentic_content: bool
    validation_errors: list[str]
    warnings: list[ThreadWarningResponse]


class ThreadReportResponse(BaseModel):
    total_threads: int
    valid_threads: int
    bidirectional_threads: int
    contractor_initiated: int
    homeowner_responses: int
    realistic_timing: int
    proper_threading: int
    authentic_content: int
    warnings: int
    issues: list[str]


class ThreadValidationResponse(BaseModel):
    project_id: str
    threads: list[ThreadResponse]
    report: ThreadReportResponse


class WatchRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    label_ids: list[str] | None = Field(default=None, description="Labels to watch (default INBOX)")


class WatchResponse(BaseModel):
    project_id: str
    history_id: str | None
    expiration: datetime | None
    monitoring_enabled: bool


class NotificationResponse(BaseModel):
    status: str
    email_address: str | None = None
    history_id: str | None = None
    project_id: str | None = None
    baseline_recorded: bool = False
    candidates: int = 0
    succeeded: int = 0
    skipped_duplicate: int = 0
    skipped_non_member: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)
    cursor_held: bool = False
    latency_seconds: float = 0.0
    latency_exceeded: bool = False
