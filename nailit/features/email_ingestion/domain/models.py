"""
Domain models for the mail ingestion feature.

Dataclasses shared by the filters, services, repositories and API layer.
Business rules live in the services; these types only carry data plus a
few derived values.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from .errors import ThreadValidationWarning


class IngestionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class IngestionSource(str, Enum):
    HISTORICAL = "historical"
    REALTIME = "realtime"


class DedupDecision(str, Enum):
    NEW = "new"
    RETRY = "retry"
    DUPLICATE = "duplicate"


class SkipReason(str, Enum):
    DUPLICATE = "duplicate"
    NON_MEMBER = "non_member"


@dataclass(slots=True)
class TeamMember:
    """A team_members row; role is free text such as 'contractor' or 'homeowner'."""

    name: str
    email: str
    role: str


@dataclass(slots=True)
class MailboxConfig:
    """Connected mailbox for a project (email_settings joined with projects)."""

    project_id: str
    user_id: str
    gmail_address: str | None
    access_token: str | None
    monitoring_enabled: bool = False
    owner_email: str | None = None


@dataclass(slots=True, frozen=True)
class MembershipDecision:
    allowed: bool
    reason: str
    matched: str | None = None


@dataclass(slots=True)
class AttachmentRef:
    """Attachment part discovered while parsing a message."""

    filename: str
    mime_type: str
    size: int
    attachment_id: str | None = None
    data: str | None = None  # base64url body when Gmail inlines it


@dataclass(slots=True)
class RawMessage:
    """Provider message as fetched, before persistence."""

    provider_message_id: str
    thread_id: str | None
    sender: str
    sender_name: str | None
    recipients: list[str]
    cc_recipients: list[str]
    subject: str
    sent_at: datetime | None
    received_at: datetime | None
    body_text: str = ""
    body_html: str = ""
    attachments: list[AttachmentRef] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)
    history_id: str | None = None
    label_ids: list[str] = field(default_factory=list)
    internet_message_id: str | None = None
    in_reply_to: str | None = None
    references: str | None = None
    size_estimate: int = 0

    def content_document(self) -> dict[str, Any]:
        """JSON document written to blob storage for this message."""
        return {
            "provider_message_id": self.provider_message_id,
            "thread_id": self.thread_id,
            "headers": self.headers,
            "from": self.sender,
            "from_name": self.sender_name,
            "to": self.recipients,
            "cc": self.cc_recipients,
            "subject": self.subject,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "body_text": self.body_text,
            "body_html": self.body_html,
            "attachments": [
                {
                    "filename": a.filename,
                    "mime_type": a.mime_type,
                    "size": a.size,
                    "attachment_id": a.attachment_id,
                }
                for a in self.attachments
            ],
            "label_ids": self.label_ids,
        }


@dataclass(slots=True)
class GmailProviderMetadata:
    """Provider-specific fields kept alongside a stored message."""

    history_id: str | None = None
    label_ids: list[str] = field(default_factory=list)
    internet_message_id: str | None = None
    in_reply_to: str | None = None
    references: str | None = None
    ingestion_source: IngestionSource = IngestionSource.HISTORICAL
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["ingestion_source"] = self.ingestion_source.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GmailProviderMetadata":
        data = data or {}
        return cls(
            history_id=data.get("history_id"),
            label_ids=list(data.get("label_ids") or []),
            internet_message_id=data.get("internet_message_id"),
            in_reply_to=data.get("in_reply_to"),
            references=data.get("references"),
            ingestion_source=IngestionSource(data.get("ingestion_source", "historical")),
            extra=dict(data.get("extra") or {}),
        )


@dataclass(slots=True)
class Message:
    """A stored email_messages row."""

    provider_message_id: str
    thread_id: str | None
    sender: str
    recipients: list[str]
    subject: str
    sent_at: datetime | None
    project_id: str | None = None
    user_id: str | None = None
    sender_name: str | None = None
    cc_recipients: list[str] = field(default_factory=list)
    received_at: datetime | None = None
    body_text: str | None = None
    body_html: str | None = None
    raw_content_pointer: str | None = None
    attachment_pointers: list[str] = field(default_factory=list)
    ingestion_status: IngestionStatus = IngestionStatus.PENDING
    analysis_status: str = "pending"
    assignment_status: str = "pending"
    relevance_score: float | None = None
    retry_count: int = 0
    error_details: dict[str, Any] | None = None
    provider_metadata: GmailProviderMetadata = field(default_factory=GmailProviderMetadata)

    def __post_init__(self):
        if self.relevance_score is not None and not 0.0 <= self.relevance_score <= 1.0:
            raise ValueError("relevance_score must be within [0, 1]")
        if self.retry_count < 0:
            raise ValueError("retry_count cannot be negative")

    @property
    def sort_time(self) -> datetime:
        return self.sent_at or self.received_at or datetime.min.replace(tzinfo=UTC)


@dataclass(slots=True, frozen=True)
class MessageState:
    """Dedup-relevant view of an existing record."""

    provider_message_id: str
    ingestion_status: IngestionStatus
    retry_count: int


@dataclass(slots=True, frozen=True)
class Persisted:
    provider_message_id: str
    message: Message
    retried: bool = False


@dataclass(slots=True, frozen=True)
class Skipped:
    provider_message_id: str
    reason: SkipReason
    detail: str | None = None


@dataclass(slots=True, frozen=True)
class Failed:
    provider_message_id: str
    reason: str
    recoverable: bool
    error_type: str
    # A pending/failed row exists, so a later run can find this message again
    recorded: bool = False


IngestionResult = Persisted | Skipped | Failed


def _tally(summary: Any, result: IngestionResult) -> None:
    """Count one result into an ImportJob or NotificationSummary."""
    if isinstance(result, Persisted):
        summary.succeeded += 1
    elif isinstance(result, Skipped):
        if result.reason is SkipReason.DUPLICATE:
            summary.skipped_duplicate += 1
        else:
            summary.skipped_non_member += 1
    else:
        summary.failed += 1
        summary.errors.append(
            {
                "provider_message_id": result.provider_message_id,
                "error_type": result.error_type,
                "reason": result.reason,
                "recoverable": result.recoverable,
            }
        )


@dataclass(slots=True)
class DiscoveryRequest:
    start_date: date
    end_date: date
    keywords: list[str] = field(default_factory=list)
    max_results: int = 1000

    def __post_init__(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.max_results <= 0:
            raise ValueError("max_results must be positive")


@dataclass(slots=True)
class DiscoveryResult:
    message_ids: list[str]
    query: str
    pages: int

    @property
    def total(self) -> int:
        return len(self.message_ids)


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    project_id: str
    batch_number: int
    total_batches: int
    processed_count: int
    total_candidates: int
    throughput_per_second: float | None
    eta_seconds: float | None


@dataclass(slots=True)
class ImportJob:
    """In-memory state of one batch import run. Logged, never persisted."""

    project_id: str
    total_candidates: int
    total_batches: int
    started_at: datetime
    processed_count: int = 0
    batches_completed: int = 0
    succeeded: int = 0
    skipped_duplicate: int = 0
    skipped_non_member: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    throughput_per_second: float | None = None
    estimated_completion: datetime | None = None
    cancelled: bool = False
    aborted: bool = False
    abort_reason: str | None = None

    def record(self, result: IngestionResult) -> None:
        _tally(self, result)


@dataclass(slots=True)
class ImportSummary:
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
    errors: list[dict[str, Any]] = field(default_factory=list)
    aborted: bool = False
    abort_reason: str | None = None

    @classmethod
    def from_job(cls, job: ImportJob, finished_at: datetime) -> "ImportSummary":
        return cls(
            project_id=job.project_id,
            total_candidates=job.total_candidates,
            processed=job.processed_count,
            succeeded=job.succeeded,
            skipped_duplicate=job.skipped_duplicate,
            skipped_non_member=job.skipped_non_member,
            failed=job.failed,
            batches_completed=job.batches_completed,
            total_batches=job.total_batches,
            duration_seconds=round((finished_at - job.started_at).total_seconds(), 3),
            cancelled=job.cancelled,
            errors=list(job.errors),
            aborted=job.aborted,
            abort_reason=job.abort_reason,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class NotificationSummary:
    email_address: str
    history_id: str
    project_id: str | None = None
    baseline_recorded: bool = False
    candidates: int = 0
    succeeded: int = 0
    skipped_duplicate: int = 0
    skipped_non_member: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    cursor_held: bool = False
    latency_seconds: float = 0.0
    latency_exceeded: bool = False

    def record(self, result: IngestionResult) -> None:
        _tally(self, result)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class WatchSubscription:
    history_id: str | None
    expiration: datetime | None
    project_id: str | None = None


@dataclass(slots=True)
class ConversationThread:
    thread_key: str
    subject: str
    ordered_messages: list[Message] = field(default_factory=list)
    participants: set[str] = field(default_factory=set)
    is_valid: bool = False
    validation_errors: list[str] = field(default_factory=list)
    warnings: list[ThreadValidationWarning] = field(default_factory=list)
    is_bidirectional: bool = False
    has_proper_threading: bool = False
    has_realistic_timing: bool = False
    has_authentic_content: bool = False
    contractor_initiated: bool = False
    homeowner_responded: bool = False

    @property
    def message_count(self) -> int:
        return len(self.ordered_messages)


@dataclass(slots=True)
class ThreadValidationReport:
    total_threads: int
    valid_threads: int
    bidirectional_threads: int
    contractor_initiated: int
    homeowner_responses: int
    realistic_timing: int
    proper_threading: int
    authentic_content: int
    warnings: int
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
