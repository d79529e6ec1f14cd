"""
Domain subpackage for mail ingestion.
"""

from .errors import (
    AuthError,
    DuplicateSkip,
    IngestionError,
    MailboxNotConfiguredError,
    MalformedContentError,
    MalformedNotificationError,
    ThreadValidationWarning,
    TransientProviderError,
)
from .models import (
    ConversationThread,
    DedupDecision,
    Failed,
    IngestionResult,
    IngestionSource,
    IngestionStatus,
    Message,
    Persisted,
    RawMessage,
    Skipped,
)

__all__ = [
    "AuthError",
    "ConversationThread",
    "DedupDecision",
    "DuplicateSkip",
    "Failed",
    "IngestionError",
    "IngestionResult",
    "IngestionSource",
    "IngestionStatus",
    "MailboxNotConfiguredError",
    "MalformedContentError",
    "MalformedNotificationError",
    "Message",
    "Persisted",
    "RawMessage",
    "Skipped",
    "ThreadValidationWarning",
    "TransientProviderError",
]
