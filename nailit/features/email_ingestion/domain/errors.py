"""
Error taxonomy for mail ingestion.

Every failure the pipeline can observe maps onto one of these types so
callers decide retry/abort/skip from the type alone.
"""

from dataclasses import dataclass


class IngestionError(Exception):
    """Base exception for ingestion failures."""

    def __init__(self, message: str, *, recoverable: bool = False):
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable


class DuplicateSkip(IngestionError):
    """The message is already stored; not a failure."""

    def __init__(self, provider_message_id: str):
        super().__init__(f"Message {provider_message_id} already ingested", recoverable=False)
        self.provider_message_id = provider_message_id


class TransientProviderError(IngestionError):
    """Network failure, rate limit or provider 5xx. Safe to retry later."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, recoverable=True)
        self.status_code = status_code


class MalformedContentError(IngestionError):
    """Headers or body could not be parsed. Permanent for this message."""

    def __init__(self, message: str, provider_message_id: str | None = None):
        super().__init__(message, recoverable=False)
        self.provider_message_id = provider_message_id


class AuthError(IngestionError):
    """Mailbox credentials were rejected. Fatal for the whole job."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, recoverable=False)
        self.status_code = status_code


class MalformedNotificationError(IngestionError):
    """A push notification payload could not be decoded."""

    def __init__(self, message: str):
        super().__init__(message, recoverable=False)


class MailboxNotConfiguredError(IngestionError):
    """No connected mailbox or access token exists for the project."""

    def __init__(self, project_id: str):
        super().__init__(f"Project {project_id} has no connected Gmail mailbox", recoverable=False)
        self.project_id = project_id


@dataclass(slots=True, frozen=True)
class ThreadValidationWarning:
    """Non-fatal observation attached to a reconstructed thread."""

    code: str
    message: str
