"""
Explicit per-run dependencies for ingestion.

An IngestionContext is built by the caller (route, job, CLI) for one project
and passed down; nothing here is cached process-wide.
"""

from dataclasses import dataclass, field

from nailit.config import Settings, settings
from nailit.features.email_ingestion.domain.errors import MailboxNotConfiguredError
from nailit.features.email_ingestion.domain.models import MailboxConfig, TeamMember
from nailit.features.email_ingestion.filters.dedup import DedupGuard
from nailit.features.email_ingestion.filters.membership import (
    TeamMembershipFilter,
    validate_team_member_email,
)
from nailit.features.email_ingestion.provider import GmailProvider, MailProvider
from nailit.features.email_ingestion.repository.message_repository import MessageRepository
from nailit.features.email_ingestion.repository.team_repository import TeamRepository
from nailit.features.email_ingestion.services.cursor_store import HistoryCursorStore
from nailit.features.email_ingestion.services.persistence_service import (
    BlobStore,
    MessageStore,
    PersistenceService,
)
from nailit.infrastructure.observability.logging import get_logger
from nailit.services.gmail.google_client import GoogleGmailService

logger = get_logger(__name__)


@dataclass
class IngestionContext:
    project_id: str
    user_id: str
    provider: MailProvider
    repository: MessageStore
    blob_store: BlobStore
    team_members: list[TeamMember]
    config: Settings = field(default_factory=lambda: settings)
    cursor_store: HistoryCursorStore | None = None
    mailbox: str | None = None
    owner_email: str | None = None

    def membership_filter(self) -> TeamMembershipFilter:
        return TeamMembershipFilter(
            (member.email for member in self.team_members),
            match_recipients=self.config.MEMBERSHIP_MATCH_RECIPIENTS,
        )

    def dedup_guard(self) -> DedupGuard:
        return DedupGuard(self.repository, max_retries=self.config.INGESTION_MAX_RETRIES)

    def persistence(self) -> PersistenceService:
        return PersistenceService(
            self.repository,
            self.blob_store,
            attachment_source=self.provider,
            inline_body_max_bytes=self.config.INLINE_BODY_MAX_BYTES,
        )


def _valid_members(project_id: str, members: list[TeamMember]) -> list[TeamMember]:
    valid = []
    for member in members:
        ok, reason = validate_team_member_email(member.email)
        if ok:
            valid.append(member)
        else:
            logger.warning(
                "Team member dropped from whitelist",
                project_id=project_id,
                member_name=member.name,
                reason=reason,
            )
    return valid


async def build_ingestion_context(
    mailbox: MailboxConfig,
    gmail_client: GoogleGmailService,
    blob_store: BlobStore,
    *,
    cursor_store: HistoryCursorStore | None = None,
    config: Settings | None = None,
) -> IngestionContext:
    """Assemble a context for a connected mailbox, loading its team whitelist."""
    if not mailbox.access_token:
        raise MailboxNotConfiguredError(mailbox.project_id)

    team_members = _valid_members(
        mailbox.project_id, await TeamRepository.get_team_members(mailbox.project_id)
    )
    return IngestionContext(
        project_id=mailbox.project_id,
        user_id=mailbox.user_id,
        provider=GmailProvider(gmail_client, mailbox.access_token, mailbox=mailbox.gmail_address),
        repository=MessageRepository(),
        blob_store=blob_store,
        team_members=team_members,
        config=config or settings,
        cursor_store=cursor_store,
        mailbox=mailbox.gmail_address,
        owner_email=mailbox.owner_email,
    )


async def load_project_context(
    project_id: str,
    gmail_client: GoogleGmailService,
    blob_store: BlobStore,
    *,
    cursor_store: HistoryCursorStore | None = None,
    config: Settings | None = None,
) -> IngestionContext:
    mailbox = await TeamRepository.get_mailbox(project_id)
    if mailbox is None:
        raise MailboxNotConfiguredError(project_id)
    return await build_ingestion_context(
        mailbox, gmail_client, blob_store, cursor_store=cursor_store, config=config
    )


@dataclass
class IngestionResources:
    """Long-lived clients an entrypoint owns and hands to each context it builds."""

    gmail_client: GoogleGmailService
    blob_store: BlobStore
    cursor_store: HistoryCursorStore | None = None
    config: Settings = field(default_factory=lambda: settings)

    async def context_for_project(self, project_id: str) -> IngestionContext:
        return await load_project_context(
            project_id,
            self.gmail_client,
            self.blob_store,
            cursor_store=self.cursor_store,
            config=self.config,
        )

    async def contexts_for_mailbox(self, email_address: str) -> list[IngestionContext]:
        mailboxes = await TeamRepository.find_mailboxes_by_address(email_address)
        return [
            await build_ingestion_context(
                mailbox,
                self.gmail_client,
                self.blob_store,
                cursor_store=self.cursor_store,
                config=self.config,
            )
            for mailbox in mailboxes
            if mailbox.access_token
        ]

    async def monitored_contexts(self) -> list[IngestionContext]:
        mailboxes = await TeamRepository.list_monitored_mailboxes()
        return [
            await build_ingestion_context(
                mailbox,
                self.gmail_client,
                self.blob_store,
                cursor_store=self.cursor_store,
                config=self.config,
            )
            for mailbox in mailboxes
            if mailbox.access_token
        ]

    async def close(self) -> None:
        await self.gmail_client.close()
