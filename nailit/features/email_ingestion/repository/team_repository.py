"""
Read access to projects, team members and mailbox settings.

These tables belong to the web application; ingestion reads whitelists and
the stored Gmail access token and writes back watch expirations only.
"""

from datetime import datetime

from nailit.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from nailit.features.email_ingestion.domain.models import MailboxConfig, TeamMember
from nailit.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Completed/archived projects stop ingesting mail
ACTIVE_PROJECT_STATUSES = ("ACTIVE", "ON_HOLD")

MAILBOX_SELECT = """
    SELECT p.id AS project_id, p.user_id, p.owner_email,
           s.gmail_address, s.gmail_access_token, s.monitoring_enabled
    FROM projects p
    JOIN email_settings s ON s.project_id = p.id
"""


class TeamRepository:
    """Raw-SQL access to project membership and mailbox settings."""

    @classmethod
    def _row_to_mailbox(cls, row: dict | None) -> MailboxConfig | None:
        if not row:
            return None
        return MailboxConfig(
            project_id=str(row["project_id"]),
            user_id=str(row["user_id"]),
            gmail_address=row.get("gmail_address"),
            access_token=row.get("gmail_access_token"),
            monitoring_enabled=bool(row.get("monitoring_enabled")),
            owner_email=row.get("owner_email"),
        )

    @classmethod
    @with_db_retry()
    async def get_team_members(cls, project_id: str) -> list[TeamMember]:
        query = """
            SELECT name, email, role
            FROM team_members
            WHERE project_id = %s
            ORDER BY name
        """
        rows = await fetch_all(query, (project_id,))
        return [TeamMember(name=row["name"], email=row["email"], role=row["role"]) for row in rows]

    @classmethod
    @with_db_retry()
    async def get_mailbox(cls, project_id: str) -> MailboxConfig | None:
        query = MAILBOX_SELECT + " WHERE p.id = %s AND s.gmail_connected"
        return cls._row_to_mailbox(await fetch_one(query, (project_id,)))

    @classmethod
    @with_db_retry()
    async def find_mailboxes_by_address(cls, email_address: str) -> list[MailboxConfig]:
        """Monitored mailboxes on active projects for a push notification's address."""
        query = (
            MAILBOX_SELECT
            + """
            WHERE lower(s.gmail_address) = lower(%s)
              AND s.gmail_connected
              AND s.monitoring_enabled
              AND p.status = ANY(%s)
            ORDER BY p.id
            """
        )
        rows = await fetch_all(query, (email_address, list(ACTIVE_PROJECT_STATUSES)))
        return [cls._row_to_mailbox(row) for row in rows]

    @classmethod
    @with_db_retry()
    async def list_monitored_mailboxes(cls) -> list[MailboxConfig]:
        query = (
            MAILBOX_SELECT
            + """
            WHERE s.gmail_connected
              AND s.monitoring_enabled
              AND p.status = ANY(%s)
            ORDER BY p.id
            """
        )
        rows = await fetch_all(query, (list(ACTIVE_PROJECT_STATUSES),))
        return [cls._row_to_mailbox(row) for row in rows]

    @classmethod
    async def update_watch_state(
        cls, project_id: str, *, monitoring_enabled: bool, watch_expiration: datetime | None
    ) -> None:
        query = """
            UPDATE email_settings
            SET monitoring_enabled = %s,
                watch_expiration = %s
            WHERE project_id = %s
        """
        await execute_query(query, (monitoring_enabled, watch_expiration, project_id))
        logger.info(
            "Mailbox watch state updated",
            project_id=project_id,
            monitoring_enabled=monitoring_enabled,
            watch_expiration=watch_expiration.isoformat() if watch_expiration else None,
        )
