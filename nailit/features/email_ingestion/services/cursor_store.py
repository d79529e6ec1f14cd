"""
Per-mailbox Gmail history cursor kept in Redis.
"""

from nailit.infrastructure.observability.logging import get_logger
from nailit.services.redis_client import FastRedisClient

logger = get_logger(__name__)

CURSOR_KEY_PREFIX = "nailit:gmail:history_cursor:"


class HistoryCursorStore:
    """Last processed historyId per mailbox address. Cursors only move forward."""

    def __init__(self, redis_client: FastRedisClient):
        self.redis = redis_client

    @staticmethod
    def _key(mailbox: str) -> str:
        return f"{CURSOR_KEY_PREFIX}{mailbox.strip().lower()}"

    async def get(self, mailbox: str) -> str | None:
        return await self.redis.get(self._key(mailbox))

    async def advance(self, mailbox: str, history_id: str) -> str:
        """Store history_id unless a newer cursor is already recorded; returns the stored value."""
        stored = await self.redis.set_max(self._key(mailbox), str(history_id))
        if stored == str(history_id):
            logger.debug("History cursor advanced", mailbox=mailbox, history_id=history_id)
        return stored

    async def reset(self, mailbox: str, history_id: str) -> None:
        await self.redis.set(self._key(mailbox), str(history_id))
        logger.warning("History cursor reset", mailbox=mailbox, history_id=history_id)
