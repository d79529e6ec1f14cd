import asyncio
from datetime import UTC, datetime

import pytest

from nailit.config import Settings
from nailit.features.email_ingestion.domain.errors import AuthError, DuplicateSkip
from nailit.features.email_ingestion.domain.models import (
    GmailProviderMetadata,
    IngestionStatus,
    Message,
    MessageState,
    RawMessage,
    TeamMember,
    WatchSubscription,
)
from nailit.features.email_ingestion.services.context import IngestionContext
from nailit.features.email_ingestion.services.cursor_store import HistoryCursorStore

CONTRACTOR = "bob@buildco.com"
HOMEOWNER = "alice@home.com"
STRANGER = "spam@elsewhere.com"


def make_raw(
    message_id: str,
    sender: str = CONTRACTOR,
    subject: str = "Kitchen Quote",
    thread_id: str | None = "thread-1",
    sent_at: datetime | None = None,
    body: str = "Here is the cost estimate for the kitchen.",
    recipients: list[str] | None = None,
) -> RawMessage:
    return RawMessage(
        provider_message_id=message_id,
        thread_id=thread_id,
        sender=sender,
        sender_name=None,
        recipients=recipients if recipients is not None else [HOMEOWNER],
        cc_recipients=[],
        subject=subject,
        sent_at=sent_at or datetime(2024, 3, 1, 9, 0, tzinfo=UTC),
        received_at=sent_at or datetime(2024, 3, 1, 9, 0, tzinfo=UTC),
        body_text=body,
        headers={"from": sender, "subject": subject},
    )


class FakeRedis:
    """Dict-backed FastRedisClient. Every call yields to the loop like a network round trip."""

    def __init__(self):
        self.store: dict[str, str] = {}

    async def set(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        await asyncio.sleep(0)
        self.store[key] = value
        return True

    async def get(self, key: str) -> str | None:
        await asyncio.sleep(0)
        return self.store.get(key)

    async def set_max(self, key: str, value: int | str) -> str:
        await asyncio.sleep(0)
        current = self.store.get(key)
        if current is not None and current.isdigit() and int(current) >= int(value):
            return current
        self.store[key] = str(value)
        return str(value)

    async def delete(self, key: str) -> bool:
        return self.store.pop(key, None) is not None


class FakeProvider:
    """In-memory MailProvider with scripted failures."""

    def __init__(self, messages: list[RawMessage] | None = None):
        self.messages: dict[str, RawMessage] = {m.provider_message_id: m for m in messages or []}
        self.fetch_errors: dict[str, Exception] = {}
        self.metadata_errors: dict[str, Exception] = {}
        self.search_pages: list[list[str]] = []
        self.search_calls: list[tuple[str, int, str | None]] = []
        self.history: list[str] = []
        self.history_calls: list[str] = []
        self.fetch_calls: list[str] = []
        self.watch_calls: list[str] = []
        self.stopped = False

    def add(self, message: RawMessage) -> None:
        self.messages[message.provider_message_id] = message

    async def search_page(self, query, page_size, page_token=None):
        self.search_calls.append((query, page_size, page_token))
        index = int(page_token) if page_token else 0
        page = self.search_pages[index] if index < len(self.search_pages) else []
        next_token = str(index + 1) if index + 1 < len(self.search_pages) else None
        return page[:page_size], next_token

    async def fetch_metadata(self, provider_message_id):
        if provider_message_id in self.metadata_errors:
            raise self.metadata_errors[provider_message_id]
        return self.messages[provider_message_id]

    async def fetch(self, provider_message_id):
        self.fetch_calls.append(provider_message_id)
        if provider_message_id in self.fetch_errors:
            raise self.fetch_errors[provider_message_id]
        return self.messages[provider_message_id]

    async def fetch_attachment(self, provider_message_id, attachment_id):
        return b"attachment-bytes"

    async def list_history(self, start_history_id):
        self.history_calls.append(start_history_id)
        return list(self.history)

    async def watch(self, topic_name, label_ids=None):
        self.watch_calls.append(topic_name)
        return WatchSubscription(
            history_id="5000", expiration=datetime(2024, 3, 8, tzinfo=UTC)
        )

    async def stop(self):
        self.stopped = True


class FakeMessageRepository:
    """Dict-backed message store with a unique index on provider_message_id."""

    def __init__(self):
        self.rows: dict[str, Message] = {}
        self.create_calls = 0

    async def exists(self, provider_message_id):
        return provider_message_id in self.rows

    async def get_state(self, provider_message_id):
        row = self.rows.get(provider_message_id)
        if row is None:
            return None
        return MessageState(provider_message_id, row.ingestion_status, row.retry_count)

    async def create(self, message):
        self.create_calls += 1
        if message.provider_message_id in self.rows:
            raise DuplicateSkip(message.provider_message_id)
        self.rows[message.provider_message_id] = message
        return message

    async def complete_pending(self, message):
        existing = self.rows.get(message.provider_message_id)
        if existing is None or existing.ingestion_status is not IngestionStatus.PENDING:
            raise DuplicateSkip(message.provider_message_id)
        message.retry_count = existing.retry_count
        self.rows[message.provider_message_id] = message
        return message

    async def record_failure(
        self,
        provider_message_id,
        *,
        project_id,
        user_id,
        error_details,
        permanent,
        max_retries,
        provider_metadata=None,
    ):
        existing = self.rows.get(provider_message_id)
        if existing is None:
            existing = Message(
                provider_message_id=provider_message_id,
                thread_id=None,
                sender="",
                recipients=[],
                subject="",
                sent_at=None,
                project_id=project_id,
                user_id=user_id,
                provider_metadata=provider_metadata or GmailProviderMetadata(),
            )
            self.rows[provider_message_id] = existing
        elif existing.ingestion_status is not IngestionStatus.PENDING:
            return None

        existing.retry_count = min(existing.retry_count + 1, max_retries)
        existing.error_details = error_details
        if permanent or existing.retry_count >= max_retries:
            existing.ingestion_status = IngestionStatus.FAILED
        return MessageState(provider_message_id, existing.ingestion_status, existing.retry_count)


class FakeBlobStore:
    def __init__(self):
        self.blobs: dict[str, tuple[bytes, str]] = {}
        self.writes = 0

    async def write_blob(self, key, data, content_type):
        self.writes += 1
        self.blobs[key] = (data, content_type)
        return key

    async def write_json(self, key, document):
        import json

        return await self.write_blob(key, json.dumps(document, default=str).encode(), "application/json")


@pytest.fixture
def test_settings():
    return Settings(
        INGESTION_BATCH_SIZE=2,
        INGESTION_BATCH_DELAY_SECONDS=0,
        INGESTION_MAX_RETRIES=3,
        REALTIME_LATENCY_CEILING_SECONDS=30,
    )


@pytest.fixture
def team_members():
    return [
        TeamMember(name="Bob Builder", email="Bob@BuildCo.com", role="contractor"),
        TeamMember(name="Alice Owner", email=HOMEOWNER, role="homeowner"),
    ]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cursor_store(fake_redis):
    return HistoryCursorStore(fake_redis)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def fake_repository():
    return FakeMessageRepository()


@pytest.fixture
def fake_blob_store():
    return FakeBlobStore()


@pytest.fixture
def make_context(fake_provider, fake_repository, fake_blob_store, cursor_store, team_members, test_settings):
    def _make(**overrides) -> IngestionContext:
        values = {
            "project_id": "project-1",
            "user_id": "user-1",
            "provider": fake_provider,
            "repository": fake_repository,
            "blob_store": fake_blob_store,
            "team_members": team_members,
            "config": test_settings,
            "cursor_store": cursor_store,
            "mailbox": HOMEOWNER,
            "owner_email": HOMEOWNER,
        }
        values.update(overrides)
        return IngestionContext(**values)

    return _make


@pytest.fixture
def auth_error():
    return AuthError("Gmail authorization expired. Please reconnect.", status_code=401)


@pytest.fixture
def raw_factory():
    return make_raw
