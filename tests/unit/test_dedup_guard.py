import pytest

from nailit.features.email_ingestion.domain.models import (
    DedupDecision,
    IngestionStatus,
    MessageState,
)
from nailit.features.email_ingestion.filters.dedup import DedupGuard


class StateReader:
    def __init__(self, states):
        self.states = states
        self.calls = []

    async def get_state(self, provider_message_id):
        self.calls.append(provider_message_id)
        return self.states.get(provider_message_id)


@pytest.mark.asyncio
async def test_unknown_message_is_new():
    guard = DedupGuard(StateReader({}), max_retries=3)

    assert await guard.check("m-1") is DedupDecision.NEW


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [IngestionStatus.COMPLETED, IngestionStatus.FAILED])
async def test_completed_or_failed_message_is_duplicate(status):
    guard = DedupGuard(StateReader({"m-1": MessageState("m-1", status, 0)}), max_retries=3)

    assert await guard.check("m-1") is DedupDecision.DUPLICATE


@pytest.mark.asyncio
async def test_pending_under_retry_limit_is_retried():
    reader = StateReader({"m-1": MessageState("m-1", IngestionStatus.PENDING, 2)})
    guard = DedupGuard(reader, max_retries=3)

    assert await guard.check("m-1") is DedupDecision.RETRY
    assert reader.calls == ["m-1"]


@pytest.mark.asyncio
async def test_pending_at_retry_limit_is_duplicate():
    reader = StateReader({"m-1": MessageState("m-1", IngestionStatus.PENDING, 3)})
    guard = DedupGuard(reader, max_retries=3)

    assert await guard.check("m-1") is DedupDecision.DUPLICATE
