from datetime import UTC, datetime

import pytest
from conftest import HOMEOWNER

from nailit.features.email_ingestion.domain.errors import AuthError
from nailit.features.email_ingestion.services.watch_service import WatchService


class WatchStateRecorder:
    def __init__(self):
        self.updates = []

    async def update_watch_state(self, project_id, *, monitoring_enabled, watch_expiration):
        self.updates.append((project_id, monitoring_enabled, watch_expiration))


@pytest.mark.asyncio
async def test_start_watch_enables_monitoring_and_seeds_cursor(make_context, fake_provider, cursor_store):
    recorder = WatchStateRecorder()

    subscription = await WatchService(recorder).start_watch(make_context(), "projects/p/topics/gmail")

    assert fake_provider.watch_calls == ["projects/p/topics/gmail"]
    assert subscription.project_id == "project-1"
    assert subscription.history_id == "5000"
    assert recorder.updates == [("project-1", True, datetime(2024, 3, 8, tzinfo=UTC))]
    assert await cursor_store.get(HOMEOWNER) == "5000"


@pytest.mark.asyncio
async def test_start_watch_keeps_newer_cursor(make_context, cursor_store):
    await cursor_store.advance(HOMEOWNER, "7000")

    await WatchService(WatchStateRecorder()).start_watch(make_context(), "projects/p/topics/gmail")

    assert await cursor_store.get(HOMEOWNER) == "7000"


@pytest.mark.asyncio
async def test_stop_watch_disables_monitoring(make_context, fake_provider):
    recorder = WatchStateRecorder()

    await WatchService(recorder).stop_watch(make_context())

    assert fake_provider.stopped is True
    assert recorder.updates == [("project-1", False, None)]


@pytest.mark.asyncio
async def test_renew_all_continues_past_failures(make_context, fake_provider, auth_error):
    class RejectingProvider:
        async def watch(self, topic_name, label_ids=None):
            raise auth_error

    contexts = [
        make_context(project_id="project-1"),
        make_context(project_id="project-2", provider=RejectingProvider()),
        make_context(project_id="project-3"),
    ]

    result = await WatchService(WatchStateRecorder()).renew_all(contexts, "projects/p/topics/gmail")

    assert result["renewed"] == ["project-1", "project-3"]
    assert result["failed"] == [
        {"project_id": "project-2", "error": "Gmail authorization expired. Please reconnect."}
    ]
    assert isinstance(auth_error, AuthError)
