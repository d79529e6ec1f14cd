"""
Gmail API client and provider adapter against a mocked HTTP transport.
"""

import base64
import json
import re

import httpx
import pytest
import pytest_asyncio

from nailit.features.email_ingestion.domain.errors import (
    AuthError,
    MalformedContentError,
    TransientProviderError,
)
from nailit.features.email_ingestion.provider import GmailProvider, HistoryCursorExpiredError
from nailit.services.gmail import google_client
from nailit.services.gmail.google_client import GoogleGmailError, GoogleGmailService

BASE = "https://gmail.googleapis.com/gmail/v1/users/me"


def b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def message_json(message_id="msg-1", sender="Bob Builder <bob@buildco.com>"):
    return {
        "id": message_id,
        "threadId": "thread-1",
        "labelIds": ["INBOX"],
        "historyId": "9001",
        "internalDate": "1709283600000",
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": "alice@home.com"},
                {"name": "Subject", "value": "Kitchen Quote"},
                {"name": "Date", "value": "Fri, 01 Mar 2024 09:00:00 +0000"},
            ],
            "body": {"data": b64("Here is the cost estimate.")},
        },
    }


@pytest.fixture
def sleeps(monkeypatch):
    calls = []

    async def fake_sleep(seconds):
        calls.append(seconds)

    monkeypatch.setattr(google_client.asyncio, "sleep", fake_sleep)
    return calls


@pytest_asyncio.fixture
async def gmail():
    service = GoogleGmailService(base_url="https://gmail.googleapis.com/gmail/v1")
    yield service
    await service.close()


@pytest.mark.asyncio
async def test_list_message_ids_sends_query_and_caps_page_size(httpx_mock, gmail):
    httpx_mock.add_response(
        method="GET",
        url=re.compile(rf"{re.escape(BASE)}/messages\?"),
        json={"messages": [{"id": "m1"}, {"id": "m2"}], "nextPageToken": "page-2"},
    )

    ids, next_token = await gmail.list_message_ids("token", "after:2024/01/01", max_results=900)

    assert ids == ["m1", "m2"]
    assert next_token == "page-2"
    request = httpx_mock.get_requests()[0]
    assert request.url.params["q"] == "after:2024/01/01"
    assert request.url.params["maxResults"] == "500"
    assert request.headers["Authorization"] == "Bearer token"


@pytest.mark.asyncio
async def test_metadata_fetch_requests_only_headers(httpx_mock, gmail):
    httpx_mock.add_response(
        method="GET",
        url=re.compile(rf"{re.escape(BASE)}/messages/msg-1\?"),
        json=message_json(),
    )

    provider = GmailProvider(gmail, "token")
    raw = await provider.fetch_metadata("msg-1")

    assert raw.sender == "bob@buildco.com"
    params = httpx_mock.get_requests()[0].url.params
    assert params["format"] == "metadata"
    assert params.get_list("metadataHeaders") == ["From", "To", "Cc", "Subject", "Date"]


@pytest.mark.asyncio
async def test_full_fetch_returns_raw_message(httpx_mock, gmail):
    httpx_mock.add_response(
        method="GET",
        url=re.compile(rf"{re.escape(BASE)}/messages/msg-1\?format=full"),
        json=message_json(),
    )

    raw = await GmailProvider(gmail, "token").fetch("msg-1")

    assert raw.provider_message_id == "msg-1"
    assert raw.subject == "Kitchen Quote"
    assert raw.body_text == "Here is the cost estimate."
    assert raw.recipients == ["alice@home.com"]


@pytest.mark.asyncio
async def test_unauthorized_maps_to_auth_error(httpx_mock, gmail):
    httpx_mock.add_response(
        method="GET",
        url=re.compile(rf"{re.escape(BASE)}/messages\?"),
        status_code=401,
        json={"error": {"code": 401, "message": "Invalid Credentials"}},
    )

    with pytest.raises(AuthError) as exc_info:
        await GmailProvider(gmail, "expired").search_page("after:2024/01/01", 100)

    assert exc_info.value.status_code == 401
    assert str(exc_info.value) == "Gmail authorization expired. Please reconnect."


@pytest.mark.asyncio
async def test_server_error_is_retried(httpx_mock, gmail, sleeps):
    url = re.compile(rf"{re.escape(BASE)}/messages\?")
    httpx_mock.add_response(method="GET", url=url, status_code=503)
    httpx_mock.add_response(method="GET", url=url, json={"messages": [{"id": "m1"}]})

    ids, next_token = await gmail.list_message_ids("token", "after:2024/01/01")

    assert ids == ["m1"]
    assert next_token is None
    assert sleeps == [2]


@pytest.mark.asyncio
async def test_persistent_rate_limit_becomes_transient_error(httpx_mock, gmail, sleeps):
    url = re.compile(rf"{re.escape(BASE)}/messages\?")
    for _ in range(3):
        httpx_mock.add_response(
            method="GET",
            url=url,
            status_code=429,
            json={"error": {"code": 429, "message": "Rate Limit Exceeded"}},
        )

    with pytest.raises(TransientProviderError) as exc_info:
        await GmailProvider(gmail, "token").search_page("after:2024/01/01", 100)

    assert exc_info.value.status_code == 429
    assert sleeps == [2, 4]


@pytest.mark.asyncio
async def test_network_failure_becomes_transient_error(httpx_mock, gmail, sleeps):
    for _ in range(3):
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))

    with pytest.raises(GoogleGmailError) as exc_info:
        await gmail.list_message_ids("token", "after:2024/01/01")
    assert exc_info.value.status_code is None

    for _ in range(3):
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))
    with pytest.raises(TransientProviderError):
        await GmailProvider(gmail, "token").fetch("msg-1")


@pytest.mark.asyncio
async def test_missing_message_is_malformed_content(httpx_mock, gmail):
    httpx_mock.add_response(
        method="GET",
        url=re.compile(rf"{re.escape(BASE)}/messages/gone\?"),
        status_code=404,
        json={"error": {"code": 404, "message": "Requested entity was not found."}},
    )

    with pytest.raises(MalformedContentError):
        await GmailProvider(gmail, "token").fetch("gone")


@pytest.mark.asyncio
async def test_history_walk_follows_pages_and_dedups(httpx_mock, gmail):
    url = re.compile(rf"{re.escape(BASE)}/history\?")
    httpx_mock.add_response(
        method="GET",
        url=url,
        json={
            "history": [{"messagesAdded": [{"message": {"id": "m1"}}, {"message": {"id": "m2"}}]}],
            "nextPageToken": "p2",
            "historyId": "200",
        },
    )
    httpx_mock.add_response(
        method="GET",
        url=url,
        json={"history": [{"messagesAdded": [{"message": {"id": "m2"}}, {"message": {"id": "m3"}}]}], "historyId": "210"},
    )

    ids = await GmailProvider(gmail, "token").list_history("100")

    assert ids == ["m1", "m2", "m3"]
    first, second = httpx_mock.get_requests()
    assert first.url.params["startHistoryId"] == "100"
    assert first.url.params["historyTypes"] == "messageAdded"
    assert "pageToken" not in first.url.params
    assert second.url.params["pageToken"] == "p2"


@pytest.mark.asyncio
async def test_expired_history_cursor(httpx_mock, gmail):
    httpx_mock.add_response(
        method="GET",
        url=re.compile(rf"{re.escape(BASE)}/history\?"),
        status_code=404,
        json={"error": {"code": 404, "message": "Requested entity was not found."}},
    )

    with pytest.raises(HistoryCursorExpiredError):
        await GmailProvider(gmail, "token").list_history("1")


@pytest.mark.asyncio
async def test_watch_subscribes_inbox_by_default(httpx_mock, gmail):
    httpx_mock.add_response(
        method="POST",
        url=f"{BASE}/watch",
        json={"historyId": "5000", "expiration": "1709888400000"},
    )

    subscription = await GmailProvider(gmail, "token").watch("projects/p/topics/gmail")

    assert subscription.history_id == "5000"
    assert subscription.expiration.isoformat() == "2024-03-08T09:00:00+00:00"
    body = json.loads(httpx_mock.get_requests()[0].content)
    assert body == {
        "topicName": "projects/p/topics/gmail",
        "labelFilterAction": "include",
        "labelIds": ["INBOX"],
    }


@pytest.mark.asyncio
async def test_stop_watch(httpx_mock, gmail):
    httpx_mock.add_response(method="POST", url=f"{BASE}/stop", status_code=204)

    await GmailProvider(gmail, "token").stop()

    assert httpx_mock.get_requests()[0].method == "POST"


@pytest.mark.asyncio
async def test_attachment_is_decoded(httpx_mock, gmail):
    httpx_mock.add_response(
        method="GET",
        url=f"{BASE}/messages/msg-1/attachments/att-1",
        json={"data": b64("%PDF-1.4"), "size": 8},
    )

    data = await GmailProvider(gmail, "token").fetch_attachment("msg-1", "att-1")

    assert data == b"%PDF-1.4"


@pytest.mark.asyncio
async def test_undecodable_attachment_is_malformed_content(httpx_mock, gmail):
    httpx_mock.add_response(
        method="GET",
        url=f"{BASE}/messages/msg-1/attachments/att-1",
        json={"data": "A", "size": 1},
    )

    with pytest.raises(MalformedContentError) as exc_info:
        await GmailProvider(gmail, "token").fetch_attachment("msg-1", "att-1")

    assert exc_info.value.provider_message_id == "msg-1"
    assert exc_info.value.recoverable is False
