"""
Gmail REST client used by the ingestion pipeline.

Covers search, message fetch, history walking and push-notification
watches. Callers pass the mailbox access token on every call.
"""

import asyncio
from typing import Any

import httpx

from nailit.config import settings
from nailit.infrastructure.observability.logging import get_logger
from nailit.models.domain.gmail_domain import GmailMessage, GmailWatch, extract_added_message_ids

logger = get_logger(__name__)

GMAIL_USER_ID = "me"  # Authenticated user's mailbox

REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# Gmail caps messages.list page size at 500
MAX_PAGE_SIZE = 500

ERROR_MESSAGES = {
    "400": "Invalid Gmail request format.",
    "401": "Gmail authorization expired. Please reconnect.",
    "403": "Gmail access denied. Please check permissions.",
    "404": "Gmail message or history not found.",
    "429": "Too many Gmail requests. Please try again later.",
    "500": "Gmail service temporarily unavailable.",
    "503": "Gmail service temporarily unavailable.",
}


class GoogleGmailError(Exception):
    """A Gmail API call failed; status_code is None for transport errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}


class GoogleGmailService:
    """
    Service for Google Gmail API operations.

    Pure API client: every call takes the caller's OAuth access token, returns
    domain models from gmail_domain.py and raises GoogleGmailError on failure.
    """

    def __init__(self, base_url: str | None = None, client: httpx.AsyncClient | None = None):
        self.base_url = (base_url or settings.GMAIL_API_BASE_URL).rstrip("/")
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        """Create async HTTP client for Gmail API."""
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _user_url(self, path: str) -> str:
        return f"{self.base_url}/users/{GMAIL_USER_ID}/{path}"

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Gmail API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise GoogleGmailError(f"Gmail API request failed: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Gmail API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Gmail API retry loop exhausted")

    def _get_auth_headers(self, access_token: str) -> dict:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Return the decoded JSON body of a successful response.

        Raises:
            GoogleGmailError: On a non-2xx status or an unparseable body
        """
        logger.debug(
            "Gmail API response",
            operation=operation,
            status_code=response.status_code,
            response_size=len(response.content),
        )
        try:
            body = response.json() if response.content else {}
        except ValueError as e:
            logger.error(
                "Gmail API returned non-JSON body",
                operation=operation,
                status_code=response.status_code,
                response_text=response.text[:200],
            )
            if response.is_success:
                raise GoogleGmailError(
                    f"Invalid response format: {e}", status_code=response.status_code
                ) from e
            raise GoogleGmailError(
                f"Gmail API error (HTTP {response.status_code})", status_code=response.status_code
            ) from None

        if response.is_success:
            return body

        details = body.get("error", {}) if isinstance(body, dict) else {}
        error_code = str(details.get("code", response.status_code))
        detail = details.get("message", "Unknown Gmail API error")
        logger.error(
            "Gmail API request failed",
            operation=operation,
            status_code=response.status_code,
            error_code=error_code,
            detail=detail,
        )
        raise GoogleGmailError(
            ERROR_MESSAGES.get(error_code, f"Gmail error: {detail}"),
            error_code=error_code,
            status_code=response.status_code,
            response_data=body,
        )

    async def list_message_ids(
        self,
        access_token: str,
        query: str,
        max_results: int = 100,
        page_token: str | None = None,
    ) -> tuple[list[str], str | None]:
        """
        Run a single messages.list page for a search query.

        Returns:
            (message_ids, next_page_token)
        """
        params: dict[str, Any] = {"q": query, "maxResults": min(max_results, MAX_PAGE_SIZE)}
        if page_token:
            params["pageToken"] = page_token

        response = await self._request_with_retry(
            "GET",
            self._user_url("messages"),
            headers=self._get_auth_headers(access_token),
            params=params,
        )
        data = self._handle_api_response(response, "list_messages")

        message_ids = [m["id"] for m in data.get("messages", []) if m.get("id")]
        logger.debug(
            "Gmail messages page listed",
            message_count=len(message_ids),
            has_next_page=bool(data.get("nextPageToken")),
        )
        return message_ids, data.get("nextPageToken")

    async def get_message(
        self,
        access_token: str,
        message_id: str,
        format: str = "full",
        metadata_headers: list[str] | None = None,
    ) -> GmailMessage:
        """
        Fetch a single message.

        Args:
            access_token: Valid OAuth access token
            message_id: Gmail message ID
            format: "full" or "metadata"
            metadata_headers: Headers to include when format is "metadata"

        Raises:
            GoogleGmailError: If the API call fails
            GmailParseError: If the payload cannot be parsed
        """
        params: list[tuple[str, str]] = [("format", format)]
        if format == "metadata" and metadata_headers:
            params.extend(("metadataHeaders", header) for header in metadata_headers)

        response = await self._request_with_retry(
            "GET",
            self._user_url(f"messages/{message_id}"),
            headers=self._get_auth_headers(access_token),
            params=params,
        )
        data = self._handle_api_response(response, "get_message")
        return GmailMessage(data)

    async def get_attachment(self, access_token: str, message_id: str, attachment_id: str) -> str:
        """Fetch an attachment body; returns Gmail's base64url data string."""
        response = await self._request_with_retry(
            "GET",
            self._user_url(f"messages/{message_id}/attachments/{attachment_id}"),
            headers=self._get_auth_headers(access_token),
        )
        data = self._handle_api_response(response, "get_attachment")
        return data.get("data", "")

    async def list_history(
        self,
        access_token: str,
        start_history_id: str,
        page_token: str | None = None,
    ) -> tuple[list[str], str | None, str | None]:
        """
        Fetch one users.history.list page of messageAdded records.

        Returns:
            (added_message_ids, next_page_token, latest_history_id)
        """
        params: dict[str, Any] = {
            "startHistoryId": start_history_id,
            "historyTypes": "messageAdded",
        }
        if page_token:
            params["pageToken"] = page_token

        response = await self._request_with_retry(
            "GET",
            self._user_url("history"),
            headers=self._get_auth_headers(access_token),
            params=params,
        )
        data = self._handle_api_response(response, "list_history")
        return extract_added_message_ids(data), data.get("nextPageToken"), data.get("historyId")

    async def watch(
        self, access_token: str, topic_name: str, label_ids: list[str] | None = None
    ) -> GmailWatch:
        """Start (or renew) push notifications for the mailbox."""
        body: dict[str, Any] = {"topicName": topic_name, "labelFilterAction": "include"}
        body["labelIds"] = label_ids or ["INBOX"]

        response = await self._request_with_retry(
            "POST",
            self._user_url("watch"),
            headers=self._get_auth_headers(access_token),
            json=body,
        )
        data = self._handle_api_response(response, "watch")
        watch = GmailWatch(data)
        logger.info(
            "Gmail watch started",
            history_id=watch.history_id,
            expiration=watch.expiration_ms,
        )
        return watch

    async def stop(self, access_token: str) -> None:
        """Stop push notifications for the mailbox."""
        response = await self._request_with_retry(
            "POST",
            self._user_url("stop"),
            headers=self._get_auth_headers(access_token),
        )
        self._handle_api_response(response, "stop")
        logger.info("Gmail watch stopped")
