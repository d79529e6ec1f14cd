"""
S3 blob storage for raw email content and attachments.
boto3 is synchronous; calls run in a worker thread.
"""

import asyncio
import json
import re
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from nailit.config import settings
from nailit.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class BlobStorageError(Exception):
    """Raised when a blob cannot be written."""

    def __init__(self, message: str, key: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.key = key
        self.recoverable = recoverable


def content_key(user_id: str | None, project_id: str | None, provider_message_id: str) -> str:
    """Deterministic key for a message's content document."""
    return f"emails/{user_id or 'unknown'}/{project_id or 'unassigned'}/{provider_message_id}/content.json"


def attachment_key(
    user_id: str | None,
    project_id: str | None,
    provider_message_id: str,
    index: int,
    filename: str,
) -> str:
    """Deterministic key for the index-th attachment of a message."""
    safe_name = _UNSAFE_KEY_CHARS.sub("_", filename).strip("_") or "attachment"
    return (
        f"emails/{user_id or 'unknown'}/{project_id or 'unassigned'}/{provider_message_id}"
        f"/attachments/{index}_{safe_name}"
    )


class S3BlobStore:
    """Write-by-key blob store; overwriting a key with the same bytes is a no-op in effect."""

    def __init__(self, bucket: str | None = None, client: Any | None = None):
        self.bucket = bucket or settings.S3_BUCKET
        self._client = client or boto3.client("s3", region_name=settings.AWS_REGION)

    async def write_blob(self, key: str, data: bytes, content_type: str) -> str:
        """Upload bytes under key and return the key as the stored pointer."""
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("S3 upload failed", bucket=self.bucket, key=key, error=str(e))
            raise BlobStorageError(f"Failed to store {key}: {e}", key=key) from e

        logger.debug("Blob stored", bucket=self.bucket, key=key, size=len(data))
        return key

    async def write_json(self, key: str, document: dict[str, Any]) -> str:
        payload = json.dumps(document, indent=2, default=str).encode("utf-8")
        return await self.write_blob(key, payload, "application/json")

