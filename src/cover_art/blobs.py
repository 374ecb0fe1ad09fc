"""Blob storage for archived full-resolution images."""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .exceptions import StorageError

logger = logging.getLogger(__name__)


def archive_key(user_id: str, spotify_playlist_id: str, when: Optional[datetime] = None) -> str:
    """``generations/{user}/{playlist}/{timestamp}.png`` with a filename-safe ISO timestamp."""
    when = when or datetime.now(timezone.utc)
    stamp = when.strftime("%Y-%m-%dT%H-%M-%S-") + f"{when.microsecond // 1000:03d}Z"
    return f"generations/{user_id}/{spotify_playlist_id}/{stamp}.png"


class LocalBlobStore:
    """Stores blobs as files under a root directory."""

    def __init__(self, root: str):
        self.root = Path(root)

    async def put(self, key: str, data: bytes, content_type: str = "image/png") -> str:
        path = self.root / key
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_bytes, data)
        except OSError as e:
            raise StorageError(f"Failed to write blob {key}: {e}") from e
        logger.debug(f"Stored {len(data)} bytes at {path}")
        return key

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread((self.root / key).read_bytes)


class S3BlobStore:
    """Stores blobs in an S3-compatible bucket (AWS S3, Cloudflare R2, MinIO)."""

    def __init__(self, bucket: str, endpoint_url: Optional[str] = None, client=None):
        """
        Args:
            bucket: Bucket name
            endpoint_url: Custom endpoint for S3-compatible services
            client: Pre-built boto3 S3 client
        """
        self.bucket = bucket
        self.client = client or boto3.client("s3", endpoint_url=endpoint_url)

    async def put(self, key: str, data: bytes, content_type: str = "image/png") -> str:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to upload {key} to {self.bucket}: {e}") from e
        logger.debug(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{key}")
        return key

    async def get(self, key: str) -> bytes:
        response = await asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=key)
        return response["Body"].read()
