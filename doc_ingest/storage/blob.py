"""
Blob storage for raw uploads.

The uploader writes the file to S3 and records its key as the document's
storage_path; Stage 1 only ever reads it back. Workers get bytes, never
local file paths.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from doc_ingest.core.exceptions import BlobStoreError

logger = logging.getLogger(__name__)


class BlobStore(ABC):

    @abstractmethod
    async def download(self, path: str) -> bytes:
        """Return the object's bytes; BlobStoreError on any failure."""


class S3BlobStore(BlobStore):
    """
    Async S3 reads from a single bucket.

    Credentials come from the environment (IAM role in production,
    AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY locally).
    """

    def __init__(self, bucket: str, region: str, session: aioboto3.Session | None = None) -> None:
        self._bucket  = bucket
        self._region  = region
        self._session = session or aioboto3.Session()

    @classmethod
    def from_settings(cls) -> "S3BlobStore":
        from doc_ingest.core.config import settings
        return cls(bucket=settings.s3_bucket, region=settings.aws_region)

    def _client(self):
        return self._session.client("s3", region_name=self._region)

    async def download(self, path: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=path)
                data = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code", "")
                if code in ("NoSuchKey", "404"):
                    raise BlobStoreError(f"Object not found: {path}") from exc
                raise BlobStoreError(f"S3 download failed ({code}): {path}") from exc
            except BotoCoreError as exc:
                raise BlobStoreError(f"S3 download failed: {exc}") from exc

        logger.info("S3 download ok | bucket=%s key=%s size=%d", self._bucket, path, len(data))
        return data
