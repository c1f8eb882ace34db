"""Blob storage for originals and generated versions.

Supports two backends:
- S3: production, originals and versions live in one bucket
- Local: filesystem directory, for development and single-host deployments

Usage:
    blobs = create_blob_store(settings)
    data = await blobs.get_file("photos/cat.jpg")
    await blobs.upload(UploadRequest(source=tmp, destination="d/abc.jpg", size=n, mime_type="image/jpeg"))
"""

import asyncio
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from core.config import Settings
from core.logging import get_logger
from models.image import UploadRequest
from services.errors import SourceFetchError, UploadError

logger = get_logger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class BlobStore(ABC):
    """Abstract base class for blob storage backends."""

    @abstractmethod
    async def get_file(self, path: str) -> bytes:
        """Return the object's bytes or raise SourceFetchError."""
        pass

    @abstractmethod
    async def upload(self, request: UploadRequest) -> None:
        """Store a local file at request.destination or raise UploadError."""
        pass


class S3BlobStore(BlobStore):
    """
    Amazon S3 backend.

    boto3 is synchronous, so every call runs in a worker thread to keep
    the event loop free while the request is on the network.
    """

    def __init__(self, bucket: str, region: str = "us-east-1", client=None):
        self.bucket = bucket
        self.region = region
        self._client = client or boto3.client(
            "s3",
            region_name=region,
            config=BotoConfig(retries={"max_attempts": 3, "mode": "standard"}),
        )

    async def get_file(self, path: str) -> bytes:
        try:
            return await asyncio.to_thread(self._get_object, path)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                raise SourceFetchError(path) from e
            raise SourceFetchError(path, f"S3 error {code}") from e
        except BotoCoreError as e:
            raise SourceFetchError(path, f"S3 transport error: {e}") from e

    async def upload(self, request: UploadRequest) -> None:
        try:
            response = await asyncio.to_thread(self._put_object, request)
        except (ClientError, BotoCoreError) as e:
            raise UploadError(request.destination, str(e)) from e

        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if status != 200:
            raise UploadError(request.destination, f"unexpected status {status}", status_code=status)
        logger.debug("Uploaded version", bucket=self.bucket, key=request.destination,
                     size=request.size)

    def _get_object(self, path: str) -> bytes:
        response = self._client.get_object(Bucket=self.bucket, Key=path)
        return response["Body"].read()

    def _put_object(self, request: UploadRequest) -> dict:
        with open(request.source, "rb") as body:
            return self._client.put_object(
                Bucket=self.bucket,
                Key=request.destination,
                Body=body,
                ContentLength=request.size,
                ContentType=request.mime_type,
            )


class LocalBlobStore(BlobStore):
    """Filesystem backend rooted at one directory."""

    def __init__(self, root: str):
        self.root = Path(root)

    async def get_file(self, path: str) -> bytes:
        try:
            target = self._resolve(path)
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError as e:
            raise SourceFetchError(path) from e
        except (OSError, ValueError) as e:
            raise SourceFetchError(path, f"read failed: {e}") from e

    async def upload(self, request: UploadRequest) -> None:
        try:
            target = self._resolve(request.destination)
            await asyncio.to_thread(self._copy, Path(request.source), target)
        except (OSError, ValueError) as e:
            raise UploadError(request.destination, str(e)) from e
        logger.debug("Stored version", path=str(target), size=request.size)

    def _resolve(self, path: str) -> Path:
        root = self.root.resolve()
        target = (root / path).resolve()
        if root not in target.parents:
            raise ValueError(f"path escapes blob root: {path}")
        return target

    @staticmethod
    def _copy(source: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)


def create_blob_store(settings: Settings, client=None) -> BlobStore:
    """Factory function to create the configured blob store."""
    if settings.blob_backend == "s3":
        logger.info("Using S3 blob store", bucket=settings.s3_bucket)
        return S3BlobStore(settings.s3_bucket, settings.s3_region, client=client)

    logger.info("Using local blob store", root=settings.local_blob_root)
    return LocalBlobStore(settings.local_blob_root)


def get_blob_root(settings: Settings) -> Optional[Path]:
    """Directory to serve versions from when blobs are stored locally."""
    if settings.blob_backend == "local":
        return Path(settings.local_blob_root)
    return None
