"""Blob storage for generated images, namespaced by chat thread."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import timedelta
from pathlib import Path
from typing import Protocol

from google.cloud import storage
from google.oauth2 import service_account

logger = logging.getLogger(__name__)

_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,199}$")


class BlobStoreError(RuntimeError):
    """Raised when a blob cannot be stored or located."""


class BlobStore(Protocol):
    async def upload(
        self, thread_id: str, filename: str, data: bytes, *, content_type: str = "image/png"
    ) -> None:
        ...

    async def get_url(self, thread_id: str, filename: str) -> str:
        ...


def validate_segment(value: str) -> str:
    """Reject path segments that could escape the thread namespace."""

    if not _SAFE_SEGMENT.match(value) or ".." in value:
        raise BlobStoreError(f"Invalid blob path segment: {value!r}")
    return value


class LocalBlobStore:
    """Store blobs on the local filesystem and serve them through the API."""

    def __init__(self, root: Path, public_base_url: str) -> None:
        self._root = root
        self._public_base_url = public_base_url.rstrip("/")

    def path_for(self, thread_id: str, filename: str) -> Path:
        return self._root / validate_segment(thread_id) / validate_segment(filename)

    async def upload(
        self, thread_id: str, filename: str, data: bytes, *, content_type: str = "image/png"
    ) -> None:
        path = self.path_for(thread_id, filename)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise BlobStoreError(str(exc)) from exc
        logger.info("Stored %s (%d bytes) for thread %s", filename, len(data), thread_id)

    async def get_url(self, thread_id: str, filename: str) -> str:
        validate_segment(thread_id)
        validate_segment(filename)
        return f"{self._public_base_url}/api/images/{thread_id}/{filename}"


class GcsBlobStore:
    """Store blobs in a Google Cloud Storage bucket and hand out signed URLs."""

    def __init__(
        self,
        bucket_name: str,
        *,
        project_id: str | None = None,
        credentials_path: Path | None = None,
        url_ttl: timedelta = timedelta(days=7),
    ) -> None:
        self._bucket_name = bucket_name
        self._project_id = project_id
        self._credentials_path = credentials_path
        self._url_ttl = url_ttl
        self._bucket: storage.Bucket | None = None

    def _get_bucket(self) -> storage.Bucket:
        if self._bucket is None:
            credentials = None
            if self._credentials_path is not None:
                resolved = Path(self._credentials_path).expanduser().resolve()
                credentials = service_account.Credentials.from_service_account_file(
                    str(resolved)
                )
            client = storage.Client(project=self._project_id, credentials=credentials)
            self._bucket = client.bucket(self._bucket_name)
        return self._bucket

    @staticmethod
    def _blob_name(thread_id: str, filename: str) -> str:
        return f"{validate_segment(thread_id)}/{validate_segment(filename)}"

    async def upload(
        self, thread_id: str, filename: str, data: bytes, *, content_type: str = "image/png"
    ) -> None:
        blob_name = self._blob_name(thread_id, filename)

        def _upload() -> None:
            blob = self._get_bucket().blob(blob_name)
            blob.upload_from_string(data, content_type=content_type)

        try:
            await asyncio.to_thread(_upload)
        except Exception as exc:
            raise BlobStoreError(str(exc)) from exc

    async def get_url(self, thread_id: str, filename: str) -> str:
        blob_name = self._blob_name(thread_id, filename)

        def _sign() -> str:
            blob = self._get_bucket().blob(blob_name)
            return blob.generate_signed_url(
                version="v4", expiration=self._url_ttl, method="GET"
            )

        try:
            return await asyncio.to_thread(_sign)
        except Exception as exc:
            raise BlobStoreError(str(exc)) from exc


__all__ = [
    "BlobStore",
    "BlobStoreError",
    "GcsBlobStore",
    "LocalBlobStore",
    "validate_segment",
]
