"""
Blob Store

Named binary objects: template files and archived generated documents.

- LocalBlobStore: files under a root directory (config.BLOB_DIR)
- HttpBlobStore: Supabase-style storage REST API
  (GET/POST/DELETE {base_url}/object/{bucket}/{location})
"""
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx

from config import BLOB_DIR, HTTP_TIMEOUT, STORAGE_API_KEY, STORAGE_BUCKET, STORAGE_URL
from errors import DownloadFailure, StorageFailure

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """upload/download/delete of named binary objects."""

    @abstractmethod
    def download(self, location: str) -> bytes:
        """Fetch an object; DownloadFailure if it cannot be read."""

    @abstractmethod
    def upload(self, location: str, data: bytes, content_type: str = None) -> str:
        """Store an object and return its url."""

    @abstractmethod
    def delete(self, location: str) -> None:
        """Remove an object."""


class LocalBlobStore(BlobStore):
    """Objects stored as files below `root`."""

    def __init__(self, root: Path = BLOB_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, location: str) -> Path:
        path = (self.root / location.lstrip('/')).resolve()
        if path != self.root and self.root not in path.parents:
            raise StorageFailure(f"Location escapes the storage root: {location}", location=location)
        return path

    def download(self, location: str) -> bytes:
        try:
            path = self._path(location)
        except StorageFailure as e:
            raise DownloadFailure(str(e), location=location) from e
        try:
            return path.read_bytes()
        except OSError as e:
            raise DownloadFailure(f"Could not read {location}: {e}", location=location) from e

    def upload(self, location: str, data: bytes, content_type: str = None) -> str:
        path = self._path(location)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageFailure(f"Could not write {location}: {e}", location=location) from e
        logger.debug(f"Stored {len(data)} bytes at {path}")
        return path.as_uri()

    def delete(self, location: str) -> None:
        path = self._path(location)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning(f"Blob already gone: {location}")
        except OSError as e:
            raise StorageFailure(f"Could not delete {location}: {e}", location=location) from e


class HttpBlobStore(BlobStore):
    """
    Storage REST API client.

    Usage:
        store = HttpBlobStore("https://xyz.supabase.co/storage/v1", api_key=key)
        data = store.download("templates/abc-pelnomocnictwo.docx")
    """

    def __init__(
        self,
        base_url: str = STORAGE_URL,
        bucket: str = STORAGE_BUCKET,
        api_key: str = STORAGE_API_KEY,
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("Storage URL is not configured (CASEGEN_STORAGE_URL)")
        self.base_url = base_url.rstrip('/')
        self.bucket = bucket
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def _get_headers(self, content_type: str = None) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
            headers["apikey"] = self.api_key
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def _object_url(self, location: str) -> str:
        return f"{self.base_url}/object/{self.bucket}/{location.lstrip('/')}"

    def public_url(self, location: str) -> str:
        return f"{self.base_url}/object/public/{self.bucket}/{location.lstrip('/')}"

    def download(self, location: str) -> bytes:
        try:
            response = self._client.get(self._object_url(location), headers=self._get_headers())
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DownloadFailure(
                f"Download failed for {location}: HTTP {e.response.status_code}",
                location=location,
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise DownloadFailure(f"Download failed for {location}: {e}", location=location) from e
        return response.content

    def upload(self, location: str, data: bytes, content_type: str = None) -> str:
        headers = self._get_headers(content_type or "application/octet-stream")
        headers["x-upsert"] = "true"
        try:
            response = self._client.post(self._object_url(location), headers=headers, content=data)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StorageFailure(
                f"Upload failed for {location}: HTTP {e.response.status_code}",
                location=location,
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise StorageFailure(f"Upload failed for {location}: {e}", location=location) from e
        logger.info(f"Uploaded {location} ({len(data)} bytes)")
        return self.public_url(location)

    def delete(self, location: str) -> None:
        try:
            response = self._client.delete(self._object_url(location), headers=self._get_headers())
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StorageFailure(
                f"Delete failed for {location}: HTTP {e.response.status_code}",
                location=location,
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise StorageFailure(f"Delete failed for {location}: {e}", location=location) from e

    def close(self):
        self._client.close()


def get_blob_store() -> BlobStore:
    """Blob store selected by configuration."""
    if STORAGE_URL:
        return HttpBlobStore()
    return LocalBlobStore()
