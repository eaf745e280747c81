"""
Object Storage Provider Classes

Blob storage for uploaded audio and profile images. Every provider stores each
upload under a fresh unique key and returns a stable public URL for it; a URL
is only handed out once the object is completely written, so readers never see
a partial upload.

Providers:
- `LocalFileStorageProvider`: files under a root directory, written to a temp
  file and atomically renamed into place. Served by the app's `/media` mount.
- `InMemoryStorageProvider`: dictionary-backed, for tests and local runs.
- `S3StorageProvider`: any S3-compatible bucket through `boto3`.
"""

import asyncio
import logging
import mimetypes
import os
import posixpath
import tempfile
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from core.exceptions import StorageFailure, ValidationError

logger = logging.getLogger(__name__)


def upload_hint(directory: str, filename: Optional[str], default: str = "upload") -> str:
    """Path hint for a client-named upload; only the file's base name is kept"""
    name = posixpath.basename((filename or "").replace("\\", "/"))
    if name in ("", ".", ".."):
        name = default
    return f"{directory}/{name}"


class StorageProvider(ABC):
    """Abstract base class for object stores"""

    def __init__(
        self,
        public_base_url: str,
        max_upload_bytes: int = 25 * 1024 * 1024,
        timeout_seconds: float = 30.0,
    ):
        self.public_base_url = public_base_url.rstrip("/")
        self.max_upload_bytes = max_upload_bytes
        self.timeout_seconds = timeout_seconds

    @property
    @abstractmethod
    def source_name(self) -> str:
        """Backend identifier for logs and health output"""
        pass

    @abstractmethod
    async def _write(self, path: str, data: bytes, content_type: str) -> None:
        """Store the object so that it becomes visible all at once"""
        pass

    @abstractmethod
    async def _remove(self, path: str) -> None:
        """Remove the object; missing objects are not an error"""
        pass

    def url_for(self, path: str) -> str:
        return f"{self.public_base_url}/{path}"

    def path_for(self, path_or_url: str) -> str:
        """Map a URL returned by `put` back to its object path"""
        prefix = self.public_base_url + "/"
        if path_or_url.startswith(prefix):
            return path_or_url[len(prefix):]
        return path_or_url.lstrip("/")

    def build_path(self, path_hint: str, content_type: str) -> str:
        """`audio/take.m4a` -> `audio/<uuid>.m4a`"""
        if ".." in path_hint.replace("\\", "/").split("/"):
            raise ValidationError("path_hint", path_hint, "Path must not leave the storage root")
        directory, filename = posixpath.split(path_hint.strip("/"))
        ext = posixpath.splitext(filename)[1].lower()
        if not ext:
            ext = mimetypes.guess_extension(content_type or "") or ".bin"
        name = uuid.uuid4().hex + ext
        return posixpath.join(directory, name) if directory else name

    async def put(self, data: bytes, content_type: str, path_hint: str) -> str:
        """Store `data` and return its public URL. Raises StorageFailure."""
        if not data:
            raise ValidationError("data", "", "Upload is empty")
        if len(data) > self.max_upload_bytes:
            raise ValidationError(
                "data", len(data), f"Upload exceeds {self.max_upload_bytes} bytes"
            )

        path = self.build_path(path_hint, content_type)
        try:
            await asyncio.wait_for(
                self._write(path, data, content_type), timeout=self.timeout_seconds
            )
        except StorageFailure:
            raise
        except asyncio.TimeoutError:
            raise StorageFailure("upload timed out", path)
        except (OSError, BotoCoreError, ClientError) as e:
            raise StorageFailure(str(e), path) from e

        logger.info(
            f"Stored {len(data)} bytes at {path}",
            extra={"storage": self.source_name, "path": path, "content_type": content_type},
        )
        return self.url_for(path)

    async def delete(self, path_or_url: str) -> None:
        path = self.path_for(path_or_url)
        try:
            await asyncio.wait_for(self._remove(path), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise StorageFailure("delete timed out", path)
        except (OSError, BotoCoreError, ClientError) as e:
            raise StorageFailure(str(e), path) from e
        logger.info(f"Deleted {path}", extra={"storage": self.source_name, "path": path})


class LocalFileStorageProvider(StorageProvider):
    """Filesystem-backed object store"""

    def __init__(self, root: str, public_base_url: str, **kwargs):
        super().__init__(public_base_url, **kwargs)
        self.root = os.path.abspath(root)

    @property
    def source_name(self) -> str:
        return "local"

    def _full_path(self, path: str) -> str:
        full = os.path.abspath(os.path.join(self.root, path))
        if not full.startswith(self.root + os.sep):
            raise StorageFailure("path escapes storage root", path)
        return full

    def _write_atomically(self, full_path: str, data: bytes) -> None:
        directory = os.path.dirname(full_path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(data)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, full_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _remove_file(self, full_path: str) -> None:
        try:
            os.unlink(full_path)
        except FileNotFoundError:
            pass

    async def _write(self, path: str, data: bytes, content_type: str) -> None:
        await asyncio.to_thread(self._write_atomically, self._full_path(path), data)

    async def _remove(self, path: str) -> None:
        await asyncio.to_thread(self._remove_file, self._full_path(path))


class InMemoryStorageProvider(StorageProvider):
    """Test double for storage interactions"""

    def __init__(self, public_base_url: str = "https://storage.example.test", **kwargs):
        super().__init__(public_base_url, **kwargs)
        self.objects: Dict[str, Tuple[bytes, str]] = {}

    @property
    def source_name(self) -> str:
        return "memory"

    async def _write(self, path: str, data: bytes, content_type: str) -> None:
        self.objects[path] = (bytes(data), content_type)

    async def _remove(self, path: str) -> None:
        self.objects.pop(path, None)

    def get(self, path_or_url: str) -> Optional[bytes]:
        stored = self.objects.get(self.path_for(path_or_url))
        return stored[0] if stored else None


class S3StorageProvider(StorageProvider):
    """S3-compatible object store; boto3 calls run in a worker thread"""

    def __init__(
        self,
        bucket: str,
        region: Optional[str] = None,
        endpoint: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client=None,
        **kwargs,
    ):
        if public_base_url is None:
            if endpoint:
                public_base_url = f"{endpoint.rstrip('/')}/{bucket}"
            else:
                public_base_url = f"https://{bucket}.s3.{region or 'us-east-1'}.amazonaws.com"
        super().__init__(public_base_url, **kwargs)
        self.bucket = bucket
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint,
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(signature_version="s3v4", retries={"max_attempts": 3}),
        )

    @property
    def source_name(self) -> str:
        return "s3"

    async def _write(self, path: str, data: bytes, content_type: str) -> None:
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType=content_type or "application/octet-stream",
        )

    async def _remove(self, path: str) -> None:
        await asyncio.to_thread(self._client.delete_object, Bucket=self.bucket, Key=path)


def build_storage_provider(settings) -> StorageProvider:
    """Create the provider selected by `settings.storage_backend`"""
    common = {
        "max_upload_bytes": settings.max_upload_bytes,
        "timeout_seconds": settings.operation_timeout_seconds,
    }
    backend = settings.storage_backend.lower()
    if backend == "memory":
        return InMemoryStorageProvider(settings.public_base_url, **common)
    if backend == "s3":
        if not settings.s3_bucket:
            raise ValueError("S3_BUCKET must be set when STORAGE_BACKEND=s3")
        return S3StorageProvider(
            bucket=settings.s3_bucket,
            region=settings.s3_region,
            endpoint=settings.s3_endpoint,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
            **common,
        )
    return LocalFileStorageProvider(settings.storage_root, settings.public_base_url, **common)
