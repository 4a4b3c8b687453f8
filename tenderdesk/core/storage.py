"""
Blob storage abstraction. S3 OR local filesystem. Controlled by FF_USE_S3 flag.

Keys are opaque strings; put() returns the handle that get() accepts.
"""

import logging
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path

from .config import get_settings
from .flags import get_flags

logger = logging.getLogger(__name__)


class StorageBackend(ABC):
    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "") -> str:
        """Store bytes under key. Returns the handle to read them back."""
        ...

    @abstractmethod
    async def get(self, handle: str) -> bytes:
        """Read bytes by handle. Raises FileNotFoundError if missing."""
        ...


class S3Storage(StorageBackend):
    def __init__(self):
        self._client = None

    def _get_client(self):
        if self._client is None:
            import boto3

            settings = get_settings()
            kwargs = {"region_name": settings.aws_region}
            if settings.aws_access_key_id:
                kwargs["aws_access_key_id"] = settings.aws_access_key_id
                kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
            self._client = boto3.client("s3", **kwargs)
        return self._client

    async def put(self, key: str, data: bytes, content_type: str = "") -> str:
        settings = get_settings()
        key = key.strip("/")
        self._get_client().put_object(
            Bucket=settings.s3_bucket_name,
            Key=key,
            Body=data,
            ContentType=content_type or guess_content_type(key),
        )
        logger.info("Uploaded to S3: %s (%d bytes)", key, len(data))
        return key

    async def get(self, handle: str) -> bytes:
        from botocore.exceptions import ClientError

        settings = get_settings()
        try:
            obj = self._get_client().get_object(Bucket=settings.s3_bucket_name, Key=handle)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(handle) from e
            raise
        return obj["Body"].read()


class LocalStorage(StorageBackend):
    def __init__(self, base_path: str = "./local_storage"):
        self.base_path = Path(base_path)

    def _path(self, key: str) -> Path:
        path = (self.base_path / key.strip("/")).resolve()
        if self.base_path.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes base path: {key}")
        return path

    async def put(self, key: str, data: bytes, content_type: str = "") -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info("Saved locally: %s (%d bytes)", path, len(data))
        return key.strip("/")

    async def get(self, handle: str) -> bytes:
        path = self._path(handle)
        if not path.is_file():
            raise FileNotFoundError(handle)
        return path.read_bytes()


def get_storage() -> StorageBackend:
    """Return the active storage backend based on feature flags."""
    flags = get_flags()
    if flags.use_s3:
        return S3Storage()
    return LocalStorage(get_settings().local_storage_path)


# ── Key layout ───────────────────────────────────────────────────────

def upload_key(org_id: str, upload_id: str, filename: str) -> str:
    return f"org/{org_id}/uploads/{upload_id}/{Path(filename).name}"


def document_key(org_id: str, tender_id: str, doc_hash: str, name: str) -> str:
    """Per-document artifact key, e.g. raw.pdf, extracted.json."""
    return f"org/{org_id}/tender/{tender_id}/docs/{doc_hash}/{name}"


def guess_content_type(filename: str) -> str:
    ct, _ = mimetypes.guess_type(filename)
    return ct or "application/octet-stream"
