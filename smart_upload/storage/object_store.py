"""
Object storage for uploaded files and split parts.
Phase 1: Local filesystem (volume mount).
Anything implementing ObjectStorage (S3, MinIO) can replace it.
"""

import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode

import structlog

from smart_upload.config import settings
from smart_upload.errors import NotFoundError, ValidationError
from smart_upload.storage.paths import ensure_parent_dirs

logger = structlog.get_logger(__name__)


class ObjectStorage(ABC):
    """Upload/download/delete by key. The pipeline never touches disks directly."""

    @abstractmethod
    def upload(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under key. Returns the key."""
        ...

    @abstractmethod
    def download(self, key: str) -> bytes:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete an object. Returns True if it existed."""
        ...

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def signed_download_url(self, key: str, expires_in: Optional[int] = None) -> str:
        ...


class LocalObjectStorage(ObjectStorage):
    """
    Filesystem-backed storage.
    All keys are relative to STORAGE_ROOT; signed URLs carry an HMAC and expiry.
    """

    def __init__(
        self,
        root: Optional[str] = None,
        signing_key: Optional[str] = None,
        public_base_url: Optional[str] = None,
    ):
        self.root = Path(root or settings.STORAGE_ROOT)
        self.root.mkdir(parents=True, exist_ok=True)
        self._signing_key = (signing_key or settings.STORAGE_SIGNING_KEY).encode("utf-8")
        self.public_base_url = (public_base_url or settings.STORAGE_PUBLIC_BASE_URL).rstrip("/")

    def _path(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in Path(key).parts:
            raise ValidationError(f"Invalid storage key: {key!r}")
        return self.root / key

    def upload(self, key: str, data: bytes, content_type: str) -> str:
        self._path(key)
        full_path = ensure_parent_dirs(str(self.root), key)
        full_path.write_bytes(data)
        logger.info("object_uploaded", key=key, size_bytes=len(data), content_type=content_type)
        return key

    def download(self, key: str) -> bytes:
        full_path = self._path(key)
        if not full_path.exists():
            raise NotFoundError("Object", key)
        return full_path.read_bytes()

    def delete(self, key: str) -> bool:
        full_path = self._path(key)
        if full_path.exists():
            full_path.unlink()
            logger.info("object_deleted", key=key)
            return True
        return False

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def _signature(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode("utf-8")
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def signed_download_url(self, key: str, expires_in: Optional[int] = None) -> str:
        self._path(key)
        expires = int(time.time()) + (expires_in or settings.SIGNED_URL_TTL_SECONDS)
        query = urlencode({"expires": expires, "signature": self._signature(key, expires)})
        return f"{self.public_base_url}/{quote(key)}?{query}"

    def verify_signature(self, key: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(key, expires), signature)
