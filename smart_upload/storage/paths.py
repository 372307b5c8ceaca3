"""
Content hashing and content-addressable storage keys.
All keys are relative to the storage root.
"""

import hashlib
import mimetypes
import re
from pathlib import Path
from typing import Optional

HASH_ALGORITHM = "sha256"

_FINGERPRINT_STRIP = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

_EXTENSION_BY_MIME = {
    "application/pdf": "pdf",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/ogg": "ogg",
    "audio/webm": "webm",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/tiff": "tiff",
    "image/bmp": "bmp",
}


def compute_content_hash(data: bytes) -> str:
    """SHA-256 hash of file content, hex encoded."""
    return hashlib.sha256(data).hexdigest()


def content_addressable_key(data: bytes, extension: str) -> str:
    """
    Storage key derived from the content itself.

    Format: sha256/{first 2 hex chars}/{remaining 62}.{extension}
    Identical bytes always map to the same key.
    """
    digest = compute_content_hash(data)
    return key_for_hash(digest, extension)


def key_for_hash(digest: str, extension: str) -> str:
    ext = extension.lstrip(".").lower() or "bin"
    return f"{HASH_ALGORITHM}/{digest[:2]}/{digest[2:]}.{ext}"


def short_hash(data: bytes, length: int = 8) -> str:
    """Short hash for display."""
    return compute_content_hash(data)[:length]


def verify_hash(data: bytes, expected_hash: str) -> bool:
    return compute_content_hash(data) == expected_hash


def normalize_for_fingerprint(value: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    value = _FINGERPRINT_STRIP.sub("", value.lower().strip())
    return _WHITESPACE.sub(" ", value).strip()


def compute_work_fingerprint(title: str, composer: Optional[str]) -> str:
    """
    Identity of a musical work for duplicate detection.
    Two uploads with the same title and composer share a fingerprint.
    """
    combined = f"{normalize_for_fingerprint(title)}::{normalize_for_fingerprint(composer or '')}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()[:16]


def extension_for(file_name: str, mime_type: Optional[str] = None) -> str:
    """File extension from the mime type, falling back to the file name."""
    if mime_type and mime_type in _EXTENSION_BY_MIME:
        return _EXTENSION_BY_MIME[mime_type]
    suffix = Path(file_name).suffix.lstrip(".").lower()
    if suffix:
        return suffix
    guessed = mimetypes.guess_extension(mime_type or "") or ".bin"
    return guessed.lstrip(".")


def ensure_parent_dirs(storage_root: str, relative_path: str) -> Path:
    """Create parent directories and return the full absolute path."""
    full_path = Path(storage_root) / relative_path
    full_path.parent.mkdir(parents=True, exist_ok=True)
    return full_path
