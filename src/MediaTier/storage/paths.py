"""Canonical path layout and shared hashing helpers for media storage.

Canonical paths identify an asset's bytes independently of the provider that
currently holds them:

    profiles/{person_id}/{yyyy}/{mm}/{asset_id}.{ext}

Sharding by subject and month bounds directory fan-out on filesystem
providers and keeps object-store prefixes browsable.
"""

from __future__ import annotations

import hashlib
import mimetypes
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

CANONICAL_ROOT = "profiles"

_CANONICAL_RE = re.compile(r"^profiles/([^/]+)/(\d{4})/(\d{2})/([^/]+)\.(\w+)$")

_MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
}

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class CanonicalPath:
    """Components of a parsed canonical path."""

    person_id: str
    year: str
    month: str
    asset_id: str
    extension: str

    @property
    def filename(self) -> str:
        return f"{self.asset_id}.{self.extension}"


def _check_component(name: str, value: str) -> None:
    if not value:
        raise ValueError(f"{name} must be non-empty")
    if "/" in value or "\\" in value:
        raise ValueError(f"{name} must not contain path separators: {value!r}")


def generate_canonical_path(
    person_id: str,
    asset_id: str,
    extension: str,
    date: Optional[datetime] = None,
) -> str:
    """Generate the canonical relative path for an asset.

    Example:
        generate_canonical_path("p1", "img1", "jpg", datetime(2024, 5, 3))
        -> "profiles/p1/2024/05/img1.jpg"

    Args:
        person_id: Owning subject identifier
        asset_id: Asset identifier
        extension: File extension, with or without a leading dot
        date: Date used for year/month sharding (default: now, UTC)

    Returns:
        Relative path under the provider root

    Raises:
        ValueError: If a component is empty or contains a path separator
    """
    extension = extension.lstrip(".")
    _check_component("person_id", person_id)
    _check_component("asset_id", asset_id)
    _check_component("extension", extension)
    if not re.fullmatch(r"\w+", extension):
        raise ValueError(f"extension must be alphanumeric: {extension!r}")

    d = date or datetime.now(timezone.utc)
    return f"{CANONICAL_ROOT}/{person_id}/{d.year:04d}/{d.month:02d}/{asset_id}.{extension}"


def parse_canonical_path(relative_path: str) -> Optional[CanonicalPath]:
    """Parse a canonical path back into its components.

    Returns:
        CanonicalPath, or None if ``relative_path`` does not follow the scheme
    """
    if not relative_path:
        return None
    match = _CANONICAL_RE.match(relative_path)
    if not match:
        return None
    person_id, year, month, asset_id, extension = match.groups()
    return CanonicalPath(
        person_id=person_id,
        year=year,
        month=month,
        asset_id=asset_id,
        extension=extension,
    )


def compute_sha256(data: bytes) -> str:
    """Return the lowercase hex SHA-256 of ``data``."""
    return hashlib.sha256(data).hexdigest()


def guess_mime_type(relative_path: str) -> str:
    """Guess a MIME type from the path's extension."""
    ext = relative_path.rsplit(".", 1)[-1].lower() if "." in relative_path else ""
    if ext in _MIME_TYPES:
        return _MIME_TYPES[ext]
    guessed, _ = mimetypes.guess_type(relative_path)
    return guessed or DEFAULT_MIME_TYPE


def filename_of(relative_path: str) -> str:
    """Last path segment of a relative path."""
    return relative_path.rstrip("/").rsplit("/", 1)[-1] or relative_path
