"""
Storage Provider Protocol and Base Types

Defines the contract every media storage backend (local volume, SSD cache,
S3 object store) implements, plus the optional symlink capability that only
filesystem-backed providers offer.

NAVMAP:
  - ProviderType: Closed set of provider identifiers
  - WriteResult / ReadResult / FileStats: Structured operation results
  - StorageProvider: Protocol all providers implement
  - SymlinkCapable: Runtime-probed capability for username symlinks
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol, runtime_checkable


class ProviderType(str, Enum):
    """Storage provider identifiers as recorded in the catalog."""

    LOCAL = "local"
    CACHE = "cache"
    REMOTE = "remote"


# Result Types


@dataclass(frozen=True)
class WriteResult:
    """Result of a provider write.

    Attributes:
        success: True if the bytes were stored
        relative_path: Canonical path that was written
        location: Provider-specific absolute location (file path or s3:// URI)
        size: Number of bytes written (0 on failure)
        sha256: Hash recomputed from the written buffer ('' on failure)
        error: Reason for an expected failure (disabled, unavailable)
    """

    success: bool
    relative_path: str
    location: str = ""
    size: int = 0
    sha256: str = ""
    error: Optional[str] = None

    @classmethod
    def failed(cls, relative_path: str, error: str, location: str = "") -> "WriteResult":
        return cls(success=False, relative_path=relative_path, location=location, error=error)


@dataclass(frozen=True)
class ReadResult:
    """Bytes read back from a provider."""

    data: bytes
    size: int
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class FileStats:
    """Stats for a stored object.

    ``sha256`` is always recomputed from the bytes currently held by the
    provider so that corruption after the original write is detected.
    """

    size: int
    sha256: str
    mime_type: Optional[str] = None
    modified_at: Optional[datetime] = None


# Provider Protocol


class StorageProvider(Protocol):
    """
    Protocol that all storage providers must implement.

    Providers are responsible for:
    - Mapping canonical relative paths onto their backend
    - Returning structured results for expected failures (not found, disabled)
    - Raising UnexpectedIOError for anything else (permission, network)
    """

    type: ProviderType

    async def is_available(self) -> bool:
        """Cheap reachability check used for routing. Never raises."""
        ...

    async def write(self, relative_path: str, data: bytes, mime_type: Optional[str] = None) -> WriteResult:
        """
        Store exactly ``data`` at ``relative_path``.

        Returns:
            WriteResult with the hash of the written buffer

        Raises:
            UnexpectedIOError: On permission or connectivity failures
        """
        ...

    async def read(self, relative_path: str) -> Optional[ReadResult]:
        """
        Read previously written bytes.

        Returns:
            ReadResult, or None if nothing is stored at ``relative_path``

        Raises:
            UnexpectedIOError: On permission or connectivity failures
        """
        ...

    async def exists(self, relative_path: str) -> bool:
        """Check whether an object is stored at ``relative_path``."""
        ...

    async def delete(self, relative_path: str) -> bool:
        """
        Delete an object. Idempotent: a missing object counts as deleted.

        Returns:
            True if the object is gone afterwards
        """
        ...

    def get_serve_url(self, relative_path: str) -> str:
        """Locator clients use to fetch the object."""
        ...

    async def get_stats(self, relative_path: str) -> Optional[FileStats]:
        """
        Stat an object, re-hashing its current bytes.

        Returns:
            FileStats, or None if nothing is stored at ``relative_path``
        """
        ...


@runtime_checkable
class SymlinkCapable(Protocol):
    """Capability for providers that expose a username-keyed symlink view."""

    async def create_symlink(self, relative_path: str, username: str) -> bool:
        """Create or refresh ``usernames/{username}/{filename}`` for a canonical path."""
        ...

    async def remove_symlink(self, relative_path: str, username: str) -> bool:
        """Remove the username symlink for a canonical path (missing is success)."""
        ...


def supports_symlinks(provider: object) -> bool:
    """Return True if ``provider`` implements the symlink capability."""
    return isinstance(provider, SymlinkCapable)
