# === NAVMAP v1 ===
# {
#   "module": "MediaTier.storage.cache_provider",
#   "purpose": "SSD cache storage provider with username symlinks.",
#   "sections": [
#     {
#       "id": "diskspace",
#       "name": "DiskSpace",
#       "anchor": "class-diskspace",
#       "kind": "class"
#     },
#     {
#       "id": "cacheprovider",
#       "name": "CacheProvider",
#       "anchor": "class-cacheprovider",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""SSD cache storage provider with username symlinks.

Stores files on a bind-mounted SSD. The mount can disappear at any time
(ejected drive, stale mount point), so availability is probed with a real
write and the result cached for a short TTL.

Layout under the mount:
  profiles/{person_id}/{yyyy}/{mm}/{asset_id}.{ext}   canonical files
  usernames/{username}/{asset_id}.{ext}               -> ../../profiles/...
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from MediaTier.errors import UnexpectedIOError
from MediaTier.storage import _fs
from MediaTier.storage.base import FileStats, ProviderType, ReadResult, WriteResult
from MediaTier.storage.paths import compute_sha256, filename_of, guess_mime_type

logger = logging.getLogger(__name__)

PROBE_FILENAME = ".cache-probe"
SYMLINK_DIRNAME = "usernames"


@dataclass(frozen=True)
class DiskSpace:
    """Disk usage of the cache mount in bytes."""

    total: int
    used: int
    free: int
    used_percent: int


class CacheProvider:
    """SSD cache provider (symlink capable).

    Health tracking:
      - last_health_check: time of the last real probe
      - last_error: error of the last failed probe (None when healthy)
      - unavailable_since: when the cache was first seen unavailable
    """

    type = ProviderType.CACHE

    def __init__(
        self,
        root: str,
        availability_ttl_s: float = 5.0,
        serve_prefix: str = "/ssd-images",
    ):
        """Initialize SSD cache provider.

        Args:
            root: Mount point of the SSD
            availability_ttl_s: Seconds a probe result is reused
            serve_prefix: URL prefix the web server maps onto ``root``
        """
        self.root = Path(root)
        self.symlink_root = self.root / SYMLINK_DIRNAME
        self.availability_ttl_s = availability_ttl_s
        self.serve_prefix = serve_prefix.rstrip("/")

        self._last_check: Optional[float] = None
        self._last_result = False
        self.last_health_check: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.unavailable_since: Optional[datetime] = None

    # Availability

    def _probe(self) -> Optional[str]:
        """Write and remove a probe file. Returns an error message or None."""
        available, error = _fs.probe_directory(self.root)
        if not available:
            return error
        probe = self.root / PROBE_FILENAME
        try:
            probe.write_bytes(b"probe")
            probe.unlink()
        except OSError as e:
            return str(e)
        return None

    def _mark_unavailable(self, error: str) -> None:
        if self._last_result:
            logger.warning(f"SSD cache became unavailable: {self.root} ({error})")
        if self.unavailable_since is None:
            self.unavailable_since = datetime.now(timezone.utc)
        self.last_error = error
        self._last_result = False
        self._last_check = time.monotonic()

    async def is_available(self) -> bool:
        now = time.monotonic()
        if self._last_check is not None and now - self._last_check < self.availability_ttl_s:
            return self._last_result

        self.last_health_check = datetime.now(timezone.utc)
        try:
            error = await asyncio.to_thread(self._probe)
        except Exception as e:  # never raise from an availability check
            error = str(e)

        if error is None:
            if not self._last_result and self.unavailable_since is not None:
                logger.info(f"SSD cache available again: {self.root}")
            self.last_error = None
            self.unavailable_since = None
            self._last_result = True
            self._last_check = now
            return True

        self._mark_unavailable(error)
        return False

    async def recheck_availability(self) -> bool:
        """Force a fresh probe, bypassing the cached result."""
        self._last_check = None
        return await self.is_available()

    async def disk_space(self) -> Optional[DiskSpace]:
        """Disk usage of the mount, or None if it cannot be read."""
        try:
            usage = await asyncio.to_thread(shutil.disk_usage, self.root)
        except OSError as e:
            logger.debug(f"Failed to get disk space for {self.root}: {e}")
            return None
        used_percent = round(usage.used * 100 / usage.total) if usage.total else 0
        return DiskSpace(total=usage.total, used=usage.used, free=usage.free, used_percent=used_percent)

    # Provider contract

    async def write(self, relative_path: str, data: bytes, mime_type: Optional[str] = None) -> WriteResult:
        path = _fs.resolve_under(self.root, relative_path)

        if not await self.is_available():
            logger.warning(f"Write skipped - SSD cache unavailable: {relative_path}")
            return WriteResult.failed(relative_path, "SSD cache is not available", location=str(path))

        try:
            await asyncio.to_thread(_fs.write_bytes, path, data, self.type.value, relative_path)
        except UnexpectedIOError as e:
            if _fs.is_device_lost(e):
                self._mark_unavailable(str(e))
                logger.warning("SSD cache appears to have been ejected or become read-only")
            raise

        logger.debug(f"Wrote file: {relative_path} ({len(data)} bytes)")
        return WriteResult(
            success=True,
            relative_path=relative_path,
            location=str(path),
            size=len(data),
            sha256=compute_sha256(data),
        )

    async def read(self, relative_path: str) -> Optional[ReadResult]:
        path = _fs.resolve_under(self.root, relative_path)
        data = await asyncio.to_thread(_fs.read_bytes, path, self.type.value, relative_path)
        if data is None:
            return None
        return ReadResult(data=data, size=len(data), mime_type=guess_mime_type(relative_path))

    async def exists(self, relative_path: str) -> bool:
        path = _fs.resolve_under(self.root, relative_path)
        return await asyncio.to_thread(_fs.file_exists, path)

    async def delete(self, relative_path: str) -> bool:
        path = _fs.resolve_under(self.root, relative_path)
        deleted = await asyncio.to_thread(_fs.unlink, path, self.type.value, relative_path)
        logger.debug(f"Deleted file: {relative_path}")
        return deleted

    def get_serve_url(self, relative_path: str) -> str:
        return f"{self.serve_prefix}/{relative_path}"

    async def get_stats(self, relative_path: str) -> Optional[FileStats]:
        path = _fs.resolve_under(self.root, relative_path)
        return await asyncio.to_thread(_fs.stat_with_hash, path, self.type.value, relative_path)

    # Symlink capability

    @staticmethod
    def valid_username(username: Optional[str]) -> bool:
        """Usernames must be a single path segment under usernames/."""
        if not username or not username.strip():
            return False
        if "/" in username or "\\" in username:
            return False
        return username.strip() not in (".", "..")

    def symlink_path(self, relative_path: str, username: str) -> Path:
        """Location of the username symlink for a canonical path."""
        return self.symlink_root / username.lower() / filename_of(relative_path)

    def _create_symlink(self, relative_path: str, username: str) -> None:
        link = self.symlink_path(relative_path, username)
        link.parent.mkdir(parents=True, exist_ok=True)
        try:
            link.unlink()
        except FileNotFoundError:
            pass
        # usernames/{username}/{file} -> ../../{relative_path}
        os.symlink(os.path.join("..", "..", relative_path), link)

    async def create_symlink(self, relative_path: str, username: str) -> bool:
        if not self.valid_username(username):
            logger.warning(f"Cannot create symlink: invalid username {username!r}")
            return False
        try:
            _fs.resolve_under(self.root, relative_path)
            await asyncio.to_thread(self._create_symlink, relative_path, username)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to create symlink for {username}/{filename_of(relative_path)}: {e}")
            return False
        logger.debug(f"Created symlink: {self.symlink_path(relative_path, username)}")
        return True

    async def remove_symlink(self, relative_path: str, username: str) -> bool:
        if not self.valid_username(username):
            return False
        link = self.symlink_path(relative_path, username)
        try:
            await asyncio.to_thread(_fs.unlink, link, self.type.value, relative_path)
        except UnexpectedIOError as e:
            logger.error(f"Failed to remove symlink {link}: {e}")
            return False
        logger.debug(f"Removed symlink: {link}")
        return True

    def __repr__(self) -> str:
        return f"CacheProvider(root={str(self.root)!r})"
