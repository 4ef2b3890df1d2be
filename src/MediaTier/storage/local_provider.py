"""Local volume storage provider.

Stores files under a fixed root directory (the container data volume). This
is the always-present baseline; new writes normally go to the cache or the
remote store, and rows still on this provider are picked up by the legacy
migration sweep.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from MediaTier.storage import _fs
from MediaTier.storage.base import FileStats, ProviderType, ReadResult, WriteResult
from MediaTier.storage.paths import compute_sha256, guess_mime_type

logger = logging.getLogger(__name__)


class LocalVolumeProvider:
    """Filesystem provider rooted at the local data volume."""

    type = ProviderType.LOCAL

    def __init__(self, root: str, serve_prefix: str = "/images"):
        """Initialize local volume provider.

        Args:
            root: Root directory of the volume
            serve_prefix: URL prefix the web server maps onto ``root``
        """
        self.root = Path(root)
        self.serve_prefix = serve_prefix.rstrip("/")

    async def is_available(self) -> bool:
        available, error = await asyncio.to_thread(_fs.probe_directory, self.root)
        if not available:
            logger.debug(f"Local volume unavailable: {error}")
        return available

    async def write(self, relative_path: str, data: bytes, mime_type: Optional[str] = None) -> WriteResult:
        path = _fs.resolve_under(self.root, relative_path)
        await asyncio.to_thread(_fs.write_bytes, path, data, self.type.value, relative_path)

        sha256 = compute_sha256(data)
        logger.debug(f"Wrote file: {relative_path} ({len(data)} bytes)")
        return WriteResult(
            success=True,
            relative_path=relative_path,
            location=str(path),
            size=len(data),
            sha256=sha256,
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

    def __repr__(self) -> str:
        return f"LocalVolumeProvider(root={str(self.root)!r})"
