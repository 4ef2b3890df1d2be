"""Blocking filesystem helpers shared by the local and cache providers.

The providers call these through ``asyncio.to_thread``. ``FileNotFoundError``
is translated into the ordinary not-found results; every other ``OSError``
is raised as :class:`~MediaTier.errors.UnexpectedIOError`.
"""

from __future__ import annotations

import errno
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

from MediaTier.errors import UnexpectedIOError
from MediaTier.storage.base import FileStats
from MediaTier.storage.paths import compute_sha256, guess_mime_type


def resolve_under(root: Path, relative_path: str) -> Path:
    """Join ``relative_path`` onto ``root``, refusing to escape the root.

    Raises:
        ValueError: If the path is absolute or climbs out of ``root``
    """
    if not relative_path or relative_path.startswith(("/", "\\")):
        raise ValueError(f"Invalid relative path: {relative_path!r}")
    parts = Path(relative_path).parts
    if ".." in parts:
        raise ValueError(f"Path traversal not allowed: {relative_path!r}")
    return root / relative_path


def probe_directory(root: Path) -> Tuple[bool, Optional[str]]:
    """Check that ``root`` is a readable, writable directory.

    Returns:
        (available, error message)
    """
    try:
        if not root.is_dir():
            return False, f"Not a directory: {root}"
        if not os.access(root, os.R_OK | os.W_OK):
            return False, f"Directory not readable/writable: {root}"
        return True, None
    except OSError as e:
        return False, str(e)


def write_bytes(path: Path, data: bytes, provider: str, relative_path: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    except OSError as e:
        raise UnexpectedIOError(
            f"Write failed for {relative_path}: {e}", provider=provider, path=relative_path
        ) from e


def read_bytes(path: Path, provider: str, relative_path: str) -> Optional[bytes]:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None
    except IsADirectoryError:
        return None
    except OSError as e:
        raise UnexpectedIOError(
            f"Read failed for {relative_path}: {e}", provider=provider, path=relative_path
        ) from e


def file_exists(path: Path) -> bool:
    try:
        return path.is_file()
    except OSError:
        return False


def unlink(path: Path, provider: str, relative_path: str) -> bool:
    """Remove a file or symlink; missing counts as removed."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return True
    except OSError as e:
        raise UnexpectedIOError(
            f"Delete failed for {relative_path}: {e}", provider=provider, path=relative_path
        ) from e


def stat_with_hash(path: Path, provider: str, relative_path: str) -> Optional[FileStats]:
    """Stat a file and re-hash the bytes currently on disk."""
    try:
        st = path.stat()
        data = path.read_bytes()
    except FileNotFoundError:
        return None
    except IsADirectoryError:
        return None
    except OSError as e:
        raise UnexpectedIOError(
            f"Stat failed for {relative_path}: {e}", provider=provider, path=relative_path
        ) from e

    return FileStats(
        size=st.st_size,
        sha256=compute_sha256(data),
        mime_type=guess_mime_type(relative_path),
        modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
    )


def is_device_lost(error: BaseException) -> bool:
    """True for errors that suggest an ejected or read-only mount."""
    cause = error.__cause__ if isinstance(error, UnexpectedIOError) else error
    return isinstance(cause, OSError) and cause.errno in (errno.ENOENT, errno.EROFS, errno.EIO)
