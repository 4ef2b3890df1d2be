"""SQLite-based implementation of the media asset catalog."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from MediaTier.catalog.models import MediaAsset, VerifiedState
from MediaTier.storage.base import ProviderType

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, person_id, relative_path, storage_provider, file_size, sha256, source_url, "
    "verified, verified_at, uploaded_at, source, mime_type"
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """UTC-aware copy of ``value``; naive values are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    # Stored as UTC so ISO strings sort chronologically
    value = _to_utc(value)
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return _to_utc(datetime.fromisoformat(value)) if value else None


def _filters(
    verified: Optional[VerifiedState] = None, provider: Optional[ProviderType] = None
) -> Tuple[str, tuple]:
    """WHERE clause and params for the optional verified/provider filters."""
    clauses = ["1 = 1"]
    params: list = []
    if verified is not None:
        clauses.append("verified = ?")
        params.append(VerifiedState(verified).value)
    if provider is not None:
        clauses.append("storage_provider = ?")
        params.append(ProviderType(provider).value)
    return " AND ".join(clauses), tuple(params)


class MediaCatalog:
    """Protocol-like base class for media catalog stores.

    This class defines the narrow contract the transfer, consolidation and
    verification services consume. All methods are coroutines; rows are
    returned as :class:`MediaAsset` values.
    """

    async def get(self, asset_id: str) -> Optional[MediaAsset]:
        """Get one row by id."""
        raise NotImplementedError

    async def register(self, asset: MediaAsset) -> MediaAsset:
        """Insert a new row.

        Raises:
            ValueError: If a row with the same id already exists
        """
        raise NotImplementedError

    async def list_by_provider(self, provider: ProviderType, limit: Optional[int] = None) -> List[MediaAsset]:
        """Rows on ``provider``, oldest ``uploaded_at`` first."""
        raise NotImplementedError

    async def count_by_provider(self, provider: ProviderType) -> int:
        raise NotImplementedError

    async def list_all(self) -> List[MediaAsset]:
        """Every row, ordered by id."""
        raise NotImplementedError

    async def list_with_source_url(self) -> List[MediaAsset]:
        """Rows with a non-null source_url."""
        raise NotImplementedError

    async def list_missing_sha256(self, limit: int) -> List[MediaAsset]:
        """Rows without a stored hash, oldest first."""
        raise NotImplementedError

    async def list_for_verification(
        self,
        only_unverified: bool = False,
        limit: Optional[int] = None,
        provider: ProviderType = ProviderType.REMOTE,
    ) -> List[MediaAsset]:
        """Rows on ``provider``, ordered by ``uploaded_at``.

        With ``only_unverified`` only rows whose flag is unknown or missing
        are returned.
        """
        raise NotImplementedError

    async def list_by_verified(
        self, state: VerifiedState, limit: Optional[int] = None, provider: Optional[ProviderType] = None
    ) -> List[MediaAsset]:
        """Rows with the given flag, most recent upload first, optionally on one provider."""
        raise NotImplementedError

    async def update_location(
        self,
        asset_id: str,
        *,
        provider: ProviderType,
        sha256: Optional[str],
        file_size: int,
        relative_path: Optional[str] = None,
    ) -> bool:
        """Point a row at new bytes. Returns False if the row is gone."""
        raise NotImplementedError

    async def update_sha256(self, asset_id: str, sha256: str, file_size: Optional[int] = None) -> bool:
        raise NotImplementedError

    async def set_verified(self, asset_ids: Iterable[str], state: VerifiedState, at: Optional[datetime] = None) -> int:
        """Persist the verified flag for a batch of rows. Returns rows updated."""
        raise NotImplementedError

    async def delete_rows(self, asset_ids: Iterable[str]) -> int:
        """Delete rows (never bytes). Returns rows deleted."""
        raise NotImplementedError

    async def counts_by_provider(self) -> Dict[str, int]:
        raise NotImplementedError

    async def counts_by_source(
        self, verified: Optional[VerifiedState] = None, provider: Optional[ProviderType] = None
    ) -> Dict[str, int]:
        """Row counts per origin label, optionally restricted to one verified state and provider."""
        raise NotImplementedError

    async def counts_by_verified(self, provider: Optional[ProviderType] = None) -> Dict[str, int]:
        """Row counts per verified state, optionally on one provider."""
        raise NotImplementedError

    async def total_bytes(self) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        """Close the store connection."""
        raise NotImplementedError


class SQLiteMediaCatalog(MediaCatalog):
    """SQLite-based implementation of the media catalog.

    Blocking sqlite3 calls run in worker threads; a re-entrant lock
    serializes access to the shared connection.
    """

    def __init__(self, path: str, wal_mode: bool = True):
        """Initialize SQLite catalog store.

        Args:
            path: Path to SQLite database file (":memory:" for a private in-memory db)
            wal_mode: If True, enable WAL mode for better concurrency

        Raises:
            sqlite3.Error: If database initialization fails
        """
        self.path = path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

        self.conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
        self.conn.row_factory = sqlite3.Row

        if wal_mode and path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")

        self._init_schema()
        logger.info(f"Initialized SQLite media catalog at {self.path}")

    def _init_schema(self) -> None:
        """Load and execute schema.sql."""
        schema_path = Path(__file__).parent / "schema.sql"
        if not schema_path.exists():
            raise FileNotFoundError(f"Schema file not found: {schema_path}")

        self.conn.executescript(schema_path.read_text())
        self.conn.commit()
        logger.debug("Schema initialized successfully")

    def _query(self, sql: str, params: tuple = ()) -> List[MediaAsset]:
        with self._lock:
            cursor = self.conn.execute(sql, params)
            return [self._row_to_asset(row) for row in cursor.fetchall()]

    def _execute(self, sql: str, params: tuple = ()) -> int:
        with self._lock:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
            return cursor.rowcount

    def _executemany(self, sql: str, rows: List[tuple]) -> int:
        if not rows:
            return 0
        with self._lock:
            cursor = self.conn.executemany(sql, rows)
            self.conn.commit()
            return cursor.rowcount

    def _group_counts(self, column: str, default: str, where: str = "1 = 1", params: tuple = ()) -> Dict[str, int]:
        with self._lock:
            cursor = self.conn.execute(
                f"SELECT COALESCE({column}, ?) AS k, COUNT(*) FROM media_assets "
                f"WHERE {where} GROUP BY k ORDER BY k",
                (default, *params),
            )
            return {row[0]: row[1] for row in cursor.fetchall()}

    def _scalar(self, sql: str, params: tuple = ()) -> int:
        with self._lock:
            value = self.conn.execute(sql, params).fetchone()[0]
            return int(value or 0)

    def _insert(self, asset: MediaAsset) -> MediaAsset:
        asset = replace(
            asset,
            uploaded_at=_to_utc(asset.uploaded_at) or _now(),
            verified_at=_to_utc(asset.verified_at),
        )
        try:
            self._execute(
                f"INSERT INTO media_assets ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    asset.id,
                    asset.person_id,
                    asset.relative_path,
                    ProviderType(asset.storage_provider).value,
                    asset.file_size,
                    asset.sha256,
                    asset.source_url,
                    VerifiedState(asset.verified).value,
                    _iso(asset.verified_at),
                    _iso(asset.uploaded_at),
                    asset.source,
                    asset.mime_type,
                ),
            )
        except sqlite3.IntegrityError as e:
            logger.error(f"Failed to register asset {asset.id}: {e}")
            raise ValueError(f"Failed to register asset {asset.id}: {e}") from e
        return asset

    # Contract

    async def get(self, asset_id: str) -> Optional[MediaAsset]:
        rows = await asyncio.to_thread(
            self._query, f"SELECT {_COLUMNS} FROM media_assets WHERE id = ?", (asset_id,)
        )
        return rows[0] if rows else None

    async def register(self, asset: MediaAsset) -> MediaAsset:
        return await asyncio.to_thread(self._insert, asset)

    async def list_by_provider(self, provider: ProviderType, limit: Optional[int] = None) -> List[MediaAsset]:
        return await asyncio.to_thread(
            self._query,
            f"SELECT {_COLUMNS} FROM media_assets WHERE storage_provider = ? "
            "ORDER BY uploaded_at ASC, id ASC LIMIT ?",
            (ProviderType(provider).value, -1 if limit is None else limit),
        )

    async def count_by_provider(self, provider: ProviderType) -> int:
        return await asyncio.to_thread(
            self._scalar,
            "SELECT COUNT(*) FROM media_assets WHERE storage_provider = ?",
            (ProviderType(provider).value,),
        )

    async def list_all(self) -> List[MediaAsset]:
        return await asyncio.to_thread(self._query, f"SELECT {_COLUMNS} FROM media_assets ORDER BY id ASC")

    async def list_with_source_url(self) -> List[MediaAsset]:
        return await asyncio.to_thread(
            self._query,
            f"SELECT {_COLUMNS} FROM media_assets WHERE source_url IS NOT NULL "
            "ORDER BY source_url, person_id, uploaded_at ASC, id ASC",
        )

    async def list_missing_sha256(self, limit: int) -> List[MediaAsset]:
        return await asyncio.to_thread(
            self._query,
            f"SELECT {_COLUMNS} FROM media_assets WHERE sha256 IS NULL "
            "ORDER BY uploaded_at ASC, id ASC LIMIT ?",
            (limit,),
        )

    async def list_for_verification(
        self,
        only_unverified: bool = False,
        limit: Optional[int] = None,
        provider: ProviderType = ProviderType.REMOTE,
    ) -> List[MediaAsset]:
        where = "storage_provider = ?"
        if only_unverified:
            where += " AND verified IN ('unknown', 'missing')"
        return await asyncio.to_thread(
            self._query,
            f"SELECT {_COLUMNS} FROM media_assets WHERE {where} ORDER BY uploaded_at ASC, id ASC LIMIT ?",
            (ProviderType(provider).value, -1 if limit is None else limit),
        )

    async def list_by_verified(
        self, state: VerifiedState, limit: Optional[int] = None, provider: Optional[ProviderType] = None
    ) -> List[MediaAsset]:
        where, params = _filters(verified=state, provider=provider)
        return await asyncio.to_thread(
            self._query,
            f"SELECT {_COLUMNS} FROM media_assets WHERE {where} ORDER BY uploaded_at DESC, id ASC LIMIT ?",
            (*params, -1 if limit is None else limit),
        )

    async def update_location(
        self,
        asset_id: str,
        *,
        provider: ProviderType,
        sha256: Optional[str],
        file_size: int,
        relative_path: Optional[str] = None,
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE media_assets SET storage_provider = ?, sha256 = ?, file_size = ?, "
            "relative_path = COALESCE(?, relative_path) WHERE id = ?",
            (ProviderType(provider).value, sha256, file_size, relative_path, asset_id),
        )
        return updated > 0

    async def update_sha256(self, asset_id: str, sha256: str, file_size: Optional[int] = None) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE media_assets SET sha256 = ?, file_size = COALESCE(?, file_size) WHERE id = ?",
            (sha256, file_size, asset_id),
        )
        return updated > 0

    async def set_verified(self, asset_ids: Iterable[str], state: VerifiedState, at: Optional[datetime] = None) -> int:
        stamp = _iso(at or _now())
        rows = [(VerifiedState(state).value, stamp, asset_id) for asset_id in asset_ids]
        return await asyncio.to_thread(
            self._executemany,
            "UPDATE media_assets SET verified = ?, verified_at = ? WHERE id = ?",
            rows,
        )

    async def delete_rows(self, asset_ids: Iterable[str]) -> int:
        rows = [(asset_id,) for asset_id in asset_ids]
        deleted = await asyncio.to_thread(self._executemany, "DELETE FROM media_assets WHERE id = ?", rows)
        if deleted:
            logger.info(f"Deleted {deleted} catalog rows")
        return deleted

    async def counts_by_provider(self) -> Dict[str, int]:
        return await asyncio.to_thread(self._group_counts, "storage_provider", "unknown")

    async def counts_by_source(
        self, verified: Optional[VerifiedState] = None, provider: Optional[ProviderType] = None
    ) -> Dict[str, int]:
        where, params = _filters(verified=verified, provider=provider)
        return await asyncio.to_thread(self._group_counts, "source", "unknown", where, params)

    async def counts_by_verified(self, provider: Optional[ProviderType] = None) -> Dict[str, int]:
        where, params = _filters(provider=provider)
        return await asyncio.to_thread(self._group_counts, "verified", "unknown", where, params)

    async def total_bytes(self) -> int:
        return await asyncio.to_thread(self._scalar, "SELECT SUM(file_size) FROM media_assets")

    async def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                logger.debug("Database connection closed")

    @staticmethod
    def _row_to_asset(row: sqlite3.Row) -> MediaAsset:
        """Convert a database row to a MediaAsset."""
        return MediaAsset(
            id=row["id"],
            person_id=row["person_id"],
            relative_path=row["relative_path"],
            storage_provider=ProviderType(row["storage_provider"]),
            file_size=row["file_size"],
            sha256=row["sha256"],
            source_url=row["source_url"],
            verified=VerifiedState(row["verified"]),
            verified_at=_parse(row["verified_at"]),
            uploaded_at=_parse(row["uploaded_at"]),
            source=row["source"],
            mime_type=row["mime_type"],
        )

    async def __aenter__(self) -> "SQLiteMediaCatalog":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
