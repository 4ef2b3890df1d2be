"""Media asset catalog: row model and store implementations."""

from MediaTier.catalog.models import MediaAsset, VerifiedState
from MediaTier.catalog.store import MediaCatalog, SQLiteMediaCatalog

__all__ = ["MediaAsset", "MediaCatalog", "SQLiteMediaCatalog", "VerifiedState"]
