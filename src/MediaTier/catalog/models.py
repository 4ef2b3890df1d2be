"""Catalog row model for stored media assets."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from MediaTier.storage.base import ProviderType


class VerifiedState(str, Enum):
    """Result of the last remote existence check."""

    UNKNOWN = "unknown"
    PRESENT = "present"
    MISSING = "missing"


@dataclass(frozen=True)
class MediaAsset:
    """A catalog record for one stored media file.

    Attributes:
        id: Opaque, stable asset identifier
        person_id: Owning subject
        relative_path: Canonical path of the bytes
        storage_provider: Provider currently holding the bytes
        sha256: Hex digest of the bytes on ``storage_provider`` (None until backfilled)
        file_size: Size in bytes
        source_url: Origin URL; duplicates share (source_url, person_id)
        verified: Tri-state result of the last remote check
        verified_at: When ``verified`` was last written
        uploaded_at: When the asset was first stored
        source: Origin label, e.g. 'affiliate_api' or 'manual_upload'
        mime_type: Stored content type
    """

    id: str
    person_id: str
    relative_path: str
    storage_provider: ProviderType
    file_size: int = 0
    sha256: Optional[str] = None
    source_url: Optional[str] = None
    verified: VerifiedState = VerifiedState.UNKNOWN
    verified_at: Optional[datetime] = None
    uploaded_at: Optional[datetime] = None
    source: Optional[str] = None
    mime_type: Optional[str] = None

    def with_location(
        self,
        provider: ProviderType,
        sha256: Optional[str],
        file_size: int,
        relative_path: Optional[str] = None,
    ) -> "MediaAsset":
        """Copy of this record moved to another provider."""
        return replace(
            self,
            storage_provider=provider,
            sha256=sha256,
            file_size=file_size,
            relative_path=relative_path or self.relative_path,
        )
