"""
Pydantic v2 Settings Models for MediaTier

Typed, strict settings for the storage subsystem:
- Global storage mode (favor local vs favor remote)
- Local volume and SSD cache roots and enable flags
- S3 bucket/region/prefix for the remote object store
- Transfer defaults (batch size, symlinks, source cleanup)

All models use extra="forbid" for strict validation. The values are injected
by the caller (settings collaborator, CLI options, environment); this package
never reads configuration files itself.
"""

from __future__ import annotations

from typing import ClassVar, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ============================================================================
# Provider Settings
# ============================================================================


class LocalVolumeSettings(BaseModel):
    """Container-local volume (baseline, deprecated for new writes)."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    enabled: bool = Field(default=True, description="Build the local volume provider")
    root: str = Field(default="/app/data/images", description="Root directory of the volume")

    @field_validator("root")
    @classmethod
    def validate_root(cls, v: str) -> str:
        """Root path must be non-empty."""
        if not v or not v.strip():
            raise ValueError("root must be a non-empty path")
        return v


class CacheSettings(BaseModel):
    """Removable SSD cache."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    enabled: bool = Field(default=True, description="Build the SSD cache provider")
    root: str = Field(default="/mnt/ssd/media", description="Mount point of the SSD cache")
    availability_ttl_s: float = Field(
        default=5.0,
        description="Seconds an availability probe result is reused",
    )

    @field_validator("root")
    @classmethod
    def validate_root(cls, v: str) -> str:
        """Root path must be non-empty."""
        if not v or not v.strip():
            raise ValueError("root must be a non-empty path")
        return v

    @field_validator("availability_ttl_s")
    @classmethod
    def validate_ttl(cls, v: float) -> float:
        """TTL must be non-negative."""
        if v < 0:
            raise ValueError("availability_ttl_s must be >= 0")
        return v


class RemoteSettings(BaseModel):
    """Private S3 bucket used as the remote object store."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    enabled: bool = Field(default=False, description="Build the S3 provider")
    bucket: str = Field(default="", description="S3 bucket name (required if enabled)")
    region: str = Field(default="us-east-1", description="AWS region")
    prefix: str = Field(default="media/", description="Object key prefix")
    endpoint_url: Optional[str] = Field(
        default=None,
        description="Custom endpoint for S3-compatible stores",
    )
    presigned_ttl_s: int = Field(
        default=3600,
        description="Lifetime of presigned serve URLs in seconds",
    )

    @field_validator("prefix")
    @classmethod
    def normalize_prefix(cls, v: str) -> str:
        """Prefix is stored without a leading slash and with one trailing slash."""
        v = v.strip().lstrip("/")
        if not v:
            return ""
        return v.rstrip("/") + "/"

    @field_validator("presigned_ttl_s")
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        """Presigned URLs must live at least one second and at most 7 days."""
        if v < 1 or v > 7 * 24 * 3600:
            raise ValueError("presigned_ttl_s must be between 1 and 604800")
        return v

    @model_validator(mode="after")
    def require_bucket_when_enabled(self) -> "RemoteSettings":
        if self.enabled and not self.bucket:
            raise ValueError("bucket is required when the remote provider is enabled")
        return self


# ============================================================================
# Service Settings
# ============================================================================


class TransferSettings(BaseModel):
    """Defaults for transfer and reconciliation runs."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    batch_size: int = Field(default=100, description="Rows per batch transfer")
    create_symlinks: bool = Field(
        default=True,
        description="Create username symlinks on symlink-capable destinations",
    )
    delete_source: bool = Field(
        default=True,
        description="Delete source bytes after a committed transfer",
    )
    max_reported_errors: int = Field(
        default=50,
        description="Cap on error strings kept in run summaries",
    )

    @field_validator("batch_size", "max_reported_errors")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Sizes must be positive."""
        if v < 1:
            raise ValueError("must be >= 1")
        return v


# ============================================================================
# Top-Level Settings
# ============================================================================


class StorageSettings(BaseModel):
    """Complete storage configuration injected into the registry and services."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    mode: Literal["local", "remote"] = Field(
        default="remote",
        description="Global storage mode: favor local cache or remote object store",
    )
    local: LocalVolumeSettings = Field(default_factory=LocalVolumeSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    remote: RemoteSettings = Field(default_factory=RemoteSettings)
    transfer: TransferSettings = Field(default_factory=TransferSettings)
