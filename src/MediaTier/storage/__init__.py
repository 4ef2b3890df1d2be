"""
Storage providers for MediaTier.

Public API:
  - StorageProvider / SymlinkCapable: provider contract
  - LocalVolumeProvider, CacheProvider, S3Provider: concrete backends
  - ProviderRegistry / build_registry: construction and routing
  - generate_canonical_path / parse_canonical_path: path scheme
"""

from MediaTier.storage.base import (
    FileStats,
    ProviderType,
    ReadResult,
    StorageProvider,
    SymlinkCapable,
    WriteResult,
    supports_symlinks,
)
from MediaTier.storage.cache_provider import CacheProvider, DiskSpace
from MediaTier.storage.local_provider import LocalVolumeProvider
from MediaTier.storage.paths import (
    CanonicalPath,
    compute_sha256,
    generate_canonical_path,
    guess_mime_type,
    parse_canonical_path,
)
from MediaTier.storage.registry import ProviderRegistry, build_registry
from MediaTier.storage.s3_provider import S3Provider

__all__ = [
    "CacheProvider",
    "CanonicalPath",
    "DiskSpace",
    "FileStats",
    "LocalVolumeProvider",
    "ProviderRegistry",
    "ProviderType",
    "ReadResult",
    "S3Provider",
    "StorageProvider",
    "SymlinkCapable",
    "WriteResult",
    "build_registry",
    "compute_sha256",
    "generate_canonical_path",
    "guess_mime_type",
    "parse_canonical_path",
    "supports_symlinks",
]
