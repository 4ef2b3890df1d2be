# === NAVMAP v1 ===
# {
#   "module": "MediaTier.storage.registry",
#   "purpose": "Provider registry and auto-destination routing policy.",
#   "sections": [
#     {
#       "id": "providerregistry",
#       "name": "ProviderRegistry",
#       "anchor": "class-providerregistry",
#       "kind": "class"
#     },
#     {
#       "id": "build-registry",
#       "name": "build_registry",
#       "anchor": "function-build-registry",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""
Provider Registry - Factory Pattern

A constructed object holding the providers built from
:class:`~MediaTier.settings.StorageSettings`. Services receive the registry
by injection; there is no process-wide singleton.

Routing policy (auto destination):
- mode == "remote" and the remote store is enabled and reachable -> remote
- else the SSD cache when enabled and reachable -> cache
- else None (the caller decides; the local volume is never auto-selected)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from MediaTier.errors import ProviderNotConfiguredError, ProviderUnavailableError
from MediaTier.settings import StorageSettings
from MediaTier.storage.base import ProviderType, StorageProvider

logger = logging.getLogger(__name__)

# Lookup order when the owning provider of a path is unknown
_SEARCH_ORDER = (ProviderType.CACHE, ProviderType.REMOTE, ProviderType.LOCAL)


class ProviderRegistry:
    """Resolves providers by type and applies the auto-destination policy."""

    def __init__(self, providers: Iterable[StorageProvider], mode: str = "remote"):
        """
        Args:
            providers: Built providers; at most one per ProviderType
            mode: Global storage mode, "local" or "remote"
        """
        self.mode = mode
        self._providers: Dict[ProviderType, StorageProvider] = {}
        for provider in providers:
            if provider.type in self._providers:
                raise ValueError(f"Duplicate provider for type '{provider.type.value}'")
            self._providers[provider.type] = provider

    def get(self, provider_type: ProviderType | str) -> Optional[StorageProvider]:
        """Provider for ``provider_type``, or None if it was not built."""
        try:
            key = ProviderType(provider_type)
        except ValueError:
            return None
        return self._providers.get(key)

    def configured(self, provider_type: ProviderType | str) -> StorageProvider:
        """Provider for ``provider_type``.

        Raises:
            ProviderNotConfiguredError: If the provider was never built
        """
        provider = self.get(provider_type)
        if provider is None:
            raise ProviderNotConfiguredError(str(getattr(provider_type, "value", provider_type)))
        return provider

    async def require(self, provider_type: ProviderType | str) -> StorageProvider:
        """Configured *and* reachable provider for ``provider_type``.

        Raises:
            ProviderNotConfiguredError: If the provider was never built
            ProviderUnavailableError: If it is built but not reachable
        """
        provider = self.configured(provider_type)
        if not await provider.is_available():
            raise ProviderUnavailableError(provider.type.value)
        return provider

    def providers(self) -> List[StorageProvider]:
        return list(self._providers.values())

    async def auto_destination(self) -> Optional[StorageProvider]:
        """Pick the destination for new writes and automatic transfers."""
        remote = self._providers.get(ProviderType.REMOTE)
        if self.mode == "remote" and remote is not None and await remote.is_available():
            return remote

        cache = self._providers.get(ProviderType.CACHE)
        if cache is not None and await cache.is_available():
            return cache

        logger.warning("No automatic storage destination is available")
        return None

    async def find_provider_for_file(self, relative_path: str) -> Optional[StorageProvider]:
        """First configured provider that currently holds ``relative_path``."""
        for provider_type in _SEARCH_ORDER:
            provider = self._providers.get(provider_type)
            if provider is None:
                continue
            if await provider.exists(relative_path):
                return provider
        return None

    async def status(self) -> Dict[str, Dict[str, Any]]:
        """Configuration and availability of every provider type."""
        report: Dict[str, Dict[str, Any]] = {}
        for provider_type in ProviderType:
            provider = self._providers.get(provider_type)
            entry: Dict[str, Any] = {
                "configured": provider is not None,
                "available": bool(provider is not None and await provider.is_available()),
            }
            if provider is not None and hasattr(provider, "last_error"):
                entry["last_error"] = provider.last_error
            report[provider_type.value] = entry
        return report


def build_registry(settings: StorageSettings, s3_client: Any = None) -> ProviderRegistry:
    """Build providers from settings.

    Args:
        settings: Storage settings
        s3_client: Optional pre-built S3 client (tests, custom sessions)

    Returns:
        ProviderRegistry holding every enabled provider
    """
    providers: List[StorageProvider] = []

    if settings.local.enabled:
        from MediaTier.storage.local_provider import LocalVolumeProvider

        providers.append(LocalVolumeProvider(settings.local.root))

    if settings.cache.enabled:
        from MediaTier.storage.cache_provider import CacheProvider

        providers.append(
            CacheProvider(
                settings.cache.root,
                availability_ttl_s=settings.cache.availability_ttl_s,
            )
        )

    if settings.remote.enabled:
        from MediaTier.storage.s3_provider import S3Provider

        providers.append(
            S3Provider(
                bucket=settings.remote.bucket,
                region=settings.remote.region,
                prefix=settings.remote.prefix,
                presigned_ttl_s=settings.remote.presigned_ttl_s,
                endpoint_url=settings.remote.endpoint_url,
                client=s3_client,
            )
        )

    logger.info(
        f"Built storage registry (mode={settings.mode}): "
        f"{', '.join(p.type.value for p in providers) or 'no providers'}"
    )
    return ProviderRegistry(providers, mode=settings.mode)
