# === NAVMAP v1 ===
# {
#   "module": "MediaTier.errors",
#   "purpose": "Exception taxonomy for storage providers and services.",
#   "sections": [
#     {
#       "id": "storageerror",
#       "name": "StorageError",
#       "anchor": "class-storageerror",
#       "kind": "class"
#     },
#     {
#       "id": "providerunavailableerror",
#       "name": "ProviderUnavailableError",
#       "anchor": "class-providerunavailableerror",
#       "kind": "class"
#     },
#     {
#       "id": "providernotconfigurederror",
#       "name": "ProviderNotConfiguredError",
#       "anchor": "class-providernotconfigurederror",
#       "kind": "class"
#     },
#     {
#       "id": "unexpectedioerror",
#       "name": "UnexpectedIOError",
#       "anchor": "class-unexpectedioerror",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""
Exception taxonomy for storage providers and services.

Expected failure modes (missing source bytes, hash mismatch after a write,
a disabled provider) are reported through result values such as
:class:`~MediaTier.storage.base.WriteResult` and
:class:`~MediaTier.transfer.TransferResult`. The exceptions below cover the
remaining cases:

- :class:`ProviderUnavailableError` is raised only while choosing a provider,
  never in the middle of a transfer.
- :class:`UnexpectedIOError` wraps permission, connectivity and other
  unexpected I/O failures. It propagates to the caller, who decides whether
  to retry; it aborts only the asset being processed.
"""

from __future__ import annotations

from typing import Optional

__all__ = (
    "StorageError",
    "ProviderUnavailableError",
    "ProviderNotConfiguredError",
    "UnexpectedIOError",
)


class StorageError(Exception):
    """Base exception for storage-related errors."""

    pass


class ProviderUnavailableError(StorageError):
    """A provider required for routing is configured but not reachable."""

    def __init__(self, provider: str, message: Optional[str] = None):
        super().__init__(message or f"Storage provider '{provider}' is not available")
        self.provider = provider


class ProviderNotConfiguredError(StorageError):
    """A provider type was requested that the registry never built."""

    def __init__(self, provider: str):
        super().__init__(f"Storage provider '{provider}' is not configured")
        self.provider = provider


class UnexpectedIOError(StorageError):
    """Unexpected I/O failure on a provider (permission, network, device)."""

    def __init__(self, message: str, *, provider: Optional[str] = None, path: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.path = path
