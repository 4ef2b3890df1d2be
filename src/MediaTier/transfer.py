# === NAVMAP v1 ===
# {
#   "module": "MediaTier.transfer",
#   "purpose": "Verified transfer of media assets between storage providers.",
#   "sections": [
#     {
#       "id": "transferoutcome",
#       "name": "TransferOutcome",
#       "anchor": "class-transferoutcome",
#       "kind": "class"
#     },
#     {
#       "id": "transfercounters",
#       "name": "TransferCounters",
#       "anchor": "class-transfercounters",
#       "kind": "class"
#     },
#     {
#       "id": "transferservice",
#       "name": "TransferService",
#       "anchor": "class-transferservice",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Verified transfer of media assets between storage providers.

Every transfer follows copy -> verify -> commit -> delete:

1. Read the bytes from the source provider
2. Write them to the destination provider
3. Re-stat the destination and compare SHA-256 with the write result
4. Point the catalog row at the destination
5. Delete the source copy (best effort, only after the commit)
6. Refresh the username symlink on symlink-capable destinations

A failure before step 4 leaves the source and the row untouched and removes
any destination copy, so an asset is never left without a verified home.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from MediaTier.catalog import MediaAsset, MediaCatalog
from MediaTier.errors import StorageError
from MediaTier.settings import TransferSettings
from MediaTier.storage.base import ProviderType, StorageProvider, supports_symlinks
from MediaTier.storage.registry import ProviderRegistry

logger = logging.getLogger(__name__)

UsernameLookup = Callable[[str], Union[Optional[str], Awaitable[Optional[str]]]]
ProgressCallback = Callable[[int, int, Optional["TransferResult"]], None]


class TransferOutcome(str, Enum):
    """Outcome of a single-asset transfer."""

    TRANSFERRED = "transferred"
    SKIPPED = "skipped"
    NOT_FOUND = "not_found"
    SOURCE_MISSING = "source_missing"
    WRITE_FAILED = "write_failed"
    VERIFICATION_MISMATCH = "verification_mismatch"


@dataclass(frozen=True)
class TransferResult:
    """Result of a single-asset transfer.

    ``size`` and ``sha256`` describe the destination copy and are only set
    for a completed transfer.
    """

    asset_id: str
    outcome: TransferOutcome
    source: ProviderType
    destination: ProviderType
    relative_path: str = ""
    size: int = 0
    sha256: str = ""
    error: Optional[str] = None
    symlink_created: bool = False

    @property
    def success(self) -> bool:
        return self.outcome in (TransferOutcome.TRANSFERRED, TransferOutcome.SKIPPED)


@dataclass
class TransferProgress:
    current: int
    total: int


@dataclass
class TransferCounters:
    """Running statistics owned by the caller and threaded through calls."""

    transferred: int = 0
    failed: int = 0
    skipped: int = 0
    last_error: Optional[str] = None
    last_run_at: Optional[datetime] = None
    progress: Optional[TransferProgress] = None

    def record(self, result: TransferResult) -> None:
        if result.outcome == TransferOutcome.TRANSFERRED:
            self.transferred += 1
            self.last_run_at = datetime.now(timezone.utc)
        elif result.outcome == TransferOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            self.last_error = result.error

    def record_error(self, error: str) -> None:
        self.failed += 1
        self.last_error = error


@dataclass
class BatchTransferResult:
    """Summary of a batch transfer."""

    transferred: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BackfillResult:
    updated: int
    failed: int


class TransferService:
    """Moves assets between providers with verify-before-commit semantics."""

    def __init__(
        self,
        catalog: MediaCatalog,
        registry: ProviderRegistry,
        username_lookup: Optional[UsernameLookup] = None,
        options: Optional[TransferSettings] = None,
    ):
        """
        Args:
            catalog: Media catalog
            registry: Provider registry used for batch and backfill lookups
            username_lookup: Resolves a person_id to a username for symlinks
            options: Transfer defaults (symlinks, source cleanup, batch size)
        """
        self.catalog = catalog
        self.registry = registry
        self.username_lookup = username_lookup
        self.options = options or TransferSettings()

    async def resolve_username(self, person_id: str) -> Optional[str]:
        """Username for ``person_id``, or None if unknown or the lookup fails."""
        if self.username_lookup is None:
            return None
        try:
            username = self.username_lookup(person_id)
            if inspect.isawaitable(username):
                username = await username
        except Exception as e:  # symlinks are optional
            logger.warning(f"Username lookup failed for {person_id}: {e}")
            return None
        return username or None

    async def _discard(self, provider: StorageProvider, relative_path: str) -> None:
        try:
            await provider.delete(relative_path)
        except Exception as e:  # keep the original error
            logger.warning(f"Failed to remove unverified copy {relative_path} from {provider.type.value}: {e}")

    async def transfer_file(
        self,
        asset_id: str,
        source: StorageProvider,
        destination: StorageProvider,
        counters: Optional[TransferCounters] = None,
    ) -> TransferResult:
        """Transfer one asset from ``source`` to ``destination``.

        Returns:
            TransferResult describing the outcome

        Raises:
            UnexpectedIOError: On provider I/O failures (the asset is left
                on the source and any destination copy is removed)
        """
        counters = counters if counters is not None else TransferCounters()

        def finish(outcome: TransferOutcome, relative_path: str = "", **kwargs) -> TransferResult:
            result = TransferResult(
                asset_id=asset_id,
                outcome=outcome,
                source=source.type,
                destination=destination.type,
                relative_path=relative_path,
                **kwargs,
            )
            counters.record(result)
            return result

        asset = await self.catalog.get(asset_id)
        if asset is None:
            return finish(TransferOutcome.NOT_FOUND, error="Asset not found in catalog")

        path = asset.relative_path
        if asset.storage_provider == destination.type:
            logger.debug(f"Skipping {asset_id}: already on {destination.type.value}")
            return finish(TransferOutcome.SKIPPED, path, sha256=asset.sha256 or "")

        written = False
        try:
            read_result = await source.read(path)
            if read_result is None:
                logger.warning(f"Source file missing for {asset_id}: {path} on {source.type.value}")
                return finish(TransferOutcome.SOURCE_MISSING, path, error="File not found on source provider")

            write_result = await destination.write(path, read_result.data, read_result.mime_type)
            if not write_result.success:
                logger.error(f"Write failed for {asset_id} on {destination.type.value}: {write_result.error}")
                return finish(TransferOutcome.WRITE_FAILED, path, error=f"Write failed: {write_result.error}")
            written = True

            dest_stats = await destination.get_stats(path)
            if dest_stats is None or dest_stats.sha256 != write_result.sha256:
                logger.error(f"SHA-256 verification failed for {asset_id} on {destination.type.value}")
                await self._discard(destination, path)
                return finish(
                    TransferOutcome.VERIFICATION_MISMATCH, path, error="SHA256 verification failed"
                )

            committed = await self.catalog.update_location(
                asset.id,
                provider=destination.type,
                sha256=write_result.sha256,
                file_size=write_result.size,
            )
            if not committed:
                await self._discard(destination, path)
                return finish(TransferOutcome.NOT_FOUND, path, error="Asset removed from catalog during transfer")
        except Exception as e:
            if written:
                await self._discard(destination, path)
            counters.record_error(str(e))
            logger.error(f"Transfer failed for {asset_id}: {e}")
            raise

        await self._after_commit(asset, source, destination)
        symlink_created = await self._refresh_symlink(asset, destination)

        logger.info(f"Transferred {path} from {source.type.value} to {destination.type.value}")
        return finish(
            TransferOutcome.TRANSFERRED,
            path,
            size=write_result.size,
            sha256=write_result.sha256,
            symlink_created=symlink_created,
        )

    async def _after_commit(self, asset: MediaAsset, source: StorageProvider, destination: StorageProvider) -> None:
        """Best-effort cleanup of the source copy and its username symlink."""
        if not self.options.delete_source:
            return

        path = asset.relative_path
        try:
            if not await source.delete(path):
                logger.warning(f"Failed to delete source file: {path}")
        except Exception as e:  # the row already points at the destination
            logger.warning(f"Failed to delete source file {path}: {e}")

        if supports_symlinks(source):
            username = await self.resolve_username(asset.person_id)
            if username:
                try:
                    await source.remove_symlink(path, username)
                except Exception as e:
                    logger.warning(f"Failed to remove stale symlink for {path}: {e}")

    async def _refresh_symlink(self, asset: MediaAsset, destination: StorageProvider) -> bool:
        if not (self.options.create_symlinks and supports_symlinks(destination)):
            return False
        username = await self.resolve_username(asset.person_id)
        if not username:
            return False
        try:
            return await destination.create_symlink(asset.relative_path, username)
        except Exception as e:
            logger.warning(f"Failed to create symlink for {asset.relative_path}: {e}")
            return False

    async def transfer_batch(
        self,
        source_type: ProviderType | str,
        destination_type: ProviderType | str,
        batch_size: Optional[int] = None,
        counters: Optional[TransferCounters] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BatchTransferResult:
        """Transfer up to ``batch_size`` assets, oldest first.

        A failure on one asset never aborts the batch; it is counted and
        its message kept (up to ``options.max_reported_errors``).
        """
        counters = counters if counters is not None else TransferCounters()
        batch_size = batch_size or self.options.batch_size
        result = BatchTransferResult()

        try:
            source = await self.registry.require(source_type)
            destination = await self.registry.require(destination_type)
        except StorageError as e:
            logger.error(f"Invalid providers: {source_type} -> {destination_type}: {e}")
            result.errors.append(str(e))
            return result

        assets = await self.catalog.list_by_provider(source.type, limit=batch_size)
        counters.progress = TransferProgress(current=0, total=len(assets))
        logger.info(
            f"Starting batch transfer of {len(assets)} assets: {source.type.value} -> {destination.type.value}"
        )

        for asset in assets:
            transfer_result: Optional[TransferResult] = None
            try:
                transfer_result = await self.transfer_file(asset.id, source, destination, counters)
            except Exception as e:  # per-asset failures never abort the batch
                result.failed += 1
                self._add_error(result.errors, f"{asset.id}: {e}")
            else:
                if transfer_result.outcome == TransferOutcome.TRANSFERRED:
                    result.transferred += 1
                elif transfer_result.outcome == TransferOutcome.SKIPPED:
                    result.skipped += 1
                else:
                    result.failed += 1
                    self._add_error(result.errors, f"{asset.id}: {transfer_result.error}")

            counters.progress.current += 1
            if progress_callback is not None:
                progress_callback(counters.progress.current, counters.progress.total, transfer_result)

        counters.progress = None
        counters.last_run_at = datetime.now(timezone.utc)
        logger.info(
            f"Batch transfer complete: {result.transferred} transferred, "
            f"{result.failed} failed, {result.skipped} skipped"
        )
        return result

    def _add_error(self, errors: List[str], message: str) -> None:
        if len(errors) < self.options.max_reported_errors:
            errors.append(message)

    async def pending_count(self, source_type: ProviderType | str) -> int:
        """Number of assets still held by ``source_type``."""
        return await self.catalog.count_by_provider(ProviderType(source_type))

    async def backfill_sha256(self, batch_size: int = 100) -> BackfillResult:
        """Compute and store hashes for rows that have none."""
        assets = await self.catalog.list_missing_sha256(batch_size)
        updated = 0
        failed = 0

        for asset in assets:
            provider = self.registry.get(asset.storage_provider)
            if provider is None:
                logger.warning(f"No provider configured for {asset.id} ({asset.storage_provider.value})")
                failed += 1
                continue
            try:
                stats = await provider.get_stats(asset.relative_path)
                if stats is None:
                    logger.warning(f"File missing during SHA-256 backfill: {asset.relative_path}")
                    failed += 1
                    continue
                await self.catalog.update_sha256(asset.id, stats.sha256, stats.size)
                updated += 1
            except Exception as e:
                logger.error(f"Failed to backfill SHA-256 for {asset.id}: {e}")
                failed += 1

        logger.info(f"SHA-256 backfill: {updated} updated, {failed} failed")
        return BackfillResult(updated=updated, failed=failed)
