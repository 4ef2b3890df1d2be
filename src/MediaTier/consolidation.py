# === NAVMAP v1 ===
# {
#   "module": "MediaTier.consolidation",
#   "purpose": "Whole-catalog reconciliation: dedup, legacy migration, broken-reference audit.",
#   "sections": [
#     {
#       "id": "duplicategroup",
#       "name": "DuplicateGroup",
#       "anchor": "class-duplicategroup",
#       "kind": "class"
#     },
#     {
#       "id": "catalogsnapshot",
#       "name": "CatalogSnapshot",
#       "anchor": "class-catalogsnapshot",
#       "kind": "class"
#     },
#     {
#       "id": "consolidationservice",
#       "name": "ConsolidationService",
#       "anchor": "class-consolidationservice",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Whole-catalog reconciliation for stored media.

Operations:
- Duplicate detection and removal: rows sharing (source_url, person_id)
  collapse onto the earliest upload. Only catalog rows are deleted, never
  bytes, since duplicate rows may point at the same file.
- Legacy migration: rows still on the deprecated local volume are located
  under known legacy layouts and moved to the remote store.
- Broken-reference scan: read-only existence check of every row. Removal is
  a separate, explicit step that re-checks each reference first.
- Full run: snapshot, dedup, migration, scan, snapshot.

Every mutating operation supports dry-run, which performs the analysis and
commits nothing.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from MediaTier.catalog import MediaAsset, MediaCatalog
from MediaTier.storage.base import ProviderType, ReadResult, StorageProvider
from MediaTier.storage.paths import CANONICAL_ROOT, filename_of
from MediaTier.storage.registry import ProviderRegistry
from MediaTier.transfer import TransferOutcome, TransferService, UsernameLookup

logger = logging.getLogger(__name__)

LEGACY_PEOPLE_ROOT = "people"
SCAN_PROGRESS_EVERY = 1000


# ============================================================================
# Result Types
# ============================================================================


@dataclass(frozen=True)
class DuplicateGroup:
    """Rows sharing one (source_url, person_id); ``keep_id`` is the oldest."""

    source_url: str
    person_id: str
    keep_id: str
    remove_ids: Tuple[str, ...]
    asset_ids: Tuple[str, ...]


@dataclass
class DeduplicationResult:
    groups_found: int = 0
    rows_removed: int = 0
    would_remove: int = 0
    dry_run: bool = True
    errors: List[str] = field(default_factory=list)
    groups: List[DuplicateGroup] = field(default_factory=list)


@dataclass
class MigrationResult:
    """Legacy migration summary.

    ``located`` counts rows whose bytes were found; in a dry run nothing
    else happens to them.
    """

    migrated: int = 0
    failed: int = 0
    skipped: int = 0
    located: int = 0
    dry_run: bool = True
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BrokenReference:
    id: str
    relative_path: str
    storage_provider: ProviderType


@dataclass
class BrokenScanResult:
    """Broken-reference scan. ``unchecked`` rows were not judged either way."""

    checked: int = 0
    broken: List[BrokenReference] = field(default_factory=list)
    unchecked: List[BrokenReference] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class BrokenRemovalResult:
    confirmed: int = 0
    removed: int = 0
    kept: int = 0
    dry_run: bool = True
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CatalogSnapshot:
    """Point-in-time catalog counts."""

    total: int
    by_provider: Dict[str, int]
    by_source: Dict[str, int]
    duplicates: int
    total_bytes: int


@dataclass
class ConsolidationReport:
    started_at: datetime
    dry_run: bool
    before: CatalogSnapshot
    after: CatalogSnapshot
    dedup: DeduplicationResult
    migration: MigrationResult
    broken_scan: BrokenScanResult


# ============================================================================
# Service
# ============================================================================


class ConsolidationService:
    """Reconciles the catalog against the storage providers."""

    def __init__(
        self,
        catalog: MediaCatalog,
        registry: ProviderRegistry,
        transfer: Optional[TransferService] = None,
        username_lookup: Optional[UsernameLookup] = None,
        max_errors: int = 50,
    ):
        """
        Args:
            catalog: Media catalog
            registry: Provider registry
            transfer: Used to move rows found at their canonical path
            username_lookup: Resolves person_id -> username for legacy layouts
            max_errors: Cap on error strings kept per result
        """
        self.catalog = catalog
        self.registry = registry
        self.transfer = transfer
        self.username_lookup = username_lookup
        self.max_errors = max_errors

    def _add_error(self, errors: List[str], message: str) -> None:
        logger.error(message)
        if len(errors) < self.max_errors:
            errors.append(message)

    async def _username(self, person_id: str) -> Optional[str]:
        if self.username_lookup is None:
            return None
        try:
            username = self.username_lookup(person_id)
            if inspect.isawaitable(username):
                username = await username
        except Exception as e:
            logger.warning(f"Username lookup failed for {person_id}: {e}")
            return None
        return username or None

    # Dedup

    async def find_duplicates(self) -> List[DuplicateGroup]:
        """Group rows by (source_url, person_id); rows without a source_url are ignored."""
        grouped: Dict[Tuple[str, str], List[MediaAsset]] = defaultdict(list)
        for asset in await self.catalog.list_with_source_url():
            if asset.source_url:
                grouped[(asset.source_url, asset.person_id)].append(asset)

        groups = []
        for (source_url, person_id), assets in grouped.items():
            if len(assets) < 2:
                continue
            ordered = sorted(assets, key=lambda a: (a.uploaded_at, a.id))
            ids = tuple(a.id for a in ordered)
            groups.append(
                DuplicateGroup(
                    source_url=source_url,
                    person_id=person_id,
                    keep_id=ids[0],
                    remove_ids=ids[1:],
                    asset_ids=ids,
                )
            )

        groups.sort(key=lambda g: (-len(g.asset_ids), g.source_url, g.person_id))
        return groups

    async def remove_duplicates(self, dry_run: bool = True) -> DeduplicationResult:
        """Delete newer duplicate rows (rows only, never bytes)."""
        groups = await self.find_duplicates()
        result = DeduplicationResult(
            groups_found=len(groups),
            would_remove=sum(len(g.remove_ids) for g in groups),
            dry_run=dry_run,
            groups=groups,
        )
        logger.info(f"Found {len(groups)} duplicate groups ({result.would_remove} redundant rows)")

        if dry_run:
            logger.info(f"DRY RUN - would remove {result.would_remove} duplicate rows")
            return result

        for group in groups:
            try:
                result.rows_removed += await self.catalog.delete_rows(group.remove_ids)
            except Exception as e:
                self._add_error(result.errors, f"Failed to remove duplicates for {group.source_url}: {e}")

        logger.info(f"Removed {result.rows_removed} duplicate rows")
        return result

    # Legacy migration

    @staticmethod
    def legacy_candidates(asset: MediaAsset, username: Optional[str]) -> List[str]:
        """Paths the bytes of ``asset`` may live under, most likely first."""
        path = asset.relative_path
        owner = username or asset.person_id
        candidates = [path]
        if not path.startswith(f"{CANONICAL_ROOT}/"):
            candidates.append(f"{CANONICAL_ROOT}/{path}")
        candidates.append(f"{LEGACY_PEOPLE_ROOT}/{owner}/{filename_of(path)}")
        return list(dict.fromkeys(candidates))

    async def _locate(
        self, candidates: Sequence[str], providers: Sequence[StorageProvider]
    ) -> Optional[Tuple[StorageProvider, str, ReadResult]]:
        for provider in providers:
            for candidate in candidates:
                read_result = await provider.read(candidate)
                if read_result is not None:
                    return provider, candidate, read_result
        return None

    async def migrate_legacy(
        self,
        dry_run: bool = True,
        legacy_provider: ProviderType = ProviderType.LOCAL,
    ) -> MigrationResult:
        """Move rows still on ``legacy_provider`` to the remote store.

        Candidates are searched on the legacy provider and then on the cache.
        Rows whose bytes cannot be found are skipped and left untouched.
        """
        result = MigrationResult(dry_run=dry_run)
        assets = await self.catalog.list_by_provider(legacy_provider)
        logger.info(f"Found {len(assets)} {ProviderType(legacy_provider).value} rows to migrate")
        if not assets:
            return result

        search = [
            p
            for p in (self.registry.get(legacy_provider), self.registry.get(ProviderType.CACHE))
            if p is not None
        ]
        remote = self.registry.get(ProviderType.REMOTE)

        if not dry_run and (remote is None or not await remote.is_available()):
            result.failed = len(assets)
            self._add_error(result.errors, "Remote storage provider not available")
            return result

        for asset in assets:
            try:
                username = await self._username(asset.person_id)
                found = await self._locate(self.legacy_candidates(asset, username), search)
                if found is None:
                    result.skipped += 1
                    logger.warning(f"Legacy file not found for {asset.id}: {asset.relative_path}")
                    continue

                result.located += 1
                if dry_run:
                    continue

                provider, location, read_result = found
                if await self._migrate_one(asset, username, provider, location, read_result, remote, result):
                    result.migrated += 1
                else:
                    result.failed += 1
            except Exception as e:
                result.failed += 1
                self._add_error(result.errors, f"Error migrating {asset.id}: {e}")

        logger.info(
            f"Legacy migration{' (dry run)' if dry_run else ''}: {result.migrated} migrated, "
            f"{result.located} located, {result.skipped} skipped, {result.failed} failed"
        )
        return result

    async def _migrate_one(
        self,
        asset: MediaAsset,
        username: Optional[str],
        provider: StorageProvider,
        location: str,
        read_result: ReadResult,
        remote: StorageProvider,
        result: MigrationResult,
    ) -> bool:
        # Bytes at the canonical path keep it; the transfer service moves them
        if location == asset.relative_path and self.transfer is not None:
            transfer_result = await self.transfer.transfer_file(asset.id, provider, remote)
            if transfer_result.outcome != TransferOutcome.TRANSFERRED:
                self._add_error(result.errors, f"Failed to migrate {asset.id}: {transfer_result.error}")
                return False
            logger.info(f"Migrated {asset.id} to remote: {asset.relative_path}")
            return True

        target = f"{LEGACY_PEOPLE_ROOT}/{username or asset.person_id}/migrated/{filename_of(location)}"
        write_result = await remote.write(target, read_result.data, read_result.mime_type)
        if not write_result.success:
            self._add_error(result.errors, f"Failed to upload {asset.id}: {write_result.error}")
            return False

        try:
            stats = await remote.get_stats(target)
            if stats is None or stats.sha256 != write_result.sha256:
                await self._discard(remote, target)
                self._add_error(result.errors, f"SHA256 verification failed for {asset.id}")
                return False

            committed = await self.catalog.update_location(
                asset.id,
                provider=remote.type,
                sha256=write_result.sha256,
                file_size=write_result.size,
                relative_path=target,
            )
        except Exception:
            await self._discard(remote, target)
            raise

        if not committed:
            await self._discard(remote, target)
            self._add_error(result.errors, f"Asset {asset.id} removed from catalog during migration")
            return False

        logger.info(f"Migrated {asset.id} to remote: {target}")
        return True

    async def _discard(self, provider: StorageProvider, relative_path: str) -> None:
        try:
            await provider.delete(relative_path)
        except Exception as e:  # keep the original error
            logger.warning(f"Failed to remove uncommitted copy {relative_path} from {provider.type.value}: {e}")

    # Broken references

    async def scan_broken(self) -> BrokenScanResult:
        """Check every row against the provider it claims. Never mutates."""
        result = BrokenScanResult()
        assets = await self.catalog.list_all()
        logger.info(f"Checking {len(assets)} rows for broken references...")

        for index, asset in enumerate(assets, start=1):
            if index % SCAN_PROGRESS_EVERY == 0:
                logger.info(f"Checked {index}/{len(assets)} rows...")

            ref = BrokenReference(asset.id, asset.relative_path, asset.storage_provider)
            provider = self.registry.get(asset.storage_provider)
            if provider is None:
                result.unchecked.append(ref)
                continue

            try:
                exists = await provider.exists(asset.relative_path)
            except Exception as e:
                result.unchecked.append(ref)
                self._add_error(result.errors, f"Existence check failed for {asset.id}: {e}")
                continue

            result.checked += 1
            if not exists:
                result.broken.append(ref)

        logger.info(
            f"Found {len(result.broken)} broken references "
            f"({result.checked} checked, {len(result.unchecked)} unchecked)"
        )
        return result

    async def remove_broken(
        self, references: Sequence[BrokenReference], dry_run: bool = True
    ) -> BrokenRemovalResult:
        """Delete rows for references that are still broken on re-check."""
        result = BrokenRemovalResult(dry_run=dry_run)

        for ref in references:
            asset = await self.catalog.get(ref.id)
            if asset is None:
                continue
            provider = self.registry.get(asset.storage_provider)
            if provider is None:
                result.kept += 1
                continue
            try:
                if await provider.exists(asset.relative_path):
                    result.kept += 1
                    continue
            except Exception as e:
                result.kept += 1
                self._add_error(result.errors, f"Re-check failed for {asset.id}: {e}")
                continue

            result.confirmed += 1
            if dry_run:
                continue
            try:
                result.removed += await self.catalog.delete_rows([asset.id])
            except Exception as e:
                self._add_error(result.errors, f"Failed to remove {asset.id}: {e}")

        if dry_run:
            logger.info(f"DRY RUN - would remove {result.confirmed} broken rows")
        else:
            logger.info(f"Removed {result.removed} broken rows ({result.kept} kept)")
        return result

    # Reporting

    async def snapshot(self) -> CatalogSnapshot:
        by_provider = await self.catalog.counts_by_provider()
        return CatalogSnapshot(
            total=sum(by_provider.values()),
            by_provider=by_provider,
            by_source=await self.catalog.counts_by_source(),
            duplicates=len(await self.find_duplicates()),
            total_bytes=await self.catalog.total_bytes(),
        )

    async def run_full_consolidation(self, dry_run: bool = True) -> ConsolidationReport:
        """Dedup, legacy migration and broken scan, bracketed by snapshots.

        The broken scan is report-only; use :meth:`remove_broken` to act on it.
        """
        started_at = datetime.now(timezone.utc)
        logger.info(f"Starting full consolidation (dry_run={dry_run})")

        before = await self.snapshot()
        dedup = await self.remove_duplicates(dry_run=dry_run)
        migration = await self.migrate_legacy(dry_run=dry_run)
        broken_scan = await self.scan_broken()
        after = await self.snapshot()

        logger.info(
            f"Consolidation complete: {dedup.rows_removed} duplicates removed, "
            f"{migration.migrated} migrated, {len(broken_scan.broken)} broken references found"
        )
        return ConsolidationReport(
            started_at=started_at,
            dry_run=dry_run,
            before=before,
            after=after,
            dedup=dedup,
            migration=migration,
            broken_scan=broken_scan,
        )
