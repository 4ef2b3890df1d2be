# === NAVMAP v1 ===
# {
#   "module": "MediaTier.verification",
#   "purpose": "Batch audit of remote existence for catalog rows.",
#   "sections": [
#     {
#       "id": "verificationrunresult",
#       "name": "VerificationRunResult",
#       "anchor": "class-verificationrunresult",
#       "kind": "class"
#     },
#     {
#       "id": "remoteverificationtool",
#       "name": "RemoteVerificationTool",
#       "anchor": "class-remoteverificationtool",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Batch audit of remote existence for catalog rows.

Re-checks, for every row held by the audited provider, whether the object is
really there and persists the tri-state ``verified`` flag:
  - Bounded batches: flags are written every ``batch_size`` checks
  - Incremental runs: ``only_unverified`` skips rows already seen present
  - A failed check leaves the row's flag untouched

A ``missing`` flag is informational; nothing here deletes rows.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from MediaTier.catalog import MediaAsset, MediaCatalog, VerifiedState
from MediaTier.storage.base import StorageProvider

logger = logging.getLogger(__name__)

MAX_LOGGED_ERRORS = 10


@dataclass(frozen=True)
class VerificationRunResult:
    """Summary of a verification pass."""

    checked: int
    present: int
    missing: int
    errors: int
    duration_s: float
    dry_run: bool = False


@dataclass
class VerificationReport:
    """Totals by verified state plus a sample of recently missing rows."""

    total: int
    present: int
    missing: int
    unchecked: int
    missing_by_source: Dict[str, int] = field(default_factory=dict)
    missing_sample: List[MediaAsset] = field(default_factory=list)

    def percent(self, count: int) -> float:
        return round(count * 100 / self.total, 1) if self.total else 0.0


class RemoteVerificationTool:
    """Audits one provider through the provider contract only."""

    def __init__(self, catalog: MediaCatalog, provider: StorageProvider):
        """Initialize verification tool.

        Args:
            catalog: Media catalog
            provider: Provider whose rows are audited (normally remote)
        """
        self.catalog = catalog
        self.provider = provider

    async def analyze(self) -> Dict[str, Any]:
        """Counts by verified state of the audited provider's rows."""
        counts = await self.catalog.counts_by_verified(provider=self.provider.type)
        total = sum(counts.values())
        return {
            "total": total,
            "unverified": counts.get(VerifiedState.UNKNOWN.value, 0),
            "present": counts.get(VerifiedState.PRESENT.value, 0),
            "missing": counts.get(VerifiedState.MISSING.value, 0),
        }

    async def _flush(self, present: List[str], missing: List[str], dry_run: bool) -> None:
        if not dry_run:
            if present:
                await self.catalog.set_verified(present, VerifiedState.PRESENT)
            if missing:
                await self.catalog.set_verified(missing, VerifiedState.MISSING)
        present.clear()
        missing.clear()

    async def verify(
        self,
        batch_size: int = 100,
        only_unverified: bool = False,
        limit: Optional[int] = None,
        dry_run: bool = False,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> VerificationRunResult:
        """Check existence of every selected row and persist the flags.

        Args:
            batch_size: Checks between flag writes
            only_unverified: Only re-check rows flagged unknown or missing
            limit: Maximum rows to check
            dry_run: Check but write nothing
            progress_callback: Called with (checked, total) after each batch

        Returns:
            VerificationRunResult
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        start = time.monotonic()
        assets = await self.catalog.list_for_verification(
            only_unverified=only_unverified, limit=limit, provider=self.provider.type
        )
        total = len(assets)
        logger.info(
            f"Verifying {total} rows on {self.provider.type.value}"
            f"{' (dry run)' if dry_run else ''} (batch_size={batch_size}, only_unverified={only_unverified})"
        )

        checked = present_count = missing_count = errors = 0
        present: List[str] = []
        missing: List[str] = []

        for asset in assets:
            try:
                exists = await self.provider.exists(asset.relative_path)
            except Exception as e:  # leave the flag untouched
                errors += 1
                if errors <= MAX_LOGGED_ERRORS:
                    logger.error(f"Error checking {asset.relative_path}: {e}")
                checked += 1
                continue

            checked += 1
            if exists:
                present_count += 1
                present.append(asset.id)
            else:
                missing_count += 1
                missing.append(asset.id)

            if len(present) + len(missing) >= batch_size:
                await self._flush(present, missing, dry_run)
                logger.info(
                    f"Checked {checked}/{total} (present: {present_count}, "
                    f"missing: {missing_count}, errors: {errors})"
                )
                if progress_callback is not None:
                    progress_callback(checked, total)

        await self._flush(present, missing, dry_run)
        if progress_callback is not None:
            progress_callback(checked, total)

        duration = time.monotonic() - start
        logger.info(
            f"Verification complete: {checked} checked, {present_count} present, "
            f"{missing_count} missing, {errors} errors in {duration:.1f}s"
        )
        return VerificationRunResult(
            checked=checked,
            present=present_count,
            missing=missing_count,
            errors=errors,
            duration_s=duration,
            dry_run=dry_run,
        )

    async def report(self, sample_size: int = 10) -> VerificationReport:
        """Totals and a recent missing sample, scoped to the audited provider."""
        provider_type = self.provider.type
        counts = await self.catalog.counts_by_verified(provider=provider_type)
        missing_count = counts.get(VerifiedState.MISSING.value, 0)

        report = VerificationReport(
            total=sum(counts.values()),
            present=counts.get(VerifiedState.PRESENT.value, 0),
            missing=missing_count,
            unchecked=counts.get(VerifiedState.UNKNOWN.value, 0),
        )
        if missing_count:
            report.missing_by_source = await self.catalog.counts_by_source(
                verified=VerifiedState.MISSING, provider=provider_type
            )
            report.missing_sample = await self.catalog.list_by_verified(
                VerifiedState.MISSING, limit=sample_size, provider=provider_type
            )
        return report
