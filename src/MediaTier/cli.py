"""
Operator CLI for MediaTier storage maintenance.

Commands:
  - status: Provider availability and catalog counts
  - transfer: Batch transfer between providers (auto destination by default)
  - backfill: Compute missing SHA-256 hashes
  - dedup: Remove duplicate catalog rows
  - migrate-legacy: Move rows off the legacy local volume
  - scan-broken: Read-only broken-reference scan
  - remove-broken: Re-check and delete broken rows
  - consolidate: Full consolidation run with before/after snapshots
  - verify-remote: Remote existence audit (analyze|verify|report)

Mutating commands default to --dry-run; pass --apply to commit.

NAVMAP:
- CLI_ROOT: Root Typer app with global callback
- HELPERS: Runtime construction and output
- COMMANDS: Maintenance commands
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, AsyncIterator, Optional

import typer

from MediaTier.catalog import SQLiteMediaCatalog
from MediaTier.consolidation import CatalogSnapshot, ConsolidationService
from MediaTier.settings import (
    CacheSettings,
    LocalVolumeSettings,
    RemoteSettings,
    StorageSettings,
    TransferSettings,
)
from MediaTier.storage.base import ProviderType
from MediaTier.storage.registry import ProviderRegistry, build_registry
from MediaTier.transfer import TransferService
from MediaTier.verification import RemoteVerificationTool

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# ============================================================================
# CLI Application Setup
# ============================================================================

app = typer.Typer(
    no_args_is_help=True,
    help="MediaTier: tiered media storage maintenance.",
)


class Destination(str, Enum):
    AUTO = "auto"
    LOCAL = "local"
    CACHE = "cache"
    REMOTE = "remote"


class VerifyAction(str, Enum):
    ANALYZE = "analyze"
    VERIFY = "verify"
    REPORT = "report"


@dataclass
class CLIContext:
    """Settings resolved by the root callback."""

    catalog_path: str
    settings: StorageSettings


# ============================================================================
# Root Callback (Global Options)
# ============================================================================


@app.callback()
def root_callback(
    ctx: typer.Context,
    catalog_path: Annotated[
        str, typer.Option("--catalog", envvar="MEDIATIER_CATALOG", help="SQLite catalog path")
    ] = "media_catalog.db",
    mode: Annotated[
        str, typer.Option("--mode", envvar="MEDIATIER_MODE", help="Storage mode (local|remote)")
    ] = "remote",
    local_root: Annotated[
        str, typer.Option("--local-root", envvar="MEDIATIER_LOCAL_ROOT", help="Local volume root")
    ] = "/app/data/images",
    cache_root: Annotated[
        str, typer.Option("--cache-root", envvar="MEDIATIER_CACHE_ROOT", help="SSD cache mount point")
    ] = "/mnt/ssd/media",
    cache_enabled: Annotated[
        bool, typer.Option("--cache/--no-cache", envvar="MEDIATIER_CACHE_ENABLED", help="Use the SSD cache")
    ] = True,
    bucket: Annotated[
        Optional[str],
        typer.Option("--bucket", envvar="MEDIATIER_S3_BUCKET", help="S3 bucket (enables remote storage)"),
    ] = None,
    region: Annotated[str, typer.Option("--region", envvar="MEDIATIER_S3_REGION", help="AWS region")] = "us-east-1",
    prefix: Annotated[str, typer.Option("--prefix", envvar="MEDIATIER_S3_PREFIX", help="S3 key prefix")] = "media/",
    endpoint_url: Annotated[
        Optional[str],
        typer.Option("--endpoint-url", envvar="MEDIATIER_S3_ENDPOINT", help="S3-compatible endpoint"),
    ] = None,
    log_level: Annotated[
        str, typer.Option("--log-level", envvar="MEDIATIER_LOG_LEVEL", help="Logging level (DEBUG|INFO|WARNING|ERROR)")
    ] = "INFO",
    verbose: Annotated[int, typer.Option("-v", "--verbose", count=True, help="Increase verbosity (-v=DEBUG)")] = 0,
) -> None:
    """Configure storage providers and the catalog for the selected command."""
    logging.basicConfig(level="DEBUG" if verbose else log_level.upper(), format=LOG_FORMAT)

    try:
        settings = StorageSettings(
            mode=mode,
            local=LocalVolumeSettings(root=local_root),
            cache=CacheSettings(enabled=cache_enabled, root=cache_root),
            remote=RemoteSettings(
                enabled=bool(bucket),
                bucket=bucket or "",
                region=region,
                prefix=prefix,
                endpoint_url=endpoint_url,
            ),
            transfer=TransferSettings(),
        )
    except Exception as e:
        typer.echo(f"✗ Configuration Error: {e}", err=True)
        raise typer.Exit(1)

    ctx.obj = CLIContext(catalog_path=catalog_path, settings=settings)


# ============================================================================
# Helpers
# ============================================================================


@dataclass
class Runtime:
    catalog: SQLiteMediaCatalog
    registry: ProviderRegistry
    transfer: TransferService
    consolidation: ConsolidationService


@asynccontextmanager
async def open_runtime(cli_ctx: CLIContext) -> AsyncIterator[Runtime]:
    """Build catalog, registry and services; close the catalog on exit."""
    catalog = SQLiteMediaCatalog(cli_ctx.catalog_path)
    try:
        registry = build_registry(cli_ctx.settings)
        transfer = TransferService(catalog, registry, options=cli_ctx.settings.transfer)
        consolidation = ConsolidationService(
            catalog,
            registry,
            transfer=transfer,
            max_errors=cli_ctx.settings.transfer.max_reported_errors,
        )
        yield Runtime(catalog, registry, transfer, consolidation)
    finally:
        await catalog.close()


def _run(ctx: typer.Context, command) -> None:
    """Run an async command body, mapping failures to exit code 1."""
    try:
        asyncio.run(command(ctx.obj))
    except typer.Exit:
        raise
    except Exception as e:
        logger.debug("Command failed", exc_info=True)
        typer.echo(f"✗ Error: {e}", err=True)
        raise typer.Exit(1)


def _echo_snapshot(title: str, snapshot: CatalogSnapshot) -> None:
    typer.echo(f"{title}:")
    typer.echo(f"  Total rows: {snapshot.total}")
    typer.echo(f"  Total bytes: {snapshot.total_bytes}")
    typer.echo(f"  Duplicate groups: {snapshot.duplicates}")
    for name, count in snapshot.by_provider.items():
        typer.echo(f"  {name}: {count}")


def _echo_errors(errors) -> None:
    for error in errors:
        typer.echo(f"  ! {error}")


# ============================================================================
# Commands
# ============================================================================


@app.command()
def status(ctx: typer.Context) -> None:
    """Show provider availability and catalog counts."""

    async def body(cli_ctx: CLIContext) -> None:
        async with open_runtime(cli_ctx) as rt:
            report = await rt.registry.status()
            typer.echo(f"Mode: {cli_ctx.settings.mode}")
            for name, entry in report.items():
                state = "available" if entry["available"] else ("unavailable" if entry["configured"] else "not configured")
                typer.echo(f"  {name}: {state}")
                if entry.get("last_error"):
                    typer.echo(f"    last error: {entry['last_error']}")
            destination = await rt.registry.auto_destination()
            typer.echo(f"Auto destination: {destination.type.value if destination else 'none'}")
            _echo_snapshot("Catalog", await rt.consolidation.snapshot())

    _run(ctx, body)


@app.command()
def transfer(
    ctx: typer.Context,
    source: Annotated[ProviderType, typer.Option("--source", help="Provider to move assets off")],
    destination: Annotated[Destination, typer.Option("--destination", help="Destination provider")] = Destination.AUTO,
    batch_size: Annotated[Optional[int], typer.Option("--batch-size", min=1, help="Assets per batch")] = None,
    dry_run: Annotated[bool, typer.Option("--dry-run/--apply", help="Dry-run mode (default: true)")] = True,
) -> None:
    """Transfer a batch of assets between providers (copy, verify, commit, delete)."""

    async def body(cli_ctx: CLIContext) -> None:
        async with open_runtime(cli_ctx) as rt:
            if destination == Destination.AUTO:
                provider = await rt.registry.auto_destination()
                if provider is None:
                    typer.echo("✗ Error: no destination provider is available", err=True)
                    raise typer.Exit(1)
                destination_type = provider.type
            else:
                destination_type = ProviderType(destination.value)

            pending = await rt.transfer.pending_count(source)
            if dry_run:
                size = batch_size or cli_ctx.settings.transfer.batch_size
                typer.echo(
                    f"✓ would transfer up to {min(size, pending)} of {pending} assets: "
                    f"{source.value} -> {destination_type.value}"
                )
                return

            result = await rt.transfer.transfer_batch(source, destination_type, batch_size=batch_size)
            typer.echo(
                f"✓ transferred {result.transferred}, failed {result.failed}, skipped {result.skipped} "
                f"({source.value} -> {destination_type.value})"
            )
            _echo_errors(result.errors)

    _run(ctx, body)


@app.command()
def backfill(
    ctx: typer.Context,
    batch_size: Annotated[int, typer.Option("--batch-size", min=1, help="Rows per run")] = 100,
    dry_run: Annotated[bool, typer.Option("--dry-run/--apply", help="Dry-run mode (default: true)")] = True,
) -> None:
    """Compute SHA-256 hashes for rows that have none."""

    async def body(cli_ctx: CLIContext) -> None:
        async with open_runtime(cli_ctx) as rt:
            if dry_run:
                pending = await rt.catalog.list_missing_sha256(batch_size)
                typer.echo(f"✓ would backfill {len(pending)} rows")
                return
            result = await rt.transfer.backfill_sha256(batch_size=batch_size)
            typer.echo(f"✓ updated {result.updated}, failed {result.failed}")

    _run(ctx, body)


@app.command()
def dedup(
    ctx: typer.Context,
    dry_run: Annotated[bool, typer.Option("--dry-run/--apply", help="Dry-run mode (default: true)")] = True,
) -> None:
    """Remove duplicate rows (same source URL and person), keeping the oldest."""

    async def body(cli_ctx: CLIContext) -> None:
        async with open_runtime(cli_ctx) as rt:
            result = await rt.consolidation.remove_duplicates(dry_run=dry_run)
            if dry_run:
                typer.echo(f"✓ {result.groups_found} duplicate groups; would remove {result.would_remove} rows")
            else:
                typer.echo(f"✓ {result.groups_found} duplicate groups; removed {result.rows_removed} rows")
            _echo_errors(result.errors)

    _run(ctx, body)


@app.command("migrate-legacy")
def migrate_legacy(
    ctx: typer.Context,
    dry_run: Annotated[bool, typer.Option("--dry-run/--apply", help="Dry-run mode (default: true)")] = True,
) -> None:
    """Move rows still on the local volume to remote storage."""

    async def body(cli_ctx: CLIContext) -> None:
        async with open_runtime(cli_ctx) as rt:
            result = await rt.consolidation.migrate_legacy(dry_run=dry_run)
            action = "would migrate" if dry_run else "migrated"
            count = result.located if dry_run else result.migrated
            typer.echo(f"✓ {action} {count}; skipped {result.skipped}, failed {result.failed}")
            _echo_errors(result.errors)

    _run(ctx, body)


@app.command("scan-broken")
def scan_broken(
    ctx: typer.Context,
    show: Annotated[int, typer.Option("--show", min=0, help="Broken rows to list")] = 20,
) -> None:
    """List rows whose bytes are missing on their provider (read-only)."""

    async def body(cli_ctx: CLIContext) -> None:
        async with open_runtime(cli_ctx) as rt:
            result = await rt.consolidation.scan_broken()
            typer.echo(
                f"✓ checked {result.checked}; broken {len(result.broken)}; unchecked {len(result.unchecked)}"
            )
            for ref in result.broken[:show]:
                typer.echo(f"  {ref.id}  {ref.storage_provider.value}  {ref.relative_path}")
            _echo_errors(result.errors)

    _run(ctx, body)


@app.command("remove-broken")
def remove_broken(
    ctx: typer.Context,
    dry_run: Annotated[bool, typer.Option("--dry-run/--apply", help="Dry-run mode (default: true)")] = True,
) -> None:
    """Scan, re-check and delete rows whose bytes are gone."""

    async def body(cli_ctx: CLIContext) -> None:
        async with open_runtime(cli_ctx) as rt:
            scan = await rt.consolidation.scan_broken()
            result = await rt.consolidation.remove_broken(scan.broken, dry_run=dry_run)
            if dry_run:
                typer.echo(f"✓ would remove {result.confirmed} rows; kept {result.kept}")
            else:
                typer.echo(f"✓ removed {result.removed} rows; kept {result.kept}")
            _echo_errors(result.errors)

    _run(ctx, body)


@app.command()
def consolidate(
    ctx: typer.Context,
    dry_run: Annotated[bool, typer.Option("--dry-run/--apply", help="Dry-run mode (default: true)")] = True,
) -> None:
    """Run dedup, legacy migration and the broken scan with before/after snapshots."""

    async def body(cli_ctx: CLIContext) -> None:
        async with open_runtime(cli_ctx) as rt:
            report = await rt.consolidation.run_full_consolidation(dry_run=dry_run)
            typer.echo(f"Consolidation {'(dry run) ' if dry_run else ''}started {report.started_at.isoformat()}")
            _echo_snapshot("Before", report.before)
            typer.echo(f"Duplicates removed: {report.dedup.rows_removed} (found {report.dedup.would_remove})")
            typer.echo(f"Migrated: {report.migration.migrated} (located {report.migration.located})")
            typer.echo(f"Broken references: {len(report.broken_scan.broken)}")
            _echo_snapshot("After", report.after)

    _run(ctx, body)


@app.command("verify-remote")
def verify_remote(
    ctx: typer.Context,
    action: Annotated[VerifyAction, typer.Argument(help="analyze | verify | report")],
    batch_size: Annotated[int, typer.Option("--batch-size", min=1, help="Checks per flag write")] = 100,
    only_unverified: Annotated[
        bool, typer.Option("--only-unverified", help="Only re-check unknown or missing rows")
    ] = False,
    limit: Annotated[Optional[int], typer.Option("--limit", min=1, help="Maximum rows to check")] = None,
    dry_run: Annotated[bool, typer.Option("--dry-run/--apply", help="Dry-run mode (default: true)")] = True,
) -> None:
    """Audit remote existence and persist the verified flag."""

    async def body(cli_ctx: CLIContext) -> None:
        async with open_runtime(cli_ctx) as rt:
            provider = rt.registry.configured(ProviderType.REMOTE)
            tool = RemoteVerificationTool(rt.catalog, provider)

            if action == VerifyAction.ANALYZE:
                stats = await tool.analyze()
                typer.echo(f"Rows on {provider.type.value}: {stats['total']}")
                typer.echo(f"  Not yet verified: {stats['unverified']}")
                typer.echo(f"  Verified (exists): {stats['present']}")
                typer.echo(f"  Verified (missing): {stats['missing']}")
            elif action == VerifyAction.VERIFY:
                result = await tool.verify(
                    batch_size=batch_size,
                    only_unverified=only_unverified,
                    limit=limit,
                    dry_run=dry_run,
                )
                typer.echo(
                    f"✓ checked {result.checked}; present {result.present}; missing {result.missing}; "
                    f"errors {result.errors} ({result.duration_s:.1f}s)"
                )
                if dry_run:
                    typer.echo("(dry run - no catalog updates made)")
            else:
                report = await tool.report()
                typer.echo(f"Rows on {provider.type.value}: {report.total}")
                typer.echo(f"  Verified (exists): {report.present} ({report.percent(report.present)}%)")
                typer.echo(f"  Missing: {report.missing} ({report.percent(report.missing)}%)")
                typer.echo(f"  Not yet checked: {report.unchecked} ({report.percent(report.unchecked)}%)")
                for source, count in report.missing_by_source.items():
                    typer.echo(f"  missing from {source}: {count}")
                for asset in report.missing_sample:
                    typer.echo(f"  {asset.relative_path} (source: {asset.source}, uploaded: {asset.uploaded_at})")

    _run(ctx, body)


if __name__ == "__main__":
    app()
