"""Tests for catalog consolidation: dedup, legacy migration, broken-reference audit."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from MediaTier.catalog import VerifiedState
from MediaTier.consolidation import BrokenReference, ConsolidationService
from MediaTier.storage.base import ProviderType
from MediaTier.storage.paths import compute_sha256
from MediaTier.storage.registry import ProviderRegistry
from MediaTier.transfer import TransferService

URL = "https://cdn.example.com/a.jpg"


def _at(day: int) -> datetime:
    return datetime(2024, 5, day, tzinfo=timezone.utc)


@pytest.fixture
def service(catalog, registry):
    return ConsolidationService(catalog, registry, username_lookup=lambda person_id: "alice")


class TestDeduplication:
    """Test duplicate detection and removal."""

    @pytest.mark.asyncio
    async def test_find_duplicates(self, service, catalog, asset_factory):
        """Rows sharing source_url and person collapse onto the oldest."""
        await catalog.register(asset_factory("d2", ProviderType.REMOTE, source_url=URL, uploaded_at=_at(2)))
        await catalog.register(asset_factory("d1", ProviderType.REMOTE, source_url=URL, uploaded_at=_at(1)))
        await catalog.register(asset_factory("d3", ProviderType.CACHE, source_url=URL, uploaded_at=_at(3)))
        await catalog.register(asset_factory("other", ProviderType.REMOTE, source_url=URL, person_id="p2"))
        await catalog.register(asset_factory("nourl", ProviderType.REMOTE))

        groups = await service.find_duplicates()

        assert len(groups) == 1
        group = groups[0]
        assert group.keep_id == "d1"
        assert group.remove_ids == ("d2", "d3")
        assert group.asset_ids == ("d1", "d2", "d3")
        assert (group.source_url, group.person_id) == (URL, "p1")

    @pytest.mark.asyncio
    async def test_mixed_naive_and_aware_timestamps(self, service, catalog, asset_factory):
        """Naive upload times count as UTC when picking the survivor."""
        plus_two = timezone(timedelta(hours=2))
        await catalog.register(
            asset_factory("aware", ProviderType.REMOTE, source_url=URL, uploaded_at=datetime(2024, 5, 1, 1, 0, tzinfo=plus_two))
        )
        await catalog.register(
            asset_factory("naive", ProviderType.REMOTE, source_url=URL, uploaded_at=datetime(2024, 5, 1, 0, 0))
        )

        groups = await service.find_duplicates()
        assert groups[0].keep_id == "aware"

        result = await service.remove_duplicates(dry_run=False)
        assert result.rows_removed == 1
        assert [a.id for a in await catalog.list_all()] == ["aware"]

    @pytest.mark.asyncio
    async def test_tie_broken_by_id(self, service, catalog, asset_factory):
        await catalog.register(asset_factory("b", ProviderType.REMOTE, source_url=URL))
        await catalog.register(asset_factory("a", ProviderType.REMOTE, source_url=URL))

        groups = await service.find_duplicates()
        assert groups[0].keep_id == "a"

    @pytest.mark.asyncio
    async def test_dry_run_removes_nothing(self, service, catalog, asset_factory):
        await catalog.register(asset_factory("d1", ProviderType.REMOTE, source_url=URL, uploaded_at=_at(1)))
        await catalog.register(asset_factory("d2", ProviderType.REMOTE, source_url=URL, uploaded_at=_at(2)))

        result = await service.remove_duplicates(dry_run=True)

        assert result.groups_found == 1
        assert result.would_remove == 1
        assert result.rows_removed == 0
        assert len(await catalog.list_all()) == 2

    @pytest.mark.asyncio
    async def test_removes_rows_not_bytes(self, service, catalog, remote, s3_client, asset_factory):
        """N duplicates leave exactly the oldest row and every stored object."""
        for day in (1, 2, 3, 4):
            asset = asset_factory(f"d{day}", ProviderType.REMOTE, source_url=URL, uploaded_at=_at(day))
            await catalog.register(asset)
            await remote.write(asset.relative_path, b"same image")
        objects_before = dict(s3_client.objects)

        result = await service.remove_duplicates(dry_run=False)

        assert result.rows_removed == 3
        assert [a.id for a in await catalog.list_all()] == ["d1"]
        assert s3_client.objects == objects_before
        assert "DeleteObject" not in s3_client.calls


class TestLegacyMigration:
    """Test migration of rows off the legacy local volume."""

    @pytest.mark.asyncio
    async def test_migrates_legacy_layout(self, service, catalog, local, s3_client, asset_factory):
        """Bytes under people/{username}/ are uploaded to people/{username}/migrated/."""
        asset = asset_factory("img1", ProviderType.LOCAL)
        await catalog.register(asset)
        await local.write("people/alice/img1.jpg", b"legacy bytes")

        result = await service.migrate_legacy(dry_run=False)

        assert (result.migrated, result.located, result.failed, result.skipped) == (1, 1, 0, 0)
        row = await catalog.get("img1")
        assert row.storage_provider == ProviderType.REMOTE
        assert row.relative_path == "people/alice/migrated/img1.jpg"
        assert row.sha256 == compute_sha256(b"legacy bytes")
        assert s3_client.objects["media/people/alice/migrated/img1.jpg"]["Body"] == b"legacy bytes"

    @pytest.mark.asyncio
    async def test_nested_variant_on_cache(self, service, catalog, cache, asset_factory):
        """A path stored without the profiles/ root is found nested on the cache."""
        await catalog.register(asset_factory("img1", ProviderType.LOCAL, relative_path="p1/img1.jpg"))
        await cache.write("profiles/p1/img1.jpg", b"nested")

        result = await service.migrate_legacy(dry_run=False)

        assert result.migrated == 1
        assert (await catalog.get("img1")).relative_path == "people/alice/migrated/img1.jpg"

    @pytest.mark.asyncio
    async def test_canonical_path_uses_transfer(self, catalog, registry, local, s3_client, asset_factory):
        """Bytes at the canonical path are moved by the transfer service and keep their path."""
        transfer = TransferService(catalog, registry)
        service = ConsolidationService(catalog, registry, transfer=transfer)
        asset = asset_factory("img1", ProviderType.LOCAL)
        await catalog.register(asset)
        await local.write(asset.relative_path, b"canonical")

        result = await service.migrate_legacy(dry_run=False)

        assert result.migrated == 1
        row = await catalog.get("img1")
        assert row.storage_provider == ProviderType.REMOTE
        assert row.relative_path == asset.relative_path
        assert await local.exists(asset.relative_path) is False

    @pytest.mark.asyncio
    async def test_not_found_is_skipped(self, service, catalog, asset_factory):
        """Rows whose bytes cannot be located are left untouched."""
        await catalog.register(asset_factory("img1", ProviderType.LOCAL))

        result = await service.migrate_legacy(dry_run=False)

        assert result.skipped == 1
        assert result.migrated == 0
        assert (await catalog.get("img1")).storage_provider == ProviderType.LOCAL

    @pytest.mark.asyncio
    async def test_dry_run_locates_only(self, service, catalog, local, s3_client, asset_factory):
        asset = asset_factory("img1", ProviderType.LOCAL)
        await catalog.register(asset)
        await local.write(asset.relative_path, b"bytes")

        result = await service.migrate_legacy(dry_run=True)

        assert result.dry_run
        assert (result.located, result.migrated) == (1, 0)
        assert s3_client.objects == {}
        assert (await catalog.get("img1")).storage_provider == ProviderType.LOCAL

    @pytest.mark.asyncio
    async def test_remote_unavailable(self, service, catalog, local, s3_client, asset_factory):
        await catalog.register(asset_factory("img1", ProviderType.LOCAL))
        await catalog.register(asset_factory("img2", ProviderType.LOCAL))
        s3_client.denied = True

        result = await service.migrate_legacy(dry_run=False)

        assert result.failed == 2
        assert result.errors == ["Remote storage provider not available"]

    @pytest.mark.asyncio
    async def test_upload_mismatch_fails(self, service, catalog, local, s3_client, asset_factory):
        await catalog.register(asset_factory("img1", ProviderType.LOCAL))
        await local.write("people/alice/img1.jpg", b"legacy")
        s3_client.corrupt_writes = True

        result = await service.migrate_legacy(dry_run=False)

        assert result.failed == 1
        assert s3_client.objects == {}
        assert (await catalog.get("img1")).storage_provider == ProviderType.LOCAL

    @pytest.mark.asyncio
    async def test_row_vanished_before_commit(self, service, catalog, local, s3_client, asset_factory, monkeypatch):
        """A row deleted mid-migration is a failure and leaves no uploaded object behind."""
        await catalog.register(asset_factory("img1", ProviderType.LOCAL))
        await local.write("people/alice/img1.jpg", b"legacy")

        async def row_gone(asset_id, **kwargs):
            return False

        monkeypatch.setattr(catalog, "update_location", row_gone)

        result = await service.migrate_legacy(dry_run=False)

        assert (result.migrated, result.failed) == (0, 1)
        assert s3_client.objects == {}
        assert await local.exists("people/alice/img1.jpg") is True

    @pytest.mark.asyncio
    async def test_commit_error_removes_upload(self, service, catalog, local, s3_client, asset_factory, monkeypatch):
        """A failing catalog commit removes the verified upload and is reported."""
        await catalog.register(asset_factory("img1", ProviderType.LOCAL))
        await local.write("people/alice/img1.jpg", b"legacy")

        async def commit_fails(asset_id, **kwargs):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(catalog, "update_location", commit_fails)

        result = await service.migrate_legacy(dry_run=False)

        assert (result.migrated, result.failed) == (0, 1)
        assert "database is locked" in result.errors[0]
        assert s3_client.objects == {}
        assert (await catalog.get("img1")).storage_provider == ProviderType.LOCAL

    def test_candidates(self, asset_factory):
        asset = asset_factory("img1", ProviderType.LOCAL)
        assert ConsolidationService.legacy_candidates(asset, None) == [
            "profiles/p1/2024/05/img1.jpg",
            "people/p1/img1.jpg",
        ]


class TestBrokenScan:
    """Test the broken-reference scan and explicit removal."""

    @pytest.mark.asyncio
    async def test_scan_is_read_only_and_stable(self, service, catalog, cache, remote, asset_factory):
        await catalog.register(asset_factory("ok", ProviderType.CACHE))
        await cache.write("profiles/p1/2024/05/ok.jpg", b"x")
        await catalog.register(asset_factory("gone2", ProviderType.REMOTE))
        await catalog.register(asset_factory("gone1", ProviderType.CACHE))
        rows_before = await catalog.list_all()

        first = await service.scan_broken()
        second = await service.scan_broken()

        assert [r.id for r in first.broken] == ["gone1", "gone2"]
        assert first.checked == 3
        assert first.broken == second.broken
        assert await catalog.list_all() == rows_before

    @pytest.mark.asyncio
    async def test_unconfigured_and_erroring_rows_unchecked(self, catalog, local, remote, s3_client, asset_factory):
        """Rows that cannot be checked are never reported broken."""
        service = ConsolidationService(catalog, ProviderRegistry([local, remote]))
        await catalog.register(asset_factory("on-cache", ProviderType.CACHE))
        await catalog.register(asset_factory("on-remote", ProviderType.REMOTE))
        s3_client.fail_ops = {"HeadObject"}

        result = await service.scan_broken()

        assert result.broken == []
        assert [r.id for r in result.unchecked] == ["on-cache", "on-remote"]
        assert result.checked == 0
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_remove_broken_rechecks(self, service, catalog, cache, asset_factory):
        """Only references still broken on re-check are removed."""
        await catalog.register(asset_factory("gone", ProviderType.CACHE))
        await catalog.register(asset_factory("back", ProviderType.CACHE))
        scan = await service.scan_broken()
        await cache.write("profiles/p1/2024/05/back.jpg", b"restored")

        dry = await service.remove_broken(scan.broken, dry_run=True)
        assert (dry.confirmed, dry.removed, dry.kept) == (1, 0, 1)
        assert len(await catalog.list_all()) == 2

        result = await service.remove_broken(scan.broken, dry_run=False)
        assert (result.confirmed, result.removed, result.kept) == (1, 1, 1)
        assert [a.id for a in await catalog.list_all()] == ["back"]

    @pytest.mark.asyncio
    async def test_missing_flag_never_deletes(self, service, catalog, remote, asset_factory):
        """A row flagged missing by the audit survives a full run."""
        asset = asset_factory("img1", ProviderType.REMOTE)
        await catalog.register(asset)
        await catalog.set_verified(["img1"], VerifiedState.MISSING)

        report = await service.run_full_consolidation(dry_run=False)

        assert report.broken_scan.broken == [BrokenReference("img1", asset.relative_path, ProviderType.REMOTE)]
        assert await catalog.get("img1") is not None


class TestFullConsolidation:
    """Test the full run and snapshots."""

    @pytest.mark.asyncio
    async def test_snapshot(self, service, catalog, asset_factory):
        await catalog.register(asset_factory("a", ProviderType.REMOTE, source_url=URL, file_size=3, source="affiliate_api"))
        await catalog.register(asset_factory("b", ProviderType.REMOTE, source_url=URL, file_size=4))
        await catalog.register(asset_factory("c", ProviderType.CACHE, file_size=5))

        snap = await service.snapshot()

        assert snap.total == 3
        assert snap.by_provider == {"cache": 1, "remote": 2}
        assert snap.by_source == {"affiliate_api": 1, "unknown": 2}
        assert snap.duplicates == 1
        assert snap.total_bytes == 12

    @pytest.mark.asyncio
    async def test_dry_run_mutates_nothing(self, service, catalog, local, s3_client, asset_factory):
        await catalog.register(asset_factory("d1", ProviderType.REMOTE, source_url=URL, uploaded_at=_at(1)))
        await catalog.register(asset_factory("d2", ProviderType.REMOTE, source_url=URL, uploaded_at=_at(2)))
        legacy = asset_factory("old", ProviderType.LOCAL)
        await catalog.register(legacy)
        await local.write(legacy.relative_path, b"old")
        rows_before = await catalog.list_all()

        report = await service.run_full_consolidation(dry_run=True)

        assert report.dry_run
        assert report.dedup.would_remove == 1
        assert report.migration.located == 1
        assert report.before == report.after
        assert await catalog.list_all() == rows_before
        assert s3_client.objects == {}

    @pytest.mark.asyncio
    async def test_full_run(self, service, catalog, local, asset_factory):
        await catalog.register(asset_factory("d1", ProviderType.LOCAL, source_url=URL, uploaded_at=_at(1)))
        await catalog.register(asset_factory("d2", ProviderType.LOCAL, source_url=URL, uploaded_at=_at(2)))
        await local.write("people/alice/d1.jpg", b"d1")

        report = await service.run_full_consolidation(dry_run=False)

        assert report.before.total == 2
        assert report.dedup.rows_removed == 1
        assert report.migration.migrated == 1
        assert report.after.total == 1
        assert report.after.by_provider == {"remote": 1}
        assert report.after.duplicates == 0
