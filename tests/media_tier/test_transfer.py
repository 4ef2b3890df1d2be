"""Tests for the verified transfer service.

Tests cover:
- The cache -> remote scenario end to end
- Atomicity: no row change and no stray copy on any failure
- Idempotency: a row already on the destination is skipped
- Batch ordering, error capping and progress reporting
- SHA-256 backfill
"""

from __future__ import annotations

import pytest

from MediaTier.errors import UnexpectedIOError
from MediaTier.settings import TransferSettings
from MediaTier.storage.base import FileStats, ProviderType
from MediaTier.storage.cache_provider import CacheProvider
from MediaTier.storage.paths import compute_sha256
from MediaTier.storage.registry import ProviderRegistry
from MediaTier.transfer import TransferCounters, TransferOutcome, TransferService

PATH = "profiles/p1/2024/05/img1.jpg"
DATA = b"image one bytes"
H = compute_sha256(DATA)


def usernames(person_id):
    return {"p1": "Alice", "p2": "bob"}.get(person_id)


@pytest.fixture
def service(catalog, registry):
    return TransferService(catalog, registry, username_lookup=usernames)


async def _seed_cache(catalog, cache, asset_factory, asset_id="img1", data=DATA, **kwargs):
    asset = asset_factory(asset_id, ProviderType.CACHE, sha256=compute_sha256(data), file_size=len(data), **kwargs)
    await catalog.register(asset)
    await cache.write(asset.relative_path, data)
    return asset


class TestTransferFile:
    """Test single-asset transfers."""

    @pytest.mark.asyncio
    async def test_cache_to_remote_scenario(self, service, catalog, cache, remote, s3_client, asset_factory):
        """img1 moves to remote with hash H; the cache copy and its symlink are gone."""
        await _seed_cache(catalog, cache, asset_factory)
        await cache.create_symlink(PATH, "Alice")
        counters = TransferCounters()

        result = await service.transfer_file("img1", cache, remote, counters)

        assert result.outcome == TransferOutcome.TRANSFERRED
        assert result.success
        assert result.sha256 == H
        assert result.symlink_created is False

        row = await catalog.get("img1")
        assert row.storage_provider == ProviderType.REMOTE
        assert row.sha256 == H
        assert s3_client.objects[f"media/{PATH}"]["Body"] == DATA
        assert await cache.exists(PATH) is False
        assert not (cache.root / "usernames" / "alice" / "img1.jpg").is_symlink()

        assert counters.transferred == 1
        assert counters.last_run_at is not None

    @pytest.mark.asyncio
    async def test_symlink_on_cache_destination(self, service, catalog, local, cache, asset_factory):
        """Transfers onto the cache create the username symlink."""
        asset = asset_factory("img1", ProviderType.LOCAL)
        await catalog.register(asset)
        await local.write(PATH, DATA)

        result = await service.transfer_file("img1", local, cache)

        assert result.outcome == TransferOutcome.TRANSFERRED
        assert result.symlink_created is True
        assert (cache.root / "usernames" / "alice" / "img1.jpg").is_symlink()
        assert await local.exists(PATH) is False

    @pytest.mark.asyncio
    async def test_no_username_no_symlink(self, catalog, registry, local, cache, asset_factory):
        service = TransferService(catalog, registry)
        await catalog.register(asset_factory("img1", ProviderType.LOCAL))
        await local.write(PATH, DATA)

        result = await service.transfer_file("img1", local, cache)
        assert result.outcome == TransferOutcome.TRANSFERRED
        assert result.symlink_created is False

    @pytest.mark.asyncio
    async def test_already_on_destination(self, service, catalog, cache, remote, s3_client, asset_factory, monkeypatch):
        """A row already on the destination is skipped without any I/O and the source copy stays."""
        asset = asset_factory("img1", ProviderType.REMOTE, sha256=H)
        await catalog.register(asset)
        await cache.write(asset.relative_path, DATA)
        deleted = []
        real_delete = cache.delete

        async def tracking_delete(relative_path):
            deleted.append(relative_path)
            return await real_delete(relative_path)

        monkeypatch.setattr(cache, "delete", tracking_delete)
        counters = TransferCounters()

        result = await service.transfer_file("img1", cache, remote, counters)

        assert result.outcome == TransferOutcome.SKIPPED
        assert result.success
        assert result.size == 0
        assert s3_client.calls == []
        assert counters.skipped == 1
        assert deleted == []
        assert await cache.exists(asset.relative_path) is True

    @pytest.mark.asyncio
    async def test_second_transfer_is_noop(self, service, catalog, cache, remote, asset_factory):
        await _seed_cache(catalog, cache, asset_factory)
        await service.transfer_file("img1", cache, remote)

        result = await service.transfer_file("img1", cache, remote)
        assert result.outcome == TransferOutcome.SKIPPED
        assert (await catalog.get("img1")).storage_provider == ProviderType.REMOTE

    @pytest.mark.asyncio
    async def test_unknown_asset(self, service, cache, remote):
        counters = TransferCounters()
        result = await service.transfer_file("nope", cache, remote, counters)
        assert result.outcome == TransferOutcome.NOT_FOUND
        assert counters.failed == 1

    @pytest.mark.asyncio
    async def test_source_missing(self, service, catalog, cache, remote, s3_client, asset_factory):
        """Missing source bytes leave the row untouched and write nothing."""
        await catalog.register(asset_factory("img1", ProviderType.CACHE, sha256=H))

        result = await service.transfer_file("img1", cache, remote)

        assert result.outcome == TransferOutcome.SOURCE_MISSING
        assert (await catalog.get("img1")).storage_provider == ProviderType.CACHE
        assert s3_client.objects == {}

    @pytest.mark.asyncio
    async def test_write_failed(self, service, catalog, cache, tmp_path, asset_factory):
        """A structured write failure leaves the source and row untouched."""
        await _seed_cache(catalog, cache, asset_factory)
        ejected = CacheProvider(str(tmp_path / "ejected"))
        ejected.type = ProviderType.LOCAL

        result = await service.transfer_file("img1", cache, ejected)

        assert result.outcome == TransferOutcome.WRITE_FAILED
        assert "not available" in result.error
        assert await cache.exists(PATH) is True
        assert (await catalog.get("img1")).storage_provider == ProviderType.CACHE

    @pytest.mark.asyncio
    async def test_verification_mismatch(self, service, catalog, cache, remote, s3_client, asset_factory):
        """A destination that does not reproduce the hash is cleaned up; nothing else changes."""
        await _seed_cache(catalog, cache, asset_factory)
        s3_client.corrupt_writes = True

        result = await service.transfer_file("img1", cache, remote)

        assert result.outcome == TransferOutcome.VERIFICATION_MISMATCH
        assert s3_client.objects == {}
        assert await cache.exists(PATH) is True
        row = await catalog.get("img1")
        assert row.storage_provider == ProviderType.CACHE
        assert row.sha256 == H

    @pytest.mark.asyncio
    async def test_stats_missing_counts_as_mismatch(self, service, catalog, cache, remote, asset_factory, monkeypatch):
        await _seed_cache(catalog, cache, asset_factory)

        async def no_stats(path):
            return None

        monkeypatch.setattr(remote, "get_stats", no_stats)
        result = await service.transfer_file("img1", cache, remote)
        assert result.outcome == TransferOutcome.VERIFICATION_MISMATCH

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, service, catalog, cache, remote, s3_client, asset_factory):
        """Provider I/O errors propagate; the source and row stay put."""
        await _seed_cache(catalog, cache, asset_factory)
        s3_client.fail_ops = {"PutObject"}
        counters = TransferCounters()

        with pytest.raises(UnexpectedIOError):
            await service.transfer_file("img1", cache, remote, counters)

        assert counters.failed == 1
        assert counters.last_error
        assert await cache.exists(PATH) is True
        assert (await catalog.get("img1")).storage_provider == ProviderType.CACHE

    @pytest.mark.asyncio
    async def test_commit_failure_removes_destination_copy(
        self, service, catalog, cache, remote, s3_client, asset_factory, monkeypatch
    ):
        """If the catalog commit raises, the verified destination copy is removed."""
        await _seed_cache(catalog, cache, asset_factory)

        async def broken_update(*args, **kwargs):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(catalog, "update_location", broken_update)

        with pytest.raises(RuntimeError):
            await service.transfer_file("img1", cache, remote)

        assert s3_client.objects == {}
        assert await cache.exists(PATH) is True

    @pytest.mark.asyncio
    async def test_source_delete_failure_is_logged_only(
        self, service, catalog, cache, remote, asset_factory, monkeypatch
    ):
        await _seed_cache(catalog, cache, asset_factory)

        async def broken_delete(path):
            raise UnexpectedIOError("permission denied", provider="cache", path=path)

        monkeypatch.setattr(cache, "delete", broken_delete)
        result = await service.transfer_file("img1", cache, remote)

        assert result.outcome == TransferOutcome.TRANSFERRED
        assert (await catalog.get("img1")).storage_provider == ProviderType.REMOTE

    @pytest.mark.asyncio
    async def test_keep_source_option(self, catalog, registry, cache, remote, asset_factory):
        service = TransferService(catalog, registry, options=TransferSettings(delete_source=False))
        await _seed_cache(catalog, cache, asset_factory)

        result = await service.transfer_file("img1", cache, remote)
        assert result.outcome == TransferOutcome.TRANSFERRED
        assert await cache.exists(PATH) is True


class TestTransferBatch:
    """Test batch transfers."""

    @pytest.mark.asyncio
    async def test_batch_oldest_first(self, service, catalog, cache, remote, asset_factory):
        from datetime import datetime, timezone

        for day, asset_id in [(3, "c"), (1, "a"), (2, "b")]:
            await _seed_cache(
                catalog, cache, asset_factory, asset_id, data=asset_id.encode() * 4,
                uploaded_at=datetime(2024, 5, day, tzinfo=timezone.utc),
            )

        seen = []
        counters = TransferCounters()
        result = await service.transfer_batch(
            ProviderType.CACHE,
            ProviderType.REMOTE,
            batch_size=2,
            counters=counters,
            progress_callback=lambda current, total, r: seen.append((current, total, r.asset_id)),
        )

        assert result.transferred == 2
        assert seen == [(1, 2, "a"), (2, 2, "b")]
        assert counters.progress is None
        assert await service.pending_count(ProviderType.CACHE) == 1

    @pytest.mark.asyncio
    async def test_batch_continues_after_failure(self, service, catalog, cache, remote, s3_client, asset_factory):
        """A failing asset is counted and recorded without aborting the batch."""
        await _seed_cache(catalog, cache, asset_factory, "img1")
        await catalog.register(asset_factory("img2", ProviderType.CACHE))

        result = await service.transfer_batch("cache", "remote")

        assert result.transferred == 1
        assert result.failed == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("img2")

    @pytest.mark.asyncio
    async def test_batch_exception_counted(self, service, catalog, cache, remote, s3_client, asset_factory):
        await _seed_cache(catalog, cache, asset_factory)
        s3_client.fail_ops = {"PutObject"}
        counters = TransferCounters()

        result = await service.transfer_batch(ProviderType.CACHE, ProviderType.REMOTE, counters=counters)

        assert result.failed == 1
        assert counters.failed == 1
        assert "img1" in result.errors[0]

    @pytest.mark.asyncio
    async def test_error_list_capped(self, catalog, registry, asset_factory):
        service = TransferService(catalog, registry, options=TransferSettings(max_reported_errors=2))
        for i in range(4):
            await catalog.register(asset_factory(f"img{i}", ProviderType.CACHE))

        result = await service.transfer_batch(ProviderType.CACHE, ProviderType.REMOTE)
        assert result.failed == 4
        assert len(result.errors) == 2

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, catalog, local, cache):
        service = TransferService(catalog, ProviderRegistry([local, cache]))
        result = await service.transfer_batch(ProviderType.CACHE, ProviderType.REMOTE)

        assert result.transferred == result.failed == result.skipped == 0
        assert "not configured" in result.errors[0]


class TestBackfill:
    """Test SHA-256 backfill."""

    @pytest.mark.asyncio
    async def test_backfill(self, service, catalog, cache, asset_factory):
        await catalog.register(asset_factory("img1", ProviderType.CACHE))
        await cache.write(PATH, DATA)
        await catalog.register(asset_factory("img2", ProviderType.CACHE))

        result = await service.backfill_sha256()

        assert (result.updated, result.failed) == (1, 1)
        row = await catalog.get("img1")
        assert row.sha256 == H
        assert row.file_size == len(DATA)

    @pytest.mark.asyncio
    async def test_backfill_unconfigured_provider(self, catalog, local, asset_factory):
        service = TransferService(catalog, ProviderRegistry([local]))
        await catalog.register(asset_factory("img1", ProviderType.REMOTE))

        result = await service.backfill_sha256()
        assert (result.updated, result.failed) == (0, 1)

    @pytest.mark.asyncio
    async def test_backfill_stats_error(self, service, catalog, cache, asset_factory, monkeypatch):
        await catalog.register(asset_factory("img1", ProviderType.CACHE))

        async def broken(path) -> FileStats:
            raise UnexpectedIOError("EIO", provider="cache", path=path)

        monkeypatch.setattr(cache, "get_stats", broken)
        result = await service.backfill_sha256()
        assert (result.updated, result.failed) == (0, 1)

