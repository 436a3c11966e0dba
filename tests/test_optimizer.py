"""Tests for the storage optimizer phases and their orchestration."""

from __future__ import annotations

from datetime import timedelta

import pytest

from contentpool.errors import TransientIOError
from contentpool.optimizer.optimizer import PHASES, OptimizerConfig, StorageOptimizer
from contentpool.pool.shared import SharedContentPool, object_key
from contentpool.storage.blobs import LocalBlobStore
from contentpool.storage.db import DatabaseManager
from contentpool.storage.models import compute_content_hash, utcnow

LONG_NOTE = "# Long note\n\n" + "lorem ipsum dolor sit amet " * 200
LONG_HASH = compute_content_hash(LONG_NOTE)


# --- Fixtures ---

@pytest.fixture
def tmp_db(tmp_path):
    return str(tmp_path / "test.db")


@pytest.fixture
async def db(tmp_db):
    manager = DatabaseManager(tmp_db)
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def pool(db, blobs):
    return SharedContentPool(db, blobs)


def later(days: int = 200):
    """Clock that runs ``days`` ahead, so everything stored now looks old."""
    return lambda: utcnow() + timedelta(days=days)


def make_optimizer(db, pool, days: int = 0, **settings) -> StorageOptimizer:
    clock = later(days) if days else utcnow
    return StorageOptimizer(db, pool, {"optimizer": settings}, clock=clock)


async def store(pool: SharedContentPool, text: str) -> str:
    content_hash = compute_content_hash(text)
    await pool.store_to_shared_pool(content_hash, text)
    return content_hash


async def copy(pool: SharedContentPool, user_id: str, entry_id: int, text: str) -> str:
    content_hash = compute_content_hash(text)
    await pool.create_user_copy(user_id, entry_id, content_hash, text)
    return content_hash


# --- Config ---

class TestOptimizerConfig:
    def test_defaults(self):
        cfg = OptimizerConfig.from_dict({})
        assert cfg.max_unused_days == 30
        assert cfg.default_ttl_days == 90
        assert cfg.quota_warning_percent == 90.0
        assert not cfg.evict_modified

    def test_unknown_keys_ignored(self):
        cfg = OptimizerConfig.from_dict({"optimizer": {"max_unused_days": 7, "bogus": 1}})
        assert cfg.max_unused_days == 7

    def test_config_is_a_copy(self, db, pool):
        optimizer = make_optimizer(db, pool)
        optimizer.config.max_unused_days = 1
        assert optimizer.config.max_unused_days == 30


# --- Cleanup ---

class TestCleanupUnused:
    @pytest.mark.asyncio
    async def test_deletes_only_unreferenced(self, db, pool, blobs):
        orphan = await store(pool, "nobody reads this")
        held = await copy(pool, "alice", 1, "alice reads this")

        report = await make_optimizer(db, pool, days=60).cleanup_unused_content()
        assert report.success
        assert report.processed == 1
        assert report.saved_space_bytes == len(b"nobody reads this")
        assert await db.get_shared_object(orphan) is None
        assert not await blobs.exists(object_key(orphan))
        assert (await db.get_shared_object(held)).reference_count == 1

    @pytest.mark.asyncio
    async def test_recent_objects_kept(self, db, pool):
        orphan = await store(pool, "fresh")
        report = await make_optimizer(db, pool).cleanup_unused_content()
        assert report.processed == 0
        assert await db.get_shared_object(orphan) is not None


# --- Compression ---

class TestCompression:
    @pytest.mark.asyncio
    async def test_compresses_large_objects(self, db, pool):
        await copy(pool, "alice", 1, LONG_NOTE)
        small = await copy(pool, "alice", 2, "short")

        report = await make_optimizer(
            db, pool, compression_threshold_bytes=100
        ).compress_large_files()
        assert report.processed == 1
        assert report.saved_space_bytes > 0
        assert (await db.get_shared_object(LONG_HASH)).is_compressed
        assert not (await db.get_shared_object(small)).is_compressed
        assert (await pool.get_user_content("alice", 1)).content == LONG_NOTE

    @pytest.mark.asyncio
    async def test_disabled(self, db, pool):
        await copy(pool, "alice", 1, LONG_NOTE)
        report = await make_optimizer(
            db, pool, enable_compression=False, compression_threshold_bytes=100
        ).compress_large_files()
        assert report.details["disabled"]
        assert not (await db.get_shared_object(LONG_HASH)).is_compressed


# --- Lifecycle ---

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_expired_objects_deleted_regardless_of_reads(self, db, pool, blobs):
        expired = await store(pool, "expired content")
        async with db._transaction() as conn:
            await conn.execute(
                "UPDATE shared_objects SET access_frequency = 50 WHERE content_hash = ?", (expired,)
            )

        report = await make_optimizer(db, pool, days=120).apply_lifecycle_policy()
        assert report.details == {"deleted": 1}
        assert report.saved_space_bytes == len(b"expired content")
        assert await db.get_shared_object(expired) is None
        assert await blobs.list() == []

    @pytest.mark.asyncio
    async def test_delete_without_tiers(self, db, pool):
        expired = await store(pool, "expired content")
        report = await make_optimizer(
            db, pool, days=120, tiered_storage=False
        ).apply_lifecycle_policy()
        assert report.details["deleted"] == 1
        assert await db.get_shared_object(expired) is None

    @pytest.mark.asyncio
    async def test_low_frequency_referenced_objects_archived(self, db, pool):
        held = await copy(pool, "alice", 1, "rarely read")
        report = await make_optimizer(
            db, pool, days=120, low_frequency_threshold=5.0
        ).apply_lifecycle_policy()
        assert report.details["archived_low_frequency"] == 1
        assert (await db.get_shared_object(held)).reference_count == 1
        assert (await pool.get_user_content("alice", 1)).content == "rarely read"


# --- Quotas ---

class TestQuotas:
    @pytest.mark.asyncio
    async def test_eviction_converges_under_quota(self, db, pool):
        await copy(pool, "alice", 1, "a" * 100)
        await copy(pool, "alice", 2, "b" * 100)
        await copy(pool, "alice", 3, "x" * 100)
        await pool.handle_user_content_update("alice", 3, "c" * 100)
        await db.set_quota_limits("alice", 297)

        report = await make_optimizer(db, pool).manage_user_quotas()
        assert report.details["users_over_quota"] == 1
        assert report.details["bytes_released"] == 100

        quota = await db.get_quota("alice")
        assert 0 <= quota.used_storage_bytes <= quota.max_storage_bytes
        assert await db.get_user_reference("alice", 1) is None
        assert await db.get_user_reference("alice", 3) is not None

    @pytest.mark.asyncio
    async def test_modified_copies_kept_by_default(self, db, pool):
        await copy(pool, "alice", 1, "x" * 100)
        await pool.handle_user_content_update("alice", 1, "y" * 100)
        await db.set_quota_limits("alice", 50)

        report = await make_optimizer(db, pool).manage_user_quotas()
        assert report.processed == 0
        assert report.details["users_still_over_quota"] == 1
        assert await db.get_user_reference("alice", 1) is not None

    @pytest.mark.asyncio
    async def test_modified_copies_evicted_when_allowed(self, db, pool, blobs):
        await copy(pool, "alice", 1, "x" * 100)
        await pool.handle_user_content_update("alice", 1, "y" * 100)
        await db.set_quota_limits("alice", 50)

        report = await make_optimizer(db, pool, evict_modified=True).manage_user_quotas()
        assert report.processed == 1
        assert report.saved_space_bytes == 100
        assert (await db.get_quota("alice")).used_storage_bytes == 0
        assert await blobs.list("users/") == []

    @pytest.mark.asyncio
    async def test_warning_only_near_quota(self, db, pool):
        await copy(pool, "alice", 1, "a" * 95)
        await db.set_quota_limits("alice", 100)
        report = await make_optimizer(db, pool).manage_user_quotas()
        assert report.details["users_near_quota"] == 1
        assert "users_over_quota" not in report.details
        assert await db.get_user_reference("alice", 1) is not None

    @pytest.mark.asyncio
    async def test_one_user_error_does_not_block_others(self, db, pool, monkeypatch):
        for user in ("alice", "bob"):
            await copy(pool, user, 1, f"{user} " * 20)
            await copy(pool, user, 2, f"{user}! " * 20)
            await db.set_quota_limits(user, 150)
        original = db.get_eviction_candidates

        async def flaky(user_id, modified, limit):
            if user_id == "alice":
                raise TransientIOError("database is locked")
            return await original(user_id, modified, limit)

        monkeypatch.setattr(db, "get_eviction_candidates", flaky)
        report = await make_optimizer(db, pool).manage_user_quotas()

        assert report.success
        assert report.details["users_over_quota"] == 2
        assert report.errors == ["alice: database is locked"]
        assert (await db.get_quota("bob")).used_storage_bytes <= 150
        assert (await db.get_quota("alice")).used_storage_bytes > 150


# --- Defragmentation / indexes ---

class TestDefragAndIndexes:
    @pytest.mark.asyncio
    async def test_defragment_realigns(self, db, pool, blobs):
        held = await copy(pool, "alice", 1, "shared text")
        await copy(pool, "bob", 1, "shared text")
        stray = f"shared/{held}/stray.md"
        await blobs.put(stray, b"shared text")
        async with db._transaction() as conn:
            await conn.execute(
                "UPDATE user_references SET storage_path = ? WHERE user_id = 'bob'", (stray,)
            )

        report = await make_optimizer(db, pool).defragment_storage()
        assert report.processed == 1
        assert not await blobs.exists(stray)
        again = await make_optimizer(db, pool).defragment_storage()
        assert again.processed == 0

    @pytest.mark.asyncio
    async def test_orphans_and_counts_repaired(self, db, pool):
        orphaned = await copy(pool, "alice", 1, "will vanish")
        drifted = await copy(pool, "bob", 1, "miscounted")
        async with db._transaction() as conn:
            await conn.execute("DELETE FROM shared_objects WHERE content_hash = ?", (orphaned,))
            await conn.execute(
                "UPDATE shared_objects SET reference_count = 4 WHERE content_hash = ?", (drifted,)
            )

        report = await make_optimizer(db, pool).optimize_indexes()
        assert report.details["orphans_removed"] == 1
        assert report.details["counts_repaired"] == 1
        assert report.details["stats_refreshed"]
        assert await db.get_user_reference("alice", 1) is None
        assert (await db.get_shared_object(drifted)).reference_count == 1
        assert (await db.get_storage_stats_row())["total_shared_files"] == 1

    @pytest.mark.asyncio
    async def test_repair_error_does_not_stop_sweep(self, db, pool, monkeypatch):
        first = await copy(pool, "alice", 1, "first miscounted")
        second = await copy(pool, "bob", 1, "second miscounted")
        async with db._transaction() as conn:
            await conn.execute("UPDATE shared_objects SET reference_count = 4")
        broken = min(first, second)
        original = pool.repair_reference_count

        async def flaky(content_hash):
            if content_hash == broken:
                raise TransientIOError("disk I/O error")
            return await original(content_hash)

        monkeypatch.setattr(pool, "repair_reference_count", flaky)
        report = await make_optimizer(db, pool).optimize_indexes()

        assert report.success
        assert report.errors == [f"{broken}: disk I/O error"]
        assert report.details["counts_repaired"] == 1
        assert report.details["stats_refreshed"]
        healthy = second if broken == first else first
        assert (await db.get_shared_object(healthy)).reference_count == 1
        assert (await db.get_shared_object(broken)).reference_count == 4


# --- Single flight / cancellation ---

class TestOrchestration:
    @pytest.mark.asyncio
    async def test_phase_already_running_is_skipped(self, db, pool):
        optimizer = make_optimizer(db, pool)
        async with optimizer._phase_locks["optimize_indexes"]:
            report = await optimizer.run_phase("optimize_indexes")
        assert report.skipped
        assert report.success

    @pytest.mark.asyncio
    async def test_lease_held_elsewhere_is_skipped(self, db, pool):
        now = utcnow()
        await db.claim_job("cleanup_unused_content", now, now + timedelta(hours=1))
        report = await make_optimizer(db, pool).cleanup_unused_content()
        assert report.skipped
        assert report.details["reason"] == "lease held by another run"

    @pytest.mark.asyncio
    async def test_lease_released_after_run(self, db, pool):
        await make_optimizer(db, pool).cleanup_unused_content()
        jobs = {j["job_type"]: j for j in await db.get_jobs()}
        assert jobs["cleanup_unused_content"]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_unknown_phase(self, db, pool):
        with pytest.raises(ValueError):
            await make_optimizer(db, pool).run_phase("reticulate_splines")

    @pytest.mark.asyncio
    async def test_cancel_stops_between_items(self, db, pool, monkeypatch):
        for i in range(3):
            await store(pool, f"unused {i}")
        optimizer = make_optimizer(db, pool, days=60)
        original = pool.delete_unreferenced

        async def delete_then_cancel(content_hash):
            result = await original(content_hash)
            optimizer.cancel()
            return result

        monkeypatch.setattr(pool, "delete_unreferenced", delete_then_cancel)
        full = await optimizer.run_full_optimization()

        cleanup = full.phases[0]
        assert cleanup.cancelled
        assert cleanup.processed == 1
        assert all(r.skipped and r.cancelled for r in full.phases[1:])
        jobs = {j["job_type"]: j for j in await db.get_jobs()}
        assert jobs["cleanup_unused_content"]["status"] == "cancelled"

        monkeypatch.setattr(pool, "delete_unreferenced", original)
        rerun = await optimizer.run_full_optimization()
        assert not any(r.cancelled for r in rerun.phases)
        assert rerun.phases[0].processed == 2

    @pytest.mark.asyncio
    async def test_failed_phase_does_not_stop_others(self, db, pool, monkeypatch):
        async def broken(threshold):
            raise RuntimeError("boom")

        monkeypatch.setattr(db, "list_compression_candidates", broken)
        full = await make_optimizer(db, pool).run_full_optimization()
        by_name = {r.phase: r for r in full.phases}
        assert not full.success
        assert not by_name["compress_large_files"].success
        assert by_name["compress_large_files"].errors == ["boom"]
        assert by_name["optimize_indexes"].success
        jobs = {j["job_type"]: j for j in await db.get_jobs()}
        assert jobs["compress_large_files"]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_full_run_report(self, db, pool):
        await copy(pool, "alice", 1, "one")
        await copy(pool, "bob", 1, "one")
        full = await make_optimizer(db, pool).run_full_optimization()
        assert full.success
        assert [r.phase for r in full.phases] == list(PHASES)
        assert full.stats["sharing_savings"] == len(b"one")
        assert full.stats["user_quota_stats"]["active_users"] == 2
        assert full.to_dict()["phases"][0]["phase"] == "cleanup_unused_content"
