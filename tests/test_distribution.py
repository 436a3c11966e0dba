"""Tests for preference matching, batch delivery and the distribution service."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from contentpool.distribution.executor import CANCELLED, BatchDistributor
from contentpool.distribution.matcher import (
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_MEDIUM,
    REASON_KEYWORD,
    REASON_MANUAL,
    REASON_TOPIC,
    ContentFeatures,
    DistributionMatcher,
    DistributionTarget,
    priority_for,
)
from contentpool.distribution.service import DistributionService, start_of_utc_day
from contentpool.errors import TransientIOError
from contentpool.pool.shared import SharedContentPool
from contentpool.storage.blobs import LocalBlobStore
from contentpool.storage.db import DatabaseManager
from contentpool.storage.models import (
    DistributionLog,
    UserPreferences,
    compute_content_hash,
    utcnow,
)

NOTE = "# AI weekly\n\nModels, models, models."
NOTE_HASH = compute_content_hash(NOTE)


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
async def pool(db, tmp_path):
    pool = SharedContentPool(db, LocalBlobStore(str(tmp_path / "blobs")))
    await pool.store_to_shared_pool(NOTE_HASH, NOTE)
    return pool


def make_prefs(user_id: str, **kwargs) -> UserPreferences:
    defaults = dict(
        enabled_topics=["AI"],
        enabled_keywords=[],
        min_importance_score=0.5,
        content_types=["news"],
    )
    defaults.update(kwargs)
    return UserPreferences(user_id=user_id, **defaults)


def make_features(**kwargs) -> ContentFeatures:
    defaults = dict(topics=["AI"], keywords=["transformers"], importance_score=0.9)
    defaults.update(kwargs)
    return ContentFeatures(**defaults)


def make_target(user_id: str, entry_id: int = 1) -> DistributionTarget:
    return DistributionTarget(user_id, entry_id, 10, NOTE_HASH, PRIORITY_MEDIUM, REASON_TOPIC, 0.7)


async def add_users(db: DatabaseManager, *user_ids: str, credentials: bool = True) -> None:
    for uid in user_ids:
        await db.upsert_preferences(make_prefs(uid))
        if credentials:
            await db.upsert_credentials(uid)


# --- Matcher ---

class TestMatcher:
    def test_worked_example(self):
        prefs = make_prefs("alice", min_importance_score=0.6)
        features = make_features(topics=["AI", "Sports"], keywords=["GPU"])
        matcher = DistributionMatcher()
        score = matcher.score_match(features, prefs)
        assert score == 0.7
        assert priority_for(score) == PRIORITY_MEDIUM

        [target] = matcher.select_targets(NOTE_HASH, 10, 1, features, [prefs])
        assert target.priority == PRIORITY_MEDIUM
        assert target.reason == REASON_TOPIC

    def test_full_match_is_high(self):
        prefs = make_prefs("alice", enabled_keywords=["Transformers"])
        score = DistributionMatcher().score_match(make_features(), prefs)
        assert score == 1.0
        assert priority_for(score) == PRIORITY_HIGH

    def test_terms_match_case_insensitively(self):
        prefs = make_prefs("alice", enabled_topics=["  ai "])
        assert DistributionMatcher().score_match(make_features(topics=["Ai"]), prefs) == 0.7

    def test_partial_topic_overlap(self):
        prefs = make_prefs("alice", enabled_topics=["AI", "Robotics"], content_types=[])
        score = DistributionMatcher().score_match(make_features(), prefs)
        assert score == 0.4
        assert priority_for(score) == PRIORITY_LOW

    def test_keyword_reason_below_topic_threshold(self):
        prefs = make_prefs(
            "alice", enabled_topics=["Robotics"], enabled_keywords=["transformers"],
            content_types=[],
        )
        [target] = DistributionMatcher().select_targets(
            NOTE_HASH, 10, 1, make_features(), [prefs]
        )
        assert target.score == 0.5
        assert target.reason == REASON_KEYWORD

    def test_below_minimum_is_not_admitted(self):
        prefs = make_prefs("alice", enabled_topics=["Robotics"], content_types=[])
        matcher = DistributionMatcher()
        assert matcher.score_match(make_features(), prefs) == 0.2
        assert matcher.select_targets(NOTE_HASH, 10, 1, make_features(), [prefs]) == []

    def test_importance_below_user_minimum(self):
        prefs = make_prefs("alice", min_importance_score=0.95)
        assert DistributionMatcher().score_match(make_features(), prefs) == 0.5

    def test_holders_and_daily_limit_skipped(self):
        prefs = [
            make_prefs("alice"),
            make_prefs("bob"),
            make_prefs("carol", max_daily_content=2),
        ]
        targets = DistributionMatcher().select_targets(
            NOTE_HASH, 10, 1, make_features(), prefs,
            holders={"alice"}, delivered_today={"carol": 2, "bob": 1},
        )
        assert [t.user_id for t in targets] == ["bob"]

    def test_priority_order_with_stable_ties(self):
        prefs = [
            make_prefs("m1"),
            make_prefs("h1", enabled_keywords=["transformers"]),
            make_prefs("m2"),
            make_prefs("h2", enabled_keywords=["transformers"]),
        ]
        matcher = DistributionMatcher()
        first = matcher.select_targets(NOTE_HASH, 10, 1, make_features(), prefs)
        second = matcher.select_targets(NOTE_HASH, 10, 1, make_features(), prefs)
        assert [t.user_id for t in first] == ["h1", "h2", "m1", "m2"]
        assert first == second

    def test_configured_weights(self):
        matcher = DistributionMatcher(
            {"distribution": {"weights": {"topics": 0.7, "content_type": 0.0}}}
        )
        assert matcher.score_match(make_features(), make_prefs("alice")) == 0.9

    def test_empty_batch(self):
        assert DistributionMatcher().score_batch(make_features(), []).shape == (0,)


# --- Executor ---

class TestBatchDistributor:
    @pytest.mark.asyncio
    async def test_delivers_and_logs(self, db, pool):
        await add_users(db, "alice", "bob")
        distributor = BatchDistributor(pool, db)
        results = await distributor.run([make_target("alice"), make_target("bob")])

        assert [r.target.user_id for r in results] == ["alice", "bob"]
        assert all(r.success for r in results)
        assert results[0].user_path == "users/alice/notes/1.md"
        assert (await db.get_shared_object(NOTE_HASH)).reference_count == 2
        assert await db.count_user_notes() == 2
        assert (await db.get_distribution_stats())["succeeded"] == 2

    @pytest.mark.asyncio
    async def test_missing_credentials_fails_only_that_target(self, db, pool):
        await add_users(db, "alice")
        await add_users(db, "nocreds", credentials=False)
        results = await BatchDistributor(pool, db).run(
            [make_target("nocreds"), make_target("alice")]
        )
        assert not results[0].success
        assert "credentials" in results[0].error
        assert results[1].success
        stats = await db.get_distribution_stats()
        assert stats["failed"] == 1
        assert stats["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, db, pool, monkeypatch):
        users = [f"user{i}" for i in range(10)]
        await add_users(db, *users)

        async def slow_copy(user_id, entry_id, content_hash, content=None, metadata=None):
            await asyncio.sleep(0.02)
            return f"users/{user_id}/notes/{entry_id}.md"

        monkeypatch.setattr(pool, "create_user_copy", slow_copy)
        distributor = BatchDistributor(pool, db, {"distribution": {"max_concurrency": 3}})
        results = await distributor.run([make_target(u) for u in users])
        assert all(r.success for r in results)
        assert distributor.peak_in_flight == 3

    @pytest.mark.asyncio
    async def test_per_target_timeout(self, db, pool, monkeypatch):
        await add_users(db, "alice")

        async def hung_copy(*args, **kwargs):
            await asyncio.sleep(5)

        monkeypatch.setattr(pool, "create_user_copy", hung_copy)
        distributor = BatchDistributor(
            pool, db, {"distribution": {"target_timeout_seconds": 0.05}}
        )
        [result] = await distributor.run([make_target("alice")])
        assert not result.success
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_caller_timeout_cancels_unfinished(self, db, pool, monkeypatch):
        await add_users(db, "fast", "slow")
        original = pool.create_user_copy

        async def copy(user_id, entry_id, content_hash, content=None, metadata=None):
            if user_id == "slow":
                await asyncio.sleep(5)
            return await original(user_id, entry_id, content_hash, content, metadata)

        monkeypatch.setattr(pool, "create_user_copy", copy)
        results = await BatchDistributor(pool, db).run(
            [make_target("fast"), make_target("slow")], timeout=0.5
        )
        assert results[0].success
        assert not results[1].success
        assert results[1].error == CANCELLED
        assert await db.get_user_reference("fast", 1) is not None
        assert await db.get_user_reference("slow", 1) is None

    @pytest.mark.asyncio
    async def test_no_targets(self, db, pool):
        assert await BatchDistributor(pool, db).run([]) == []


# --- Service ---

class TestDistributionService:
    @pytest.mark.asyncio
    async def test_distribute_to_matching_users(self, db, pool):
        await add_users(db, "alice", "bob")
        await db.upsert_preferences(make_prefs("carol", enabled_topics=["Cooking"], content_types=[]))
        await db.upsert_credentials("carol")

        service = DistributionService(db, pool)
        results = await service.distribute_content(NOTE_HASH, 10, 1, make_features())
        assert sorted(r.target.user_id for r in results) == ["alice", "bob"]
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_second_run_skips_holders(self, db, pool):
        await add_users(db, "alice")
        service = DistributionService(db, pool)
        await service.distribute_content(NOTE_HASH, 10, 1, make_features())
        assert await service.distribute_content(NOTE_HASH, 10, 1, make_features()) == []

    @pytest.mark.asyncio
    async def test_failed_note_write_is_retried_next_run(self, db, pool, monkeypatch):
        await add_users(db, "alice")
        original = db.insert_user_note
        calls = []

        async def flaky(note):
            calls.append(note.user_id)
            if len(calls) == 1:
                raise TransientIOError("db hiccup")
            return await original(note)

        monkeypatch.setattr(db, "insert_user_note", flaky)
        service = DistributionService(db, pool)

        [first] = await service.distribute_content(NOTE_HASH, 10, 1, make_features())
        assert not first.success
        assert first.error == "db hiccup"
        assert await db.get_user_reference("alice", 1) is None
        assert (await db.get_quota("alice")).used_storage_bytes == 0

        [second] = await service.distribute_content(NOTE_HASH, 10, 1, make_features())
        assert second.success
        assert await db.count_user_notes("alice") == 1
        assert (await db.get_shared_object(NOTE_HASH)).reference_count == 1

    @pytest.mark.asyncio
    async def test_daily_limit_counts_todays_deliveries(self, db, pool):
        await db.upsert_preferences(make_prefs("alice", max_daily_content=1))
        await db.upsert_credentials("alice")
        await db.log_distribution(DistributionLog("alice", 99, "other", True, 1.0, created_at=utcnow()))
        service = DistributionService(db, pool)
        assert await service.distribute_content(NOTE_HASH, 10, 1, make_features()) == []

    @pytest.mark.asyncio
    async def test_lookup_failure_skips_run(self, db, pool, monkeypatch):
        await add_users(db, "alice")

        async def broken():
            raise TransientIOError("db unavailable")

        monkeypatch.setattr(db, "get_active_preferences", broken)
        service = DistributionService(db, pool)
        assert await service.distribute_content(NOTE_HASH, 10, 1, make_features()) == []
        assert await db.get_user_reference("alice", 1) is None

    @pytest.mark.asyncio
    async def test_redistribute_to_explicit_users(self, db, pool):
        await add_users(db, "alice")
        await db.upsert_credentials("dave")
        service = DistributionService(db, pool)
        results = await service.redistribute_content(NOTE_HASH, 1, 10, user_ids=["dave", "dave"])
        assert len(results) == 1
        assert results[0].success
        assert results[0].target.reason == REASON_MANUAL
        assert results[0].target.priority == PRIORITY_HIGH

    @pytest.mark.asyncio
    async def test_redistribute_requires_users_or_features(self, db, pool):
        with pytest.raises(ValueError):
            await DistributionService(db, pool).redistribute_content(NOTE_HASH, 1, 10)

    @pytest.mark.asyncio
    async def test_stats(self, db, pool):
        await add_users(db, "alice")
        await add_users(db, "nocreds", credentials=False)
        service = DistributionService(db, pool)
        await service.redistribute_content(NOTE_HASH, 1, 10, user_ids=["alice", "nocreds"])
        stats = await service.get_distribution_stats()
        assert stats["total_users"] == 2
        assert stats["distributed"] == 1
        assert stats["failed"] == 1
        assert stats["success_rate"] == 50.0


def test_start_of_utc_day():
    now = datetime(2024, 3, 5, 17, 30, tzinfo=timezone.utc)
    assert start_of_utc_day(now) == datetime(2024, 3, 5, tzinfo=timezone.utc)
