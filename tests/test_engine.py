"""Tests for the engine facade and the CLI."""

from __future__ import annotations

import pytest
import yaml
from click.testing import CliRunner

from contentpool.pipeline.cli import cli
from contentpool.pipeline.engine import AnalysisResult, ContentEngine, IngestedEntry, load_config
from contentpool.storage.models import UserPreferences, compute_content_hash


# --- Fixtures ---

@pytest.fixture
def engine_config(tmp_path):
    return {
        "storage": {
            "db_path": str(tmp_path / "engine.db"),
            "blob_dir": str(tmp_path / "blobs"),
        },
        "optimizer": {"default_user_quota_bytes": 4096},
    }


@pytest.fixture
async def engine(engine_config):
    async with ContentEngine(config=engine_config) as eng:
        yield eng


def make_entry(link: str = "https://example.com/posts/1") -> IngestedEntry:
    return IngestedEntry(title="Post 1", link=link, raw_content="<p>raw</p>")


def make_analysis(text: str = "# Post 1\n\nSummary.") -> AnalysisResult:
    return AnalysisResult(
        markdown_content=text,
        topics=["AI"],
        keywords=["agents"],
        importance_score=0.8,
        sentiment="positive",
    )


async def subscribe(engine: ContentEngine, *user_ids: str) -> None:
    for uid in user_ids:
        await engine.db.upsert_preferences(UserPreferences(uid, enabled_topics=["ai"]))
        await engine.db.upsert_credentials(uid)


# --- Config ---

class TestConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(str(tmp_path / "absent.yaml")) == {}

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"dedup": {"cache_capacity": 5}}))
        assert load_config(str(path)) == {"dedup": {"cache_capacity": 5}}

    def test_pool_quota_follows_optimizer(self, engine_config):
        engine = ContentEngine(config=engine_config)
        assert engine.pool.default_quota_bytes == 4096
        assert engine.config["storage"]["db_path"].endswith("engine.db")

    def test_config_copy_is_detached(self, engine_config):
        engine = ContentEngine(config=engine_config)
        engine.config["storage"]["db_path"] = "elsewhere.db"
        assert engine.config["storage"]["db_path"].endswith("engine.db")


# --- Ingest ---

class TestIngest:
    @pytest.mark.asyncio
    async def test_ingest_stores_once_and_distributes(self, engine):
        await subscribe(engine, "alice", "bob")
        outcome = await engine.ingest_processed(
            make_entry(), make_analysis(), entry_id=1, processed_content_id=11,
            owner_user_id="owner",
        )
        assert not outcome.duplicate
        assert outcome.content_hash == compute_content_hash("# Post 1\n\nSummary.")
        assert outcome.delivered == 2

        stats = await engine.get_storage_stats()
        assert stats["total_shared_files"] == 1
        assert stats["total_user_files"] == 2

        fp = await engine.db.get_fingerprint("https://example.com/posts/1")
        assert fp.content_hash == outcome.content_hash
        assert fp.metadata == {"sentiment": "positive"}

    @pytest.mark.asyncio
    async def test_duplicate_link_skipped(self, engine):
        await subscribe(engine, "alice")
        await engine.ingest_processed(make_entry(), make_analysis(), 1, 11, "owner")
        outcome = await engine.ingest_processed(
            make_entry("http://www.example.com/posts/1/?utm_source=rss"),
            make_analysis("# Different text"),
            entry_id=2,
            processed_content_id=12,
            owner_user_id="owner",
        )
        assert outcome.duplicate
        assert outcome.entry_id == 1
        assert (await engine.get_storage_stats())["total_shared_files"] == 1

    @pytest.mark.asyncio
    async def test_edit_then_optimize(self, engine):
        await subscribe(engine, "alice", "bob")
        outcome = await engine.ingest_processed(make_entry(), make_analysis(), 1, 11, "owner")

        update = await engine.handle_user_content_update("alice", 1, "# Alice's version")
        assert update.is_new_copy
        report = await engine.run_full_optimization()
        assert report.success

        obj = await engine.db.get_shared_object(outcome.content_hash)
        assert obj.reference_count == 1
        assert (await engine.pool.get_user_content("bob", 1)).content == "# Post 1\n\nSummary."


# --- CLI ---

class TestCli:
    def _args(self, tmp_path):
        return [
            "--db", str(tmp_path / "cli.db"),
            "--blobs", str(tmp_path / "blobs"),
            "--config", str(tmp_path / "none.yaml"),
        ]

    def test_status(self, tmp_path):
        result = CliRunner().invoke(cli, self._args(tmp_path) + ["status"])
        assert result.exit_code == 0, result.output
        assert "Database Status" in result.output

    def test_register_then_check(self, tmp_path):
        runner = CliRunner()
        args = self._args(tmp_path)
        result = runner.invoke(
            cli, args + ["register-url", "https://example.com/a", "--entry-id", "3", "--user", "alice"]
        )
        assert result.exit_code == 0, result.output
        result = runner.invoke(cli, args + ["check-url", "http://example.com/a/"])
        assert result.exit_code == 0, result.output
        assert "Duplicate" in result.output

    def test_optimize_single_phase(self, tmp_path):
        result = CliRunner().invoke(
            cli, self._args(tmp_path) + ["optimize", "--phase", "optimize_indexes"]
        )
        assert result.exit_code == 0, result.output
        assert "Optimization Results" in result.output

    def test_vacuum(self, tmp_path):
        result = CliRunner().invoke(cli, self._args(tmp_path) + ["vacuum", "--integrity"])
        assert result.exit_code == 0, result.output
        assert "Integrity OK" in result.output
