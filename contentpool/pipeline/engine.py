"""Engine facade wiring the fingerprint index, pool, distribution and optimizer.

Usage:
    engine = ContentEngine(config_path="config.yaml")
    await engine.initialize()
    outcome = await engine.ingest_processed(entry, analysis, entry_id=1,
                                            processed_content_id=1, owner_user_id="u1")
    await engine.close()
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from contentpool.dedup.fingerprint import ContentCheckResult, FingerprintIndex
from contentpool.distribution.executor import DistributionResult
from contentpool.distribution.matcher import ContentFeatures
from contentpool.distribution.service import DistributionService
from contentpool.isolation.guard import EditIsolationGuard
from contentpool.optimizer.optimizer import OptimizationReport, OptimizerConfig, StorageOptimizer
from contentpool.pool.shared import SharedContentPool, UpdateResult
from contentpool.storage.blobs import DEFAULT_BLOB_DIR, BlobStore, LocalBlobStore
from contentpool.storage.db import DatabaseManager
from contentpool.storage.models import ContentFingerprint, compute_content_hash

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_DB_PATH = "data/contentpool.db"


@dataclass
class IngestedEntry:
    """A feed entry as handed over by ingestion."""

    title: str
    link: str
    raw_content: str = ""
    published_at: Optional[datetime] = None


@dataclass
class AnalysisResult:
    """Output of the AI analysis step."""

    markdown_content: str
    topics: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    importance_score: float = 0.0
    sentiment: Optional[str] = None
    content_type: str = "news"

    def to_features(self, source: str = "") -> ContentFeatures:
        return ContentFeatures(
            topics=list(self.topics),
            keywords=list(self.keywords),
            importance_score=self.importance_score,
            content_type=self.content_type,
            source=source,
        )


@dataclass
class IngestOutcome:
    duplicate: bool
    entry_id: Optional[int] = None
    content_hash: Optional[str] = None
    distributions: List[DistributionResult] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(1 for r in self.distributions if r.success)


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load the YAML config. A missing file yields an empty config (all defaults)."""
    path = Path(config_path)
    if not path.exists():
        logger.debug("Config %s not found; using defaults", config_path)
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


class ContentEngine:
    """Owns the database and blob store and exposes the engine operations."""

    def __init__(
        self,
        config_path: str = DEFAULT_CONFIG_PATH,
        db_path: Optional[str] = None,
        blob_dir: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        blobs: Optional[BlobStore] = None,
    ):
        self._config = copy.deepcopy(config) if config is not None else load_config(config_path)
        storage_cfg = self._config.get("storage", {})
        self.db_path = db_path or storage_cfg.get("db_path", DEFAULT_DB_PATH)
        self.blob_dir = blob_dir or storage_cfg.get("blob_dir", DEFAULT_BLOB_DIR)

        # Pool quota defaults follow the optimizer's unless set explicitly
        pool_cfg = self._config.setdefault("pool", {})
        pool_cfg.setdefault(
            "default_quota_bytes", OptimizerConfig.from_dict(self._config).default_user_quota_bytes
        )

        self.db = DatabaseManager(self.db_path, batch_size=storage_cfg.get("batch_size", 1000))
        self.blobs: BlobStore = blobs or LocalBlobStore(self.blob_dir)
        self.dedup = FingerprintIndex(self.db, self._config)
        self.pool = SharedContentPool(self.db, self.blobs, self._config)
        self.distribution = DistributionService(self.db, self.pool, self._config)
        self.optimizer = StorageOptimizer(self.db, self.pool, self._config)
        self.guard = EditIsolationGuard(self.pool, self.db, self._config)

    @property
    def config(self) -> Dict[str, Any]:
        return copy.deepcopy(self._config)

    async def initialize(self) -> None:
        await self.db.initialize()

    async def close(self) -> None:
        await self.db.close()

    async def __aenter__(self) -> ContentEngine:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # --- Exposed operations ---

    async def check_duplicate_by_url(
        self,
        url: str,
        user_id: Optional[str] = None,
        source_id: Optional[int] = None,
    ) -> ContentCheckResult:
        return await self.dedup.check_duplicate(url, user_id, source_id)

    async def register_processed_url(
        self,
        url: str,
        entry_id: int,
        user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ContentFingerprint:
        return await self.dedup.register_processed_url(url, entry_id, user_id, metadata)

    async def distribute_content(
        self,
        content_hash: str,
        processed_content_id: int,
        entry_id: int,
        features: ContentFeatures,
    ) -> List[DistributionResult]:
        return await self.distribution.distribute_content(
            content_hash, processed_content_id, entry_id, features
        )

    async def handle_user_content_update(
        self,
        user_id: str,
        entry_id: int,
        new_content: str,
    ) -> UpdateResult:
        return await self.pool.handle_user_content_update(user_id, entry_id, new_content)

    async def run_full_optimization(self) -> OptimizationReport:
        return await self.optimizer.run_full_optimization()

    async def get_storage_stats(self) -> Dict[str, Any]:
        return await self.pool.get_storage_stats()

    async def ingest_processed(
        self,
        entry: IngestedEntry,
        analysis: AnalysisResult,
        entry_id: int,
        processed_content_id: int,
        owner_user_id: str,
        source_id: Optional[int] = None,
        source_name: str = "",
    ) -> IngestOutcome:
        """Run one analysed entry through dedup, the shared pool and distribution.

        Steps:
            1. Skip if the URL was already ingested (or the check failed)
            2. Store the canonical markdown once in the shared pool
            3. Register the URL fingerprint
            4. Distribute to matching users
        """
        check = await self.dedup.check_duplicate(entry.link, owner_user_id, source_id)
        if check.is_duplicate:
            logger.info(
                "Skipping duplicate %s (existing entry %s)", entry.link, check.existing_entry_id
            )
            return IngestOutcome(duplicate=True, entry_id=check.existing_entry_id)

        content_hash = compute_content_hash(analysis.markdown_content)
        await self.pool.store_to_shared_pool(
            content_hash,
            analysis.markdown_content,
            metadata={"title": entry.title, "link": entry.link, "topics": analysis.topics},
        )
        await self.dedup.register_processed_url(
            entry.link,
            entry_id,
            owner_user_id,
            metadata={"sentiment": analysis.sentiment} if analysis.sentiment else None,
            content_hash=content_hash,
            source_id=source_id,
            title=entry.title,
            published_at=entry.published_at,
        )
        results = await self.distribution.distribute_content(
            content_hash,
            processed_content_id,
            entry_id,
            analysis.to_features(source_name),
        )
        return IngestOutcome(False, entry_id, content_hash, results)
