"""Distribution driver: loads profiles, runs the matcher, hands targets to the executor."""

from __future__ import annotations

import logging
from datetime import datetime, time as dtime, timezone
from typing import Any, Optional

from contentpool.distribution.executor import BatchDistributor, DistributionResult
from contentpool.distribution.matcher import (
    PRIORITY_HIGH,
    REASON_MANUAL,
    ContentFeatures,
    DistributionMatcher,
    DistributionTarget,
)
from contentpool.errors import ContentPoolError
from contentpool.pool.shared import SharedContentPool
from contentpool.storage.db import DatabaseManager
from contentpool.storage.models import utcnow

logger = logging.getLogger(__name__)


def start_of_utc_day(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return datetime.combine(now.astimezone(timezone.utc).date(), dtime.min, tzinfo=timezone.utc)


class DistributionService:
    """Fan a processed entry out to every user whose preferences match it."""

    def __init__(
        self,
        db: DatabaseManager,
        pool: SharedContentPool,
        config: Optional[dict[str, Any]] = None,
        matcher: Optional[DistributionMatcher] = None,
        distributor: Optional[BatchDistributor] = None,
    ) -> None:
        cfg = (config or {}).get("distribution", {})
        self._db = db
        self.matcher = matcher or DistributionMatcher(config)
        self.distributor = distributor or BatchDistributor(pool, db, config)
        self.run_timeout: Optional[float] = cfg.get("run_timeout_seconds")

    async def distribute_content(
        self,
        content_hash: str,
        processed_content_id: int,
        entry_id: int,
        features: ContentFeatures,
        content: Optional[str | bytes] = None,
    ) -> list[DistributionResult]:
        """Deliver an entry to all matching users.

        If profiles, holders or today's counts cannot be loaded the run is
        skipped and an empty list returned.
        """
        try:
            preferences = await self._db.get_active_preferences()
            holders = await self._db.get_reference_holders(entry_id)
            delivered = await self._db.count_delivered_since(start_of_utc_day())
        except ContentPoolError as e:
            logger.error("Skipping distribution of entry %d: %s", entry_id, e)
            return []

        targets = self.matcher.select_targets(
            content_hash, processed_content_id, entry_id, features,
            preferences, holders, delivered,
        )
        if not targets:
            logger.info("No matching users for entry %d", entry_id)
            return []

        results = await self.distributor.run(targets, content, timeout=self.run_timeout)
        self._log_summary(entry_id, results)
        return results

    async def redistribute_content(
        self,
        content_hash: str,
        entry_id: int,
        processed_content_id: int,
        user_ids: Optional[list[str]] = None,
        features: Optional[ContentFeatures] = None,
    ) -> list[DistributionResult]:
        """Re-run delivery, either to explicit users or to all matching users."""
        if user_ids:
            targets = [
                DistributionTarget(
                    user_id=uid,
                    entry_id=entry_id,
                    processed_content_id=processed_content_id,
                    content_hash=content_hash,
                    priority=PRIORITY_HIGH,
                    reason=REASON_MANUAL,
                    score=1.0,
                )
                for uid in dict.fromkeys(user_ids)
            ]
            results = await self.distributor.run(targets, timeout=self.run_timeout)
            self._log_summary(entry_id, results)
            return results
        if features is None:
            raise ValueError("features are required when no user_ids are given")
        return await self.distribute_content(
            content_hash, processed_content_id, entry_id, features
        )

    async def get_distribution_stats(self, user_id: Optional[str] = None) -> dict[str, Any]:
        raw = await self._db.get_distribution_stats(user_id)
        total = raw.get("total") or 0
        succeeded = raw.get("succeeded") or 0
        return {
            "total_users": raw.get("total_users") or 0,
            "distributed": succeeded,
            "failed": raw.get("failed") or 0,
            "average_processing_ms": round(raw.get("avg_ms") or 0.0, 2),
            "success_rate": round(succeeded / total * 100, 2) if total else 0.0,
        }

    @staticmethod
    def _log_summary(entry_id: int, results: list[DistributionResult]) -> None:
        ok = sum(1 for r in results if r.success)
        logger.info(
            "Distribution of entry %d: %d delivered, %d failed", entry_id, ok, len(results) - ok
        )
