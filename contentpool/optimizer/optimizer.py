"""Background storage optimizer.

Six phases, each safe to re-run and single-flight per phase type:

- cleanup_unused_content: delete shared objects nobody references any more
- compress_large_files: zlib-compress big uncompressed shared objects
- apply_lifecycle_policy: delete expired objects, archive rarely read ones
- manage_user_quotas: warn near quota, evict over quota
- defragment_storage: re-point drifted references at canonical blobs
- optimize_indexes: drop orphaned references, repair counts, refresh stats

A failed phase does not stop the phases after it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from contentpool.errors import ContentPoolError
from contentpool.pool.shared import SharedContentPool
from contentpool.storage.db import DatabaseManager
from contentpool.storage.models import UserQuota, utcnow

logger = logging.getLogger(__name__)

PHASES = (
    "cleanup_unused_content",
    "compress_large_files",
    "apply_lifecycle_policy",
    "manage_user_quotas",
    "defragment_storage",
    "optimize_indexes",
)

_EVICTION_BATCH = 100


@dataclass
class OptimizerConfig:
    max_unused_days: int = 30
    enable_compression: bool = True
    compression_threshold_bytes: int = 1024 * 1024
    enable_lifecycle: bool = True
    default_ttl_days: int = 90
    tiered_storage: bool = True
    low_frequency_threshold: float = 1.0
    enable_quota: bool = True
    default_user_quota_bytes: int = 1024 * 1024 * 1024
    quota_enforcement: bool = True
    quota_warning_percent: float = 90.0
    evict_modified: bool = False
    frequency_window_days: int = 7
    lease_seconds: int = 3600

    @classmethod
    def from_dict(cls, config: Optional[dict[str, Any]]) -> OptimizerConfig:
        section = (config or {}).get("optimizer", {})
        known = {k: v for k, v in section.items() if k in cls.__dataclass_fields__}
        unknown = set(section) - set(known)
        if unknown:
            logger.warning("Ignoring unknown optimizer settings: %s", ", ".join(sorted(unknown)))
        return cls(**known)


@dataclass
class PhaseReport:
    phase: str
    success: bool = True
    processed: int = 0
    saved_space_bytes: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: float = 0.0
    skipped: bool = False
    cancelled: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def bump(self, key: str, n: int = 1) -> None:
        self.details[key] = self.details.get(key, 0) + n


@dataclass
class OptimizationReport:
    success: bool
    phases: list[PhaseReport]
    total_saved_bytes: int
    duration_ms: float
    stats: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


PhaseBody = Callable[[PhaseReport], Awaitable[None]]


class StorageOptimizer:
    """Runs the maintenance phases against the pool and database."""

    def __init__(
        self,
        db: DatabaseManager,
        pool: SharedContentPool,
        config: Optional[dict[str, Any]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._pool = pool
        self._cfg = OptimizerConfig.from_dict(config)
        self._clock = clock
        self._phase_locks = {name: asyncio.Lock() for name in PHASES}
        self._cancel = asyncio.Event()
        self._active = 0

    @property
    def config(self) -> OptimizerConfig:
        return replace(self._cfg)

    def cancel(self) -> None:
        """Ask running phases to stop before their next item."""
        logger.info("Optimizer cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # --- Phase runner ---

    async def _run_phase(self, name: str, body: PhaseBody) -> PhaseReport:
        report = PhaseReport(name)
        start = time.perf_counter()
        lock = self._phase_locks[name]
        if lock.locked():
            report.skipped = True
            report.details["reason"] = "already running in this process"
            logger.info("Phase %s skipped: already running", name)
            return report

        async with lock:
            if self._active == 0:
                self._cancel.clear()
            self._active += 1
            try:
                await self._run_claimed(name, body, report)
            finally:
                self._active -= 1

        report.duration_ms = (time.perf_counter() - start) * 1000
        if not report.skipped:
            logger.info(
                "Phase %s: processed=%d saved=%d errors=%d%s (%.0fms)",
                name, report.processed, report.saved_space_bytes, len(report.errors),
                " [cancelled]" if report.cancelled else "", report.duration_ms,
            )
        return report

    async def _run_claimed(self, name: str, body: PhaseBody, report: PhaseReport) -> None:
        now = self._clock()
        try:
            claimed = await self._db.claim_job(
                name, now, now + timedelta(seconds=self._cfg.lease_seconds)
            )
        except ContentPoolError as e:
            report.success = False
            report.errors.append(f"could not claim job: {e}")
            return
        if not claimed:
            report.skipped = True
            report.details["reason"] = "lease held by another run"
            logger.info("Phase %s skipped: lease held elsewhere", name)
            return

        status = "completed"
        try:
            await body(report)
            if report.cancelled:
                status = "cancelled"
        except Exception as e:
            logger.exception("Phase %s failed", name)
            report.success = False
            report.errors.append(str(e))
            status = "failed"
        finally:
            try:
                await self._db.release_job(name, status, self._clock())
            except ContentPoolError as e:
                logger.error("Could not release %s lease: %s", name, e)

    def _should_stop(self, report: PhaseReport) -> bool:
        if self._cancel.is_set():
            report.cancelled = True
            return True
        return False

    # --- Phases ---

    async def cleanup_unused_content(self) -> PhaseReport:
        return await self._run_phase("cleanup_unused_content", self._cleanup_unused_content)

    async def _cleanup_unused_content(self, report: PhaseReport) -> None:
        cutoff = self._clock() - timedelta(days=self._cfg.max_unused_days)
        candidates = await self._db.list_unused_shared_objects(cutoff)
        report.details["candidates"] = len(candidates)
        for obj in candidates:
            if self._should_stop(report):
                break
            try:
                deleted = await self._pool.delete_unreferenced(obj.content_hash)
            except ContentPoolError as e:
                report.errors.append(f"{obj.content_hash}: {e}")
                continue
            if deleted is None:
                report.bump("kept")
                continue
            report.processed += 1
            report.saved_space_bytes += deleted.stored_size_bytes

    async def compress_large_files(self) -> PhaseReport:
        return await self._run_phase("compress_large_files", self._compress_large_files)

    async def _compress_large_files(self, report: PhaseReport) -> None:
        if not self._cfg.enable_compression:
            report.details["disabled"] = True
            return
        candidates = await self._db.list_compression_candidates(
            self._cfg.compression_threshold_bytes
        )
        report.details["candidates"] = len(candidates)
        for obj in candidates:
            if self._should_stop(report):
                break
            try:
                saved = await self._pool.compress_object(obj.content_hash)
            except ContentPoolError as e:
                report.errors.append(f"{obj.content_hash}: {e}")
                continue
            if saved <= 0:
                report.bump("not_shrunk")
                continue
            report.processed += 1
            report.saved_space_bytes += saved

    async def apply_lifecycle_policy(self) -> PhaseReport:
        return await self._run_phase("apply_lifecycle_policy", self._apply_lifecycle_policy)

    async def _apply_lifecycle_policy(self, report: PhaseReport) -> None:
        if not self._cfg.enable_lifecycle:
            report.details["disabled"] = True
            return
        cutoff = self._clock() - timedelta(days=self._cfg.default_ttl_days)

        for obj in await self._db.list_expired_shared_objects(cutoff):
            if self._should_stop(report):
                return
            try:
                deleted = await self._pool.delete_unreferenced(obj.content_hash)
            except ContentPoolError as e:
                report.errors.append(f"{obj.content_hash}: {e}")
                continue
            if deleted is not None:
                report.processed += 1
                report.saved_space_bytes += deleted.stored_size_bytes
                report.bump("deleted")

        if not self._cfg.tiered_storage:
            return
        for obj in await self._db.list_archive_candidates(
            self._cfg.low_frequency_threshold, cutoff
        ):
            if self._should_stop(report):
                return
            try:
                if await self._pool.archive_object(obj.content_hash):
                    report.processed += 1
                    report.bump("archived_low_frequency")
            except ContentPoolError as e:
                report.errors.append(f"{obj.content_hash}: {e}")

    async def manage_user_quotas(self) -> PhaseReport:
        return await self._run_phase("manage_user_quotas", self._manage_user_quotas)

    async def _manage_user_quotas(self, report: PhaseReport) -> None:
        if not self._cfg.enable_quota:
            report.details["disabled"] = True
            return
        for quota in await self._db.get_all_quotas():
            if self._should_stop(report):
                return
            pct = quota.usage_percent
            if pct > self._cfg.quota_warning_percent:
                report.bump("users_near_quota")
                logger.warning(
                    "User %s at %.1f%% of storage quota (%d/%d bytes)",
                    quota.user_id, pct, quota.used_storage_bytes, quota.max_storage_bytes,
                )
            if pct > 100 and self._cfg.quota_enforcement:
                report.bump("users_over_quota")
                try:
                    await self._evict_until_under(quota, report)
                except ContentPoolError as e:
                    report.errors.append(f"{quota.user_id}: {e}")

    async def _evict_until_under(self, quota: UserQuota, report: PhaseReport) -> None:
        """Release least-recently-used references until usage fits the quota.

        Shared references go first; private ones only if ``evict_modified``.
        """
        used = quota.used_storage_bytes
        kinds = (False, True) if self._cfg.evict_modified else (False,)
        for modified in kinds:
            while used > quota.max_storage_bytes:
                candidates = await self._db.get_eviction_candidates(
                    quota.user_id, modified, _EVICTION_BATCH
                )
                progressed = False
                for ref in candidates:
                    if used <= quota.max_storage_bytes or self._should_stop(report):
                        break
                    try:
                        released = await self._pool.release_user_copy(ref.user_id, ref.entry_id)
                    except ContentPoolError as e:
                        report.errors.append(f"{ref.user_id}/{ref.entry_id}: {e}")
                        continue
                    if not released:
                        continue
                    progressed = True
                    used -= ref.file_size_bytes
                    report.processed += 1
                    report.bump("bytes_released", ref.file_size_bytes)
                    if ref.is_modified:
                        report.saved_space_bytes += ref.file_size_bytes
                if report.cancelled or not progressed:
                    break
            if report.cancelled:
                return

        fresh = await self._db.get_quota(quota.user_id)
        if fresh is not None and fresh.used_storage_bytes > fresh.max_storage_bytes:
            report.bump("users_still_over_quota")
            logger.warning(
                "User %s still over quota after eviction (%d/%d bytes)",
                quota.user_id, fresh.used_storage_bytes, fresh.max_storage_bytes,
            )

    async def defragment_storage(self) -> PhaseReport:
        return await self._run_phase("defragment_storage", self._defragment_storage)

    async def _defragment_storage(self, report: PhaseReport) -> None:
        hashes = await self._db.get_multi_reference_hashes()
        report.details["shared_hashes"] = len(hashes)
        for content_hash, _count in hashes:
            if self._should_stop(report):
                break
            try:
                report.processed += await self._pool.optimize_references(content_hash)
            except ContentPoolError as e:
                report.errors.append(f"{content_hash}: {e}")

    async def optimize_indexes(self) -> PhaseReport:
        return await self._run_phase("optimize_indexes", self._optimize_indexes)

    async def _optimize_indexes(self, report: PhaseReport) -> None:
        for ref in await self._db.get_orphaned_references():
            if self._should_stop(report):
                return
            try:
                removed = await self._pool.remove_orphaned_reference(ref)
            except ContentPoolError as e:
                report.errors.append(f"{ref.user_id}/{ref.entry_id}: {e}")
                continue
            if removed:
                report.processed += 1
                report.bump("orphans_removed")
                logger.warning(
                    "Removed orphaned reference %s/%d -> %s", ref.user_id, ref.entry_id, ref.content_hash
                )

        for content_hash, stored, actual in await self._db.get_reference_count_mismatches():
            if self._should_stop(report):
                return
            try:
                repaired = await self._pool.repair_reference_count(content_hash)
            except ContentPoolError as e:
                report.errors.append(f"{content_hash}: {e}")
                continue
            report.processed += 1
            report.bump("counts_repaired")
            logger.warning(
                "Repaired reference_count for %s: %d -> %d (expected %d)",
                content_hash, stored, repaired, actual,
            )

        now = self._clock()
        report.details["frequency_decayed"] = await self._db.decay_access_frequency(
            now - timedelta(days=self._cfg.frequency_window_days)
        )
        await self._db.refresh_storage_stats(now)
        report.details["stats_refreshed"] = True

    # --- Orchestration ---

    async def run_phase(self, name: str) -> PhaseReport:
        if name not in PHASES:
            raise ValueError(f"Unknown optimizer phase: {name}")
        return await getattr(self, name)()

    async def run_full_optimization(self) -> OptimizationReport:
        """Run every phase in order and aggregate the outcome."""
        start = time.perf_counter()
        if self._active == 0:
            self._cancel.clear()
        logger.info("Starting full storage optimization")

        reports: list[PhaseReport] = []
        self._active += 1
        try:
            for name in PHASES:
                if self._cancel.is_set():
                    reports.append(PhaseReport(name, skipped=True, cancelled=True))
                    continue
                reports.append(await self.run_phase(name))
        finally:
            self._active -= 1

        try:
            stats = await self.get_storage_optimization_stats()
        except ContentPoolError as e:
            logger.error("Could not collect storage stats: %s", e)
            stats = {}

        report = OptimizationReport(
            success=all(r.success for r in reports),
            phases=reports,
            total_saved_bytes=sum(r.saved_space_bytes for r in reports),
            duration_ms=(time.perf_counter() - start) * 1000,
            stats=stats,
        )
        logger.info(
            "Storage optimization finished: success=%s saved=%d bytes (%.0fms)",
            report.success, report.total_saved_bytes, report.duration_ms,
        )
        return report

    async def get_storage_optimization_stats(self) -> dict[str, Any]:
        pool_stats = await self._pool.get_storage_stats()
        quotas = await self._db.get_all_quotas()
        shared_bytes = pool_stats["shared_bytes"]
        stored_bytes = pool_stats["stored_bytes"]
        return {
            "total_size": shared_bytes,
            "used_size": stored_bytes,
            "compression_ratio": round(1 - stored_bytes / shared_bytes, 4) if shared_bytes else 0.0,
            "unused_content": pool_stats["unused_shared_files"],
            "compressed_files": pool_stats["compressed_shared_files"],
            "cold_files": pool_stats["cold_shared_files"],
            "sharing_savings": pool_stats["shared_content_savings"],
            "user_quota_stats": {
                "active_users": len(quotas),
                "users_near_quota": sum(
                    1 for q in quotas if q.usage_percent > self._cfg.quota_warning_percent
                ),
                "users_over_quota": sum(1 for q in quotas if q.usage_percent > 100),
                "total_quota_usage": sum(q.used_storage_bytes for q in quotas),
            },
        }
