"""Bounded-concurrency delivery of content to selected users."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from contentpool.distribution.matcher import DistributionTarget
from contentpool.errors import ContentPoolError
from contentpool.pool.shared import SharedContentPool
from contentpool.storage.db import DatabaseManager
from contentpool.storage.models import DistributionLog, UserNote, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 20
DEFAULT_TARGET_TIMEOUT = 30.0

CANCELLED = "cancelled"


class DeliveryError(Exception):
    """A single target could not be delivered."""


@dataclass
class DistributionResult:
    """Outcome of one target. Failures carry the error text."""

    target: DistributionTarget
    success: bool
    user_path: Optional[str] = None
    error: Optional[str] = None
    processing_ms: float = 0.0
    distributed_at: datetime = field(default_factory=utcnow)


class BatchDistributor:
    """Deliver to many targets at once, settling every target.

    Per target: check the user has active storage credentials, create the
    user's copy in the pool, write the note record. No implicit retry; a
    later matcher run skips users that already hold a reference.
    """

    def __init__(
        self,
        pool: SharedContentPool,
        db: DatabaseManager,
        config: Optional[dict[str, Any]] = None,
    ) -> None:
        cfg = (config or {}).get("distribution", {})
        self._pool = pool
        self._db = db
        self.max_concurrency: int = cfg.get("max_concurrency", DEFAULT_MAX_CONCURRENCY)
        self.target_timeout: float = cfg.get("target_timeout_seconds", DEFAULT_TARGET_TIMEOUT)
        self._in_flight = 0
        self.peak_in_flight = 0

    async def run(
        self,
        targets: list[DistributionTarget],
        content: Optional[str | bytes] = None,
        timeout: Optional[float] = None,
    ) -> list[DistributionResult]:
        """Deliver to all targets. Results are returned in target order.

        If ``timeout`` elapses, unfinished targets are cancelled and reported
        as failed; completed deliveries are kept.
        """
        if not targets:
            return []

        semaphore = asyncio.Semaphore(self.max_concurrency)
        self.peak_in_flight = 0
        tasks = [
            asyncio.create_task(self._deliver_one(t, content, semaphore)) for t in targets
        ]

        if timeout is None:
            await asyncio.gather(*tasks, return_exceptions=True)
        else:
            _done, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                logger.warning(
                    "Distribution timed out after %.1fs; cancelling %d targets", timeout, len(pending)
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        results: list[DistributionResult] = []
        for target, task in zip(targets, tasks):
            if task.cancelled():
                results.append(DistributionResult(target, False, error=CANCELLED))
                continue
            exc = task.exception()
            if exc is not None:
                results.append(DistributionResult(target, False, error=str(exc)))
            else:
                results.append(task.result())

        for result in results:
            await self._log(result)
        return results

    async def _deliver_one(
        self,
        target: DistributionTarget,
        content: Optional[str | bytes],
        semaphore: asyncio.Semaphore,
    ) -> DistributionResult:
        async with semaphore:
            self._in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
            start = time.perf_counter()
            try:
                path = await asyncio.wait_for(
                    self._deliver(target, content), timeout=self.target_timeout
                )
                return DistributionResult(
                    target, True, user_path=path,
                    processing_ms=(time.perf_counter() - start) * 1000,
                )
            except asyncio.TimeoutError:
                error = f"timed out after {self.target_timeout}s"
            except Exception as e:
                error = str(e) or type(e).__name__
            finally:
                self._in_flight -= 1
        return DistributionResult(
            target, False, error=error, processing_ms=(time.perf_counter() - start) * 1000
        )

    async def _deliver(self, target: DistributionTarget, content: Optional[str | bytes]) -> str:
        if not await self._db.has_active_credentials(target.user_id):
            raise DeliveryError(f"User {target.user_id} has no active storage credentials")

        path = await self._pool.create_user_copy(
            target.user_id, target.entry_id, target.content_hash, content
        )
        note = UserNote(
            user_id=target.user_id,
            entry_id=target.entry_id,
            processed_content_id=target.processed_content_id,
            user_path=path,
            created_at=utcnow(),
        )
        try:
            await self._db.insert_user_note(note)
        except Exception:
            logger.warning(
                "Note write failed for %s/%d; releasing the copy", target.user_id, target.entry_id
            )
            try:
                await self._pool.release_user_copy(target.user_id, target.entry_id)
            except ContentPoolError as e:
                logger.error(
                    "Could not release copy for %s/%d: %s", target.user_id, target.entry_id, e
                )
            raise
        return path

    async def _log(self, result: DistributionResult) -> None:
        target = result.target
        if result.success:
            logger.info(
                "Delivered entry %d to %s (%s, %s) in %.1fms",
                target.entry_id, target.user_id, target.priority, target.reason, result.processing_ms,
            )
        else:
            logger.warning(
                "Delivery of entry %d to %s failed: %s", target.entry_id, target.user_id, result.error
            )
        try:
            await self._db.log_distribution(
                DistributionLog(
                    user_id=target.user_id,
                    entry_id=target.entry_id,
                    content_hash=target.content_hash,
                    success=result.success,
                    processing_ms=result.processing_ms,
                    error=result.error,
                    priority=target.priority,
                    created_at=result.distributed_at,
                )
            )
        except Exception as e:
            logger.error("Could not record distribution outcome for %s: %s", target.user_id, e)
