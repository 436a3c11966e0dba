"""Edit isolation: route user writes on shared notes through copy-on-write.

The guard sits in front of whatever actually writes the user's file (a
sync endpoint, an API handler). It never blocks that write: if isolation
fails, the failure is logged and recorded for reconciliation and the write
goes ahead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from contentpool.errors import ContentPoolError
from contentpool.pool.shared import SharedContentPool
from contentpool.storage.db import DatabaseManager
from contentpool.storage.models import IsolationFailure, UserReference, utcnow

logger = logging.getLogger(__name__)

WriteFn = Callable[[str, Any], Awaitable[Any]]
DeleteFn = Callable[[str], Awaitable[Any]]

OP_WRITE = "write"
OP_DELETE = "delete"

_NO_LIMIT = -1  # SQLite LIMIT -1


@dataclass
class CopyMarker:
    """Attached to a write that was isolated into the user's private copy."""

    user_id: str
    entry_id: int
    original_hash: str
    new_hash: str
    path: str
    is_new_copy: bool
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class GuardOutcome:
    path: str
    result: Any = None
    marker: Optional[CopyMarker] = None
    released: bool = False
    isolation_error: Optional[str] = None

    @property
    def isolated(self) -> bool:
        return self.isolation_error is None


@dataclass
class EditEvent:
    id: str
    user_id: str
    entry_id: int
    path: str
    timestamp: Optional[datetime]
    file_size: int


class EditIsolationGuard:
    """Fail-open interceptor for user writes and deletes."""

    def __init__(
        self,
        pool: SharedContentPool,
        db: DatabaseManager,
        config: Optional[dict[str, Any]] = None,
    ) -> None:
        cfg = (config or {}).get("isolation", {})
        self._pool = pool
        self._db = db
        self.recent_edits_limit: int = cfg.get("recent_edits_limit", 10)

    async def intercept_write(
        self,
        user_id: str,
        path: str,
        content: str | bytes,
        write: WriteFn,
    ) -> GuardOutcome:
        """Fork the user's copy if ``path`` is a shared note, then perform ``write``."""
        outcome = GuardOutcome(path)
        try:
            ref = await self._pool.resolve_path(user_id, path)
            if ref is not None:
                update = await self._pool.handle_user_content_update(
                    user_id, ref.entry_id, content
                )
                if update.changed:
                    outcome.marker = CopyMarker(
                        user_id=user_id,
                        entry_id=ref.entry_id,
                        original_hash=ref.content_hash,
                        new_hash=update.content_hash,
                        path=update.path,
                        is_new_copy=update.is_new_copy,
                    )
        except Exception as e:
            outcome.isolation_error = str(e) or type(e).__name__
            await self._record_failure(user_id, path, OP_WRITE, outcome.isolation_error)

        outcome.result = await write(path, content)
        return outcome

    async def intercept_delete(self, user_id: str, path: str, delete: DeleteFn) -> GuardOutcome:
        """Release the user's reference for ``path``, then perform ``delete``."""
        outcome = GuardOutcome(path)
        try:
            ref = await self._pool.resolve_path(user_id, path)
            if ref is not None:
                outcome.released = await self._pool.release_user_copy(user_id, ref.entry_id)
        except Exception as e:
            outcome.isolation_error = str(e) or type(e).__name__
            await self._record_failure(user_id, path, OP_DELETE, outcome.isolation_error)

        outcome.result = await delete(path)
        return outcome

    async def _record_failure(self, user_id: str, path: str, operation: str, error: str) -> None:
        logger.error("Edit isolation failed for %s %s (%s): %s", user_id, path, operation, error)
        try:
            await self._db.record_isolation_failure(user_id, path, operation, error, utcnow())
        except ContentPoolError as e:
            logger.error("Could not record isolation failure for %s %s: %s", user_id, path, e)

    # --- Reporting ---

    @staticmethod
    def _event(ref: UserReference) -> EditEvent:
        return EditEvent(
            id=f"event-{ref.id}",
            user_id=ref.user_id,
            entry_id=ref.entry_id,
            path=ref.user_path,
            timestamp=ref.modified_at or ref.created_at,
            file_size=ref.file_size_bytes,
        )

    async def get_user_edit_history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[EditEvent], int]:
        refs, total = await self._db.get_modified_references(user_id, limit, offset)
        return [self._event(r) for r in refs], total

    async def get_user_edit_stats(self, user_id: str) -> dict[str, Any]:
        refs, total = await self._db.get_modified_references(user_id, limit=_NO_LIMIT, offset=0)
        return {
            "total_edits": total,
            "active_copies": len(refs),
            "total_storage_used": sum(r.file_size_bytes for r in refs),
            "recent_edits": [self._event(r) for r in refs[: self.recent_edits_limit]],
        }

    async def pending_failures(self) -> list[IsolationFailure]:
        return await self._db.get_isolation_failures(unresolved_only=True)

    async def resolve_failure(self, failure_id: int) -> bool:
        resolved = await self._db.resolve_isolation_failure(failure_id, utcnow())
        if resolved:
            logger.info("Isolation failure %d resolved", failure_id)
        return resolved
