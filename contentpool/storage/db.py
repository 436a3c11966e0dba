"""Async SQLite manager for the content pool (WAL mode, serialized writers)."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set, Tuple

import aiosqlite

from contentpool.errors import (
    ConcurrencyConflictError,
    NotFoundError,
    QuotaExceededError,
    TransientIOError,
)
from contentpool.storage.migrations import apply_migrations
from contentpool.storage.models import (
    ContentFingerprint,
    DistributionLog,
    IsolationFailure,
    SharedObject,
    UserNote,
    UserPreferences,
    UserQuota,
    UserReference,
    format_ts,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
DEFAULT_BUSY_TIMEOUT_MS = 5000

_SHARED_COLUMNS = """(content_hash, storage_path, size_bytes, reference_count, is_compressed,
                      compressed_size_bytes, compression_ratio, access_frequency, storage_tier,
                      metadata, created_at, last_accessed_at, last_optimized_at)"""

_REF_COLUMNS = """(user_id, entry_id, content_hash, current_hash, is_modified, user_path,
                   storage_path, file_size_bytes, created_at, modified_at, last_accessed_at)"""


def _translate(exc: sqlite3.Error) -> Exception:
    """Map sqlite3 errors onto the engine's error taxonomy."""
    msg = str(exc).lower()
    if isinstance(exc, sqlite3.IntegrityError) and "unique" in msg:
        return ConcurrencyConflictError(str(exc))
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in msg or "busy" in msg):
        return ConcurrencyConflictError(str(exc))
    return TransientIOError(str(exc))


class DatabaseManager:
    """Async SQLite manager holding fingerprints, the shared pool, references and quotas.

    Every multi-row state transition runs inside one ``BEGIN IMMEDIATE``
    transaction under the write lock.

    Usage:
        db = DatabaseManager("data/contentpool.db")
        await db.initialize()
        # ... use db ...
        await db.close()
    """

    def __init__(
        self,
        db_path: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        cache_size_mb: int = 64,
    ):
        self.db_path = db_path
        self.batch_size = batch_size
        self.cache_size_mb = cache_size_mb
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create database, apply migrations, and configure pragmas."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        # Apply migrations synchronously (schema changes)
        apply_migrations(self.db_path)

        # Autocommit connection; transactions are explicit
        self._conn = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute(f"PRAGMA cache_size=-{self.cache_size_mb * 1000}")
        await self._conn.execute("PRAGMA synchronous=NORMAL")
        await self._conn.execute("PRAGMA temp_store=MEMORY")
        await self._conn.execute(f"PRAGMA busy_timeout={DEFAULT_BUSY_TIMEOUT_MS}")

        logger.info("Database initialized: %s", self.db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Acquire write lock and begin a transaction."""
        assert self._conn is not None, "Database not initialized"
        async with self._write_lock:
            try:
                await self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise _translate(e) from e
            try:
                yield self._conn
                await self._conn.commit()
            except BaseException as e:
                await self._conn.rollback()
                if isinstance(e, sqlite3.Error):
                    raise _translate(e) from e
                raise

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        assert self._conn is not None, "Database not initialized"
        try:
            cursor = await self._conn.execute(sql, params)
            row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise _translate(e) from e
        return dict(row) if row else None

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        assert self._conn is not None, "Database not initialized"
        try:
            cursor = await self._conn.execute(sql, params)
            rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise _translate(e) from e
        return [dict(r) for r in rows]

    async def _scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = await self._fetchone(sql, params)
        if not row:
            return None
        return next(iter(row.values()))

    # --- Fingerprints ---

    async def upsert_fingerprint(self, fp: ContentFingerprint) -> None:
        """Insert or update a fingerprint. first_seen_at is preserved on update."""
        async with self._transaction() as conn:
            await conn.execute(_UPSERT_FINGERPRINT_SQL, fp.to_row())

    async def batch_upsert_fingerprints(self, fingerprints: List[ContentFingerprint]) -> int:
        """Upsert fingerprints in batches. Returns the number of rows written."""
        if not fingerprints:
            return 0
        written = 0
        async with self._transaction() as conn:
            for i in range(0, len(fingerprints), self.batch_size):
                batch = fingerprints[i : i + self.batch_size]
                await conn.executemany(_UPSERT_FINGERPRINT_SQL, [fp.to_row() for fp in batch])
                written += len(batch)
        return written

    async def get_fingerprint(self, normalized_url: str) -> Optional[ContentFingerprint]:
        row = await self._fetchone(
            "SELECT * FROM content_fingerprints WHERE normalized_url = ?", (normalized_url,)
        )
        return ContentFingerprint.from_row(row) if row else None

    async def get_fingerprints(self, normalized_urls: Sequence[str]) -> Dict[str, ContentFingerprint]:
        """Look up many URLs in one round trip (JSON array parameter)."""
        if not normalized_urls:
            return {}
        rows = await self._fetchall(
            """SELECT * FROM content_fingerprints
               WHERE normalized_url IN (SELECT value FROM json_each(?))""",
            (json.dumps(list(normalized_urls)),),
        )
        return {r["normalized_url"]: ContentFingerprint.from_row(r) for r in rows}

    async def delete_fingerprints_before(self, cutoff: datetime) -> int:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM content_fingerprints WHERE first_seen_at < ?", (format_ts(cutoff),)
            )
            return cursor.rowcount

    async def get_fingerprint_stats(self) -> Dict[str, Any]:
        row = await self._fetchone(
            """SELECT COUNT(*) AS total_urls,
                      COUNT(DISTINCT canonical_entry_id) AS unique_entries,
                      MIN(first_seen_at) AS oldest,
                      MAX(first_seen_at) AS newest
               FROM content_fingerprints"""
        )
        return row or {"total_urls": 0, "unique_entries": 0, "oldest": None, "newest": None}

    # --- Shared objects ---

    async def get_shared_object(self, content_hash: str) -> Optional[SharedObject]:
        row = await self._fetchone(
            "SELECT * FROM shared_objects WHERE content_hash = ?", (content_hash,)
        )
        return SharedObject.from_row(row) if row else None

    async def insert_shared_object(self, obj: SharedObject) -> bool:
        """Insert a shared object if absent. Returns True if a row was created."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"""INSERT INTO shared_objects {_SHARED_COLUMNS}
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(content_hash) DO NOTHING""",
                obj.to_row(),
            )
            return cursor.rowcount == 1

    async def touch_shared_object(self, content_hash: str, now: datetime) -> None:
        """Record a read of a shared object."""
        async with self._transaction() as conn:
            await conn.execute(
                """UPDATE shared_objects
                   SET last_accessed_at = ?, access_frequency = access_frequency + 1
                   WHERE content_hash = ?""",
                (format_ts(now), content_hash),
            )

    async def delete_shared_object_if_unreferenced(self, content_hash: str) -> Optional[SharedObject]:
        """Delete the row only if its count is zero and no unmodified reference exists.

        Returns the deleted object, or None if it was kept (or already gone).
        """
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT * FROM shared_objects WHERE content_hash = ?", (content_hash,)
            )
            row = await cursor.fetchone()
            if not row:
                return None
            obj = SharedObject.from_row(dict(row))
            if obj.reference_count != 0:
                return None
            cursor = await conn.execute(
                """SELECT COUNT(*) FROM user_references
                   WHERE content_hash = ? AND is_modified = 0""",
                (content_hash,),
            )
            live = (await cursor.fetchone())[0]
            if live:
                logger.warning(
                    "Shared object %s has reference_count=0 but %d live references; keeping it",
                    content_hash, live,
                )
                return None
            await conn.execute("DELETE FROM shared_objects WHERE content_hash = ?", (content_hash,))
            return obj

    async def mark_compressed(
        self,
        content_hash: str,
        storage_path: str,
        compressed_size: int,
        ratio: float,
        now: datetime,
    ) -> None:
        """Switch a shared object (and its unmodified references) to its compressed blob."""
        async with self._transaction() as conn:
            await conn.execute(
                """UPDATE shared_objects
                   SET storage_path = ?, is_compressed = 1, compressed_size_bytes = ?,
                       compression_ratio = ?, last_optimized_at = ?
                   WHERE content_hash = ?""",
                (storage_path, compressed_size, ratio, format_ts(now), content_hash),
            )
            await conn.execute(
                """UPDATE user_references SET storage_path = ?
                   WHERE content_hash = ? AND is_modified = 0""",
                (storage_path, content_hash),
            )

    async def move_shared_object(
        self,
        content_hash: str,
        storage_path: str,
        tier: str,
        now: datetime,
    ) -> int:
        """Point a shared object (and its unmodified references) at a new key.

        Returns the number of references re-pointed.
        """
        async with self._transaction() as conn:
            await conn.execute(
                """UPDATE shared_objects
                   SET storage_path = ?, storage_tier = ?, last_optimized_at = ?
                   WHERE content_hash = ?""",
                (storage_path, tier, format_ts(now), content_hash),
            )
            cursor = await conn.execute(
                """UPDATE user_references SET storage_path = ?
                   WHERE content_hash = ? AND is_modified = 0""",
                (storage_path, content_hash),
            )
            return cursor.rowcount

    async def realign_reference_paths(
        self,
        content_hash: str,
        canonical_path: str,
    ) -> Tuple[int, List[str]]:
        """Re-point drifted unmodified references.

        Returns (references re-pointed, distinct stray paths they used).
        """
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """SELECT DISTINCT storage_path FROM user_references
                   WHERE content_hash = ? AND is_modified = 0 AND storage_path != ?""",
                (content_hash, canonical_path),
            )
            strays = [r[0] for r in await cursor.fetchall()]
            if not strays:
                return 0, []
            cursor = await conn.execute(
                """UPDATE user_references SET storage_path = ?
                   WHERE content_hash = ? AND is_modified = 0 AND storage_path != ?""",
                (canonical_path, content_hash, canonical_path),
            )
            return cursor.rowcount, strays

    async def storage_path_in_use(self, storage_path: str) -> bool:
        row = await self._fetchone(
            """SELECT 1 AS used FROM shared_objects WHERE storage_path = ?
               UNION ALL
               SELECT 1 FROM user_references WHERE storage_path = ?
               LIMIT 1""",
            (storage_path, storage_path),
        )
        return row is not None

    async def list_unused_shared_objects(self, cutoff: datetime) -> List[SharedObject]:
        rows = await self._fetchall(
            """SELECT * FROM shared_objects
               WHERE reference_count = 0 AND last_accessed_at < ?
               ORDER BY last_accessed_at, content_hash""",
            (format_ts(cutoff),),
        )
        return [SharedObject.from_row(r) for r in rows]

    async def list_compression_candidates(self, threshold_bytes: int) -> List[SharedObject]:
        rows = await self._fetchall(
            """SELECT * FROM shared_objects
               WHERE size_bytes > ? AND is_compressed = 0
               ORDER BY size_bytes DESC, content_hash""",
            (threshold_bytes,),
        )
        return [SharedObject.from_row(r) for r in rows]

    async def list_expired_shared_objects(self, cutoff: datetime) -> List[SharedObject]:
        rows = await self._fetchall(
            """SELECT * FROM shared_objects
               WHERE reference_count = 0 AND created_at < ?
               ORDER BY created_at, content_hash""",
            (format_ts(cutoff),),
        )
        return [SharedObject.from_row(r) for r in rows]

    async def list_archive_candidates(
        self,
        max_frequency: float,
        accessed_before: datetime,
    ) -> List[SharedObject]:
        rows = await self._fetchall(
            """SELECT * FROM shared_objects
               WHERE storage_tier = 'hot' AND reference_count > 0
                 AND access_frequency < ? AND last_accessed_at < ?
               ORDER BY access_frequency, content_hash""",
            (max_frequency, format_ts(accessed_before)),
        )
        return [SharedObject.from_row(r) for r in rows]

    async def get_multi_reference_hashes(self) -> List[Tuple[str, int]]:
        """Content hashes held by more than one unmodified reference."""
        rows = await self._fetchall(
            """SELECT content_hash, COUNT(*) AS cnt FROM user_references
               WHERE is_modified = 0
               GROUP BY content_hash HAVING COUNT(*) > 1
               ORDER BY content_hash"""
        )
        return [(r["content_hash"], r["cnt"]) for r in rows]

    async def get_orphaned_references(self) -> List[UserReference]:
        """Unmodified references whose shared object no longer exists."""
        rows = await self._fetchall(
            """SELECT r.* FROM user_references r
               LEFT JOIN shared_objects s ON s.content_hash = r.content_hash
               WHERE r.is_modified = 0 AND s.content_hash IS NULL
               ORDER BY r.id"""
        )
        return [UserReference.from_row(r) for r in rows]

    async def get_reference_count_mismatches(self) -> List[Tuple[str, int, int]]:
        """Return (content_hash, stored_count, actual_count) where they differ."""
        rows = await self._fetchall(
            """SELECT content_hash, reference_count, actual FROM (
                   SELECT s.content_hash, s.reference_count,
                          (SELECT COUNT(*) FROM user_references r
                           WHERE r.content_hash = s.content_hash AND r.is_modified = 0) AS actual
                   FROM shared_objects s
               ) WHERE reference_count != actual
               ORDER BY content_hash"""
        )
        return [(r["content_hash"], r["reference_count"], r["actual"]) for r in rows]

    async def repair_reference_count(self, content_hash: str) -> int:
        """Recount unmodified references for a hash and store it. Returns the new count."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """SELECT COUNT(*) FROM user_references
                   WHERE content_hash = ? AND is_modified = 0""",
                (content_hash,),
            )
            actual = (await cursor.fetchone())[0]
            await conn.execute(
                "UPDATE shared_objects SET reference_count = ? WHERE content_hash = ?",
                (actual, content_hash),
            )
            return actual

    async def decay_access_frequency(self, accessed_since: datetime) -> int:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """UPDATE shared_objects
                   SET access_frequency = (access_frequency * 0.9) + 0.1
                   WHERE last_accessed_at > ?""",
                (format_ts(accessed_since),),
            )
            return cursor.rowcount

    async def refresh_storage_stats(self, now: datetime) -> Dict[str, Any]:
        """Recompute the aggregate storage_stats row and return it."""
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT INTO storage_stats (id, total_shared_files, total_shared_bytes,
                                              total_stored_bytes, total_user_files,
                                              total_user_bytes, modified_user_files, refreshed_at)
                   SELECT 1,
                          (SELECT COUNT(*) FROM shared_objects),
                          (SELECT COALESCE(SUM(size_bytes), 0) FROM shared_objects),
                          (SELECT COALESCE(SUM(CASE WHEN is_compressed = 1
                                                    THEN compressed_size_bytes
                                                    ELSE size_bytes END), 0)
                           FROM shared_objects),
                          (SELECT COUNT(*) FROM user_references),
                          (SELECT COALESCE(SUM(file_size_bytes), 0) FROM user_references),
                          (SELECT COUNT(*) FROM user_references WHERE is_modified = 1),
                          ?
                   ON CONFLICT(id) DO UPDATE SET
                       total_shared_files = excluded.total_shared_files,
                       total_shared_bytes = excluded.total_shared_bytes,
                       total_stored_bytes = excluded.total_stored_bytes,
                       total_user_files = excluded.total_user_files,
                       total_user_bytes = excluded.total_user_bytes,
                       modified_user_files = excluded.modified_user_files,
                       refreshed_at = excluded.refreshed_at""",
                (format_ts(now),),
            )
        return await self.get_storage_stats_row()

    async def get_storage_stats_row(self) -> Dict[str, Any]:
        row = await self._fetchone("SELECT * FROM storage_stats WHERE id = 1")
        return row or {}

    async def get_pool_summary(self) -> Dict[str, Any]:
        """Live aggregates over shared objects and references."""
        shared = await self._fetchone(
            """SELECT COUNT(*) AS files,
                      COALESCE(SUM(size_bytes), 0) AS size,
                      COALESCE(SUM(CASE WHEN is_compressed = 1 THEN compressed_size_bytes
                                        ELSE size_bytes END), 0) AS stored,
                      COALESCE(SUM(reference_count), 0) AS refs,
                      COALESCE(SUM(CASE WHEN reference_count = 0 THEN 1 ELSE 0 END), 0) AS unused,
                      COALESCE(SUM(CASE WHEN is_compressed = 1 THEN 1 ELSE 0 END), 0) AS compressed,
                      COALESCE(SUM(CASE WHEN storage_tier = 'cold' THEN 1 ELSE 0 END), 0) AS cold
               FROM shared_objects"""
        )
        refs = await self._fetchone(
            """SELECT COUNT(*) AS files,
                      COALESCE(SUM(file_size_bytes), 0) AS size,
                      COALESCE(SUM(CASE WHEN is_modified = 1 THEN 1 ELSE 0 END), 0) AS modified,
                      COALESCE(SUM(CASE WHEN is_modified = 1 THEN file_size_bytes ELSE 0 END), 0)
                          AS private_size
               FROM user_references"""
        )
        return {"shared": shared or {}, "references": refs or {}}

    # --- User references ---

    async def get_user_reference(self, user_id: str, entry_id: int) -> Optional[UserReference]:
        row = await self._fetchone(
            "SELECT * FROM user_references WHERE user_id = ? AND entry_id = ?",
            (user_id, entry_id),
        )
        return UserReference.from_row(row) if row else None

    async def get_reference_by_path(self, user_id: str, user_path: str) -> Optional[UserReference]:
        """Resolve a user-facing path (case-insensitive) to its reference."""
        row = await self._fetchone(
            """SELECT * FROM user_references
               WHERE user_id = ? AND user_path = ? COLLATE NOCASE
               LIMIT 1""",
            (user_id, user_path),
        )
        return UserReference.from_row(row) if row else None

    async def get_references_for_hash(
        self,
        content_hash: str,
        modified: Optional[bool] = None,
    ) -> List[UserReference]:
        if modified is None:
            rows = await self._fetchall(
                "SELECT * FROM user_references WHERE content_hash = ? ORDER BY id",
                (content_hash,),
            )
        else:
            rows = await self._fetchall(
                """SELECT * FROM user_references
                   WHERE content_hash = ? AND is_modified = ? ORDER BY id""",
                (content_hash, int(modified)),
            )
        return [UserReference.from_row(r) for r in rows]

    async def get_reference_holders(self, entry_id: int) -> Set[str]:
        """User IDs that already hold a reference to an entry."""
        rows = await self._fetchall(
            "SELECT user_id FROM user_references WHERE entry_id = ?", (entry_id,)
        )
        return {r["user_id"] for r in rows}

    async def get_user_references(self, user_id: str) -> List[UserReference]:
        rows = await self._fetchall(
            "SELECT * FROM user_references WHERE user_id = ? ORDER BY entry_id", (user_id,)
        )
        return [UserReference.from_row(r) for r in rows]

    async def get_modified_references(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[UserReference], int]:
        rows = await self._fetchall(
            """SELECT * FROM user_references
               WHERE user_id = ? AND is_modified = 1
               ORDER BY modified_at DESC, id DESC
               LIMIT ? OFFSET ?""",
            (user_id, limit, offset),
        )
        total = await self._scalar(
            "SELECT COUNT(*) FROM user_references WHERE user_id = ? AND is_modified = 1",
            (user_id,),
        )
        return [UserReference.from_row(r) for r in rows], total or 0

    async def get_eviction_candidates(
        self,
        user_id: str,
        modified: bool,
        limit: int = 100,
    ) -> List[UserReference]:
        """Least-recently-accessed references of one kind for a user."""
        rows = await self._fetchall(
            """SELECT * FROM user_references
               WHERE user_id = ? AND is_modified = ?
               ORDER BY last_accessed_at ASC, id ASC
               LIMIT ?""",
            (user_id, int(modified), limit),
        )
        return [UserReference.from_row(r) for r in rows]

    async def touch_reference(self, ref_id: int, now: datetime) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "UPDATE user_references SET last_accessed_at = ? WHERE id = ?",
                (format_ts(now), ref_id),
            )

    async def attach_user_reference(
        self,
        ref: UserReference,
        quota_defaults: Tuple[int, int],
        new_object: Optional[SharedObject] = None,
        enforce_quota: bool = True,
    ) -> UserReference:
        """Create a reference and increment its shared object's count atomically.

        If ``new_object`` is given it is inserted first (no-op if another
        writer created it). Raises NotFoundError if the shared object does not
        exist, QuotaExceededError if the copy does not fit the user's quota.
        """
        now = ref.created_at or utcnow()
        async with self._transaction() as conn:
            if new_object is not None:
                await conn.execute(
                    f"""INSERT INTO shared_objects {_SHARED_COLUMNS}
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(content_hash) DO NOTHING""",
                    new_object.to_row(),
                )

            cursor = await conn.execute(
                "SELECT * FROM shared_objects WHERE content_hash = ?", (ref.content_hash,)
            )
            row = await cursor.fetchone()
            if not row:
                raise NotFoundError(f"Shared object does not exist: {ref.content_hash}")
            shared = SharedObject.from_row(dict(row))
            ref.storage_path = shared.storage_path
            ref.file_size_bytes = shared.size_bytes

            max_bytes, max_files = quota_defaults
            await conn.execute(
                """INSERT OR IGNORE INTO user_quotas (user_id, max_storage_bytes, max_file_count)
                   VALUES (?, ?, ?)""",
                (ref.user_id, max_bytes, max_files),
            )
            cursor = await conn.execute(
                "SELECT * FROM user_quotas WHERE user_id = ?", (ref.user_id,)
            )
            quota = UserQuota.from_row(dict(await cursor.fetchone()))
            if enforce_quota:
                if quota.used_file_count + 1 > quota.max_file_count:
                    raise QuotaExceededError(
                        ref.user_id, quota.used_file_count, 1, quota.max_file_count, unit="files"
                    )
                if quota.used_storage_bytes + ref.file_size_bytes > quota.max_storage_bytes:
                    raise QuotaExceededError(
                        ref.user_id,
                        quota.used_storage_bytes,
                        ref.file_size_bytes,
                        quota.max_storage_bytes,
                    )

            cursor = await conn.execute(
                f"""INSERT INTO user_references {_REF_COLUMNS}
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                ref.to_row(),
            )
            ref.id = cursor.lastrowid
            await conn.execute(
                """UPDATE shared_objects
                   SET reference_count = reference_count + 1,
                       last_accessed_at = ?,
                       access_frequency = access_frequency + 1
                   WHERE content_hash = ?""",
                (format_ts(now), ref.content_hash),
            )
            await conn.execute(
                """UPDATE user_quotas
                   SET used_storage_bytes = used_storage_bytes + ?,
                       used_file_count = used_file_count + 1
                   WHERE user_id = ?""",
                (ref.file_size_bytes, ref.user_id),
            )
        return ref

    async def fork_user_reference(
        self,
        ref_id: int,
        new_hash: str,
        storage_path: str,
        size_bytes: int,
        now: datetime,
    ) -> UserReference:
        """Point a reference at private bytes, detaching it from its shared object.

        The shared count is decremented by exactly one on the first fork only.
        Returns the reference as it was before the update.
        """
        async with self._transaction() as conn:
            cursor = await conn.execute("SELECT * FROM user_references WHERE id = ?", (ref_id,))
            row = await cursor.fetchone()
            if not row:
                raise NotFoundError(f"User reference {ref_id} does not exist")
            before = UserReference.from_row(dict(row))

            await conn.execute(
                """UPDATE user_references
                   SET is_modified = 1, current_hash = ?, storage_path = ?, file_size_bytes = ?,
                       modified_at = ?, last_accessed_at = ?
                   WHERE id = ?""",
                (new_hash, storage_path, size_bytes, format_ts(now), format_ts(now), ref_id),
            )
            if not before.is_modified:
                cursor = await conn.execute(
                    """UPDATE shared_objects SET reference_count = reference_count - 1
                       WHERE content_hash = ? AND reference_count > 0""",
                    (before.content_hash,),
                )
                if cursor.rowcount == 0:
                    logger.warning(
                        "Detached reference %d from %s but no count was held",
                        ref_id, before.content_hash,
                    )
            await conn.execute(
                """UPDATE user_quotas
                   SET used_storage_bytes = MAX(0, used_storage_bytes + ?)
                   WHERE user_id = ?""",
                (size_bytes - before.file_size_bytes, before.user_id),
            )
        return before

    async def delete_user_reference(self, ref_id: int) -> Optional[UserReference]:
        """Delete a reference, releasing its count (if shared) and its quota usage."""
        async with self._transaction() as conn:
            cursor = await conn.execute("SELECT * FROM user_references WHERE id = ?", (ref_id,))
            row = await cursor.fetchone()
            if not row:
                return None
            ref = UserReference.from_row(dict(row))
            await conn.execute("DELETE FROM user_references WHERE id = ?", (ref_id,))
            if not ref.is_modified:
                await conn.execute(
                    """UPDATE shared_objects SET reference_count = reference_count - 1
                       WHERE content_hash = ? AND reference_count > 0""",
                    (ref.content_hash,),
                )
            await conn.execute(
                """UPDATE user_quotas
                   SET used_storage_bytes = MAX(0, used_storage_bytes - ?),
                       used_file_count = MAX(0, used_file_count - 1)
                   WHERE user_id = ?""",
                (ref.file_size_bytes, ref.user_id),
            )
            return ref

    # --- Quotas ---

    async def set_quota_limits(
        self,
        user_id: str,
        max_bytes: int,
        max_files: Optional[int] = None,
    ) -> None:
        """Change a user's limits. Usage columns are left to reference transactions."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """UPDATE user_quotas
                   SET max_storage_bytes = ?, max_file_count = COALESCE(?, max_file_count)
                   WHERE user_id = ?""",
                (max_bytes, max_files, user_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"No quota row for user {user_id}")

    async def get_quota(self, user_id: str) -> Optional[UserQuota]:
        row = await self._fetchone("SELECT * FROM user_quotas WHERE user_id = ?", (user_id,))
        return UserQuota.from_row(row) if row else None

    async def get_all_quotas(self) -> List[UserQuota]:
        rows = await self._fetchall("SELECT * FROM user_quotas ORDER BY user_id")
        return [UserQuota.from_row(r) for r in rows]

    # --- Distribution ---

    async def upsert_preferences(self, prefs: UserPreferences) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT INTO user_preferences
                   (user_id, enabled_topics, enabled_keywords, min_importance_score,
                    content_types, max_daily_content, is_active)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                       enabled_topics=excluded.enabled_topics,
                       enabled_keywords=excluded.enabled_keywords,
                       min_importance_score=excluded.min_importance_score,
                       content_types=excluded.content_types,
                       max_daily_content=excluded.max_daily_content,
                       is_active=excluded.is_active""",
                prefs.to_row(),
            )

    async def get_active_preferences(self) -> List[UserPreferences]:
        """Active preference profiles in a stable (user_id) order."""
        rows = await self._fetchall(
            "SELECT * FROM user_preferences WHERE is_active = 1 ORDER BY user_id"
        )
        return [UserPreferences.from_row(r) for r in rows]

    async def upsert_credentials(self, user_id: str, is_active: bool = True) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT INTO sync_credentials (user_id, is_active) VALUES (?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                       is_active=excluded.is_active, updated_at=CURRENT_TIMESTAMP""",
                (user_id, int(is_active)),
            )

    async def has_active_credentials(self, user_id: str) -> bool:
        row = await self._fetchone(
            "SELECT 1 AS ok FROM sync_credentials WHERE user_id = ? AND is_active = 1",
            (user_id,),
        )
        return row is not None

    async def insert_user_note(self, note: UserNote) -> bool:
        """Write the user-facing note record. Returns False if it already existed."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """INSERT OR IGNORE INTO user_notes
                   (user_id, entry_id, processed_content_id, title, user_path, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                note.to_row(),
            )
            return cursor.rowcount == 1

    async def count_user_notes(self, user_id: Optional[str] = None) -> int:
        if user_id:
            return await self._scalar("SELECT COUNT(*) FROM user_notes WHERE user_id = ?", (user_id,))
        return await self._scalar("SELECT COUNT(*) FROM user_notes")

    async def log_distribution(self, log: DistributionLog) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                """INSERT INTO distribution_logs
                   (user_id, entry_id, content_hash, status, error, priority, processing_ms,
                    created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                log.to_row(),
            )

    async def count_delivered_since(self, since: datetime) -> Dict[str, int]:
        """Successful deliveries per user since a point in time."""
        rows = await self._fetchall(
            """SELECT user_id, COUNT(*) AS cnt FROM distribution_logs
               WHERE status = 'success' AND created_at >= ?
               GROUP BY user_id""",
            (format_ts(since),),
        )
        return {r["user_id"]: r["cnt"] for r in rows}

    async def get_distribution_stats(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        where, params = ("WHERE user_id = ?", (user_id,)) if user_id else ("", ())
        row = await self._fetchone(
            f"""SELECT COUNT(DISTINCT user_id) AS total_users,
                       COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END), 0) AS succeeded,
                       COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0) AS failed,
                       COALESCE(AVG(processing_ms), 0) AS avg_ms
                FROM distribution_logs {where}""",
            params,
        )
        return row or {}

    # --- Optimizer jobs ---

    async def claim_job(self, job_type: str, now: datetime, lease_until: datetime) -> bool:
        """Take the single-flight lease for a job type. False if another run holds it."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """INSERT INTO optimizer_jobs (job_type, status, started_at, lease_expires_at)
                   VALUES (?, 'running', ?, ?)
                   ON CONFLICT(job_type) DO UPDATE SET
                       status = 'running',
                       started_at = excluded.started_at,
                       finished_at = NULL,
                       lease_expires_at = excluded.lease_expires_at
                   WHERE optimizer_jobs.status != 'running'
                      OR optimizer_jobs.lease_expires_at < excluded.started_at""",
                (job_type, format_ts(now), format_ts(lease_until)),
            )
            return cursor.rowcount == 1

    async def release_job(self, job_type: str, status: str, now: datetime) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                """UPDATE optimizer_jobs
                   SET status = ?, finished_at = ?, lease_expires_at = NULL
                   WHERE job_type = ?""",
                (status, format_ts(now), job_type),
            )

    async def get_jobs(self) -> List[Dict[str, Any]]:
        return await self._fetchall("SELECT * FROM optimizer_jobs ORDER BY job_type")

    # --- Edit isolation failures ---

    async def record_isolation_failure(
        self,
        user_id: str,
        path: str,
        operation: str,
        error: str,
        now: datetime,
    ) -> int:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """INSERT INTO isolation_failures (user_id, path, operation, error, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (user_id, path, operation, error, format_ts(now)),
            )
            return cursor.lastrowid or 0

    async def get_isolation_failures(self, unresolved_only: bool = True) -> List[IsolationFailure]:
        if unresolved_only:
            rows = await self._fetchall(
                "SELECT * FROM isolation_failures WHERE resolved_at IS NULL ORDER BY id"
            )
        else:
            rows = await self._fetchall("SELECT * FROM isolation_failures ORDER BY id")
        return [IsolationFailure.from_row(r) for r in rows]

    async def resolve_isolation_failure(self, failure_id: int, now: datetime) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """UPDATE isolation_failures SET resolved_at = ?
                   WHERE id = ? AND resolved_at IS NULL""",
                (format_ts(now), failure_id),
            )
            return cursor.rowcount == 1

    # --- Maintenance ---

    async def vacuum(self) -> None:
        """Run VACUUM to reclaim space and defragment."""
        assert self._conn is not None
        async with self._write_lock:
            await self._conn.execute("VACUUM")

    async def integrity_check(self) -> bool:
        """Run integrity check on the database."""
        row = await self._fetchone("PRAGMA integrity_check")
        return row is not None and next(iter(row.values())) == "ok"

    async def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        stats: Dict[str, Any] = {}
        for key, table in (
            ("total_fingerprints", "content_fingerprints"),
            ("total_shared_objects", "shared_objects"),
            ("total_references", "user_references"),
            ("total_quotas", "user_quotas"),
            ("total_preferences", "user_preferences"),
            ("total_notes", "user_notes"),
            ("total_distribution_logs", "distribution_logs"),
        ):
            stats[key] = await self._scalar(f"SELECT COUNT(*) FROM {table}") or 0

        stats["db_size_bytes"] = await self._scalar(
            "SELECT page_count * page_size as size FROM pragma_page_count(), pragma_page_size()"
        ) or 0
        return stats


_UPSERT_FINGERPRINT_SQL = """
    INSERT INTO content_fingerprints
    (normalized_url, content_hash, canonical_entry_id, owner_user_id, source_id, title,
     published_at, metadata, first_seen_at, last_accessed_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(normalized_url) DO UPDATE SET
        content_hash = COALESCE(excluded.content_hash, content_hash),
        canonical_entry_id = excluded.canonical_entry_id,
        owner_user_id = excluded.owner_user_id,
        source_id = COALESCE(excluded.source_id, source_id),
        title = COALESCE(excluded.title, title),
        published_at = COALESCE(excluded.published_at, published_at),
        metadata = COALESCE(excluded.metadata, metadata),
        last_accessed_at = excluded.last_accessed_at
"""
