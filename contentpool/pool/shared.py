"""Content-addressed shared pool with reference counting and copy-on-write.

Each distinct document is stored once under ``shared/<hash>/``. Users hold
references to it; the first edit forks the user's copy into a private blob
under ``users/<user>/private/`` and releases the shared reference.
"""

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass
from typing import Any, Optional

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from contentpool.errors import (
    ConcurrencyConflictError,
    CorruptStateError,
    NotFoundError,
    QuotaExceededError,
    TransientIOError,
)
from contentpool.pool.locks import HashLocks
from contentpool.storage.blobs import BlobStore
from contentpool.storage.db import DatabaseManager
from contentpool.storage.models import (
    TIER_COLD,
    TIER_HOT,
    SharedObject,
    UserReference,
    compute_content_hash,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_QUOTA_BYTES = 1024 * 1024 * 1024
DEFAULT_QUOTA_FILES = 10_000
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024
DEFAULT_COMPRESSION_LEVEL = 6

_retry_on_conflict = retry(
    retry=retry_if_exception_type(ConcurrencyConflictError),
    stop=stop_after_attempt(2),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    reraise=True,
)


# --- Key layout ---

def object_key(content_hash: str, tier: str = TIER_HOT, compressed: bool = False) -> str:
    prefix = "cold" if tier == TIER_COLD else "shared"
    name = "original.md.z" if compressed else "original.md"
    return f"{prefix}/{content_hash}/{name}"


def user_note_path(user_id: str, entry_id: int) -> str:
    return f"users/{user_id}/notes/{entry_id}.md"


def private_key(user_id: str, entry_id: int) -> str:
    return f"users/{user_id}/private/{entry_id}.md"


def _to_bytes(content: str | bytes) -> bytes:
    return content.encode("utf-8") if isinstance(content, str) else content


@dataclass
class UpdateResult:
    """Outcome of a user write routed through copy-on-write."""

    is_new_copy: bool
    path: str
    content_hash: str
    changed: bool = True


@dataclass
class UserContent:
    content: str
    path: str
    is_modified: bool
    content_hash: str


class SharedContentPool:
    """Stores canonical content once and hands out per-user references.

    Every change to a hash's reference count happens under that hash's
    lock and inside one database transaction.
    """

    def __init__(
        self,
        db: DatabaseManager,
        blobs: BlobStore,
        config: Optional[dict[str, Any]] = None,
        locks: Optional[HashLocks] = None,
    ) -> None:
        cfg = (config or {}).get("pool", {})
        self._db = db
        self._blobs = blobs
        self._locks = locks or HashLocks()
        self.default_quota_bytes: int = cfg.get("default_quota_bytes", DEFAULT_QUOTA_BYTES)
        self.default_quota_files: int = cfg.get("default_quota_files", DEFAULT_QUOTA_FILES)
        self.max_file_size: int = cfg.get("max_file_size_bytes", DEFAULT_MAX_FILE_SIZE)
        self.enforce_quota: bool = cfg.get("enforce_quota", True)
        self.compression_level: int = cfg.get("compression_level", DEFAULT_COMPRESSION_LEVEL)

    @property
    def db(self) -> DatabaseManager:
        return self._db

    @property
    def locks(self) -> HashLocks:
        return self._locks

    # --- Shared objects ---

    def _check_payload(self, content_hash: str, data: bytes) -> None:
        if len(data) > self.max_file_size:
            raise ValueError(
                f"Content too large: {len(data)} bytes (limit {self.max_file_size})"
            )
        actual = compute_content_hash(data)
        if actual != content_hash:
            raise ValueError(f"Content hash mismatch: expected {content_hash}, got {actual}")

    def _new_object(
        self,
        content_hash: str,
        data: bytes,
        metadata: Optional[dict[str, Any]],
    ) -> SharedObject:
        now = utcnow()
        return SharedObject(
            content_hash=content_hash,
            storage_path=object_key(content_hash),
            size_bytes=len(data),
            reference_count=0,
            metadata=metadata,
            created_at=now,
            last_accessed_at=now,
        )

    @_retry_on_conflict
    async def store_to_shared_pool(
        self,
        content_hash: str,
        content: str | bytes,
        metadata: Optional[dict[str, Any]] = None,
    ) -> SharedObject:
        """Upload canonical bytes once. Returns the existing object if present."""
        data = _to_bytes(content)
        self._check_payload(content_hash, data)
        async with self._locks.hold(content_hash):
            existing = await self._db.get_shared_object(content_hash)
            if existing is not None:
                logger.debug("Shared object %s already stored", content_hash)
                return existing
            obj = self._new_object(content_hash, data, metadata)
            await self._blobs.put(obj.storage_path, data)
            await self._db.insert_shared_object(obj)
            logger.info("Stored shared object %s (%d bytes)", content_hash, obj.size_bytes)
        stored = await self._db.get_shared_object(content_hash)
        assert stored is not None
        return stored

    @_retry_on_conflict
    async def create_user_copy(
        self,
        user_id: str,
        entry_id: int,
        content_hash: str,
        content: Optional[str | bytes] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """Give ``user_id`` a logical copy of the shared object. Returns the user path.

        Creates the shared object from ``content`` if it does not exist yet.
        An existing reference for (user, entry) is returned unchanged.
        """
        existing = await self._db.get_user_reference(user_id, entry_id)
        if existing is not None:
            return existing.user_path

        async with self._locks.hold(content_hash):
            new_obj: Optional[SharedObject] = None
            if await self._db.get_shared_object(content_hash) is None:
                if content is None:
                    raise NotFoundError(
                        f"Shared object {content_hash} does not exist and no content was given"
                    )
                data = _to_bytes(content)
                self._check_payload(content_hash, data)
                new_obj = self._new_object(content_hash, data, metadata)
                await self._blobs.put(new_obj.storage_path, data)

            now = utcnow()
            ref = UserReference(
                user_id=user_id,
                entry_id=entry_id,
                content_hash=content_hash,
                user_path=user_note_path(user_id, entry_id),
                storage_path="",
                file_size_bytes=0,
                created_at=now,
                last_accessed_at=now,
            )
            try:
                ref = await self._db.attach_user_reference(
                    ref,
                    (self.default_quota_bytes, self.default_quota_files),
                    new_object=new_obj,
                    enforce_quota=self.enforce_quota,
                )
            except (QuotaExceededError, ConcurrencyConflictError):
                if new_obj is not None and await self._db.get_shared_object(content_hash) is None:
                    await self._blobs.delete(new_obj.storage_path)
                raise

        logger.info(
            "User copy created: user=%s entry=%d hash=%s%s",
            user_id, entry_id, content_hash[:12], " (new shared object)" if new_obj else "",
        )
        return ref.user_path

    # --- Copy-on-write ---

    @_retry_on_conflict
    async def handle_user_content_update(
        self,
        user_id: str,
        entry_id: int,
        new_content: str | bytes,
    ) -> UpdateResult:
        """Route a user edit through copy-on-write.

        Identical content (same hash) is a no-op. The first differing write
        forks the reference into a private blob and releases one shared
        reference; later writes overwrite the private blob.
        """
        ref = await self._db.get_user_reference(user_id, entry_id)
        if ref is None:
            raise NotFoundError(f"No reference for user {user_id} entry {entry_id}")

        data = _to_bytes(new_content)
        new_hash = compute_content_hash(data)
        if new_hash == ref.current_hash:
            return UpdateResult(False, ref.user_path, new_hash, changed=False)

        async with self._locks.hold(ref.content_hash):
            current = await self._db.get_user_reference(user_id, entry_id)
            if current is None:
                raise NotFoundError(f"No reference for user {user_id} entry {entry_id}")
            if new_hash == current.current_hash:
                return UpdateResult(False, current.user_path, new_hash, changed=False)

            key = private_key(user_id, entry_id)
            await self._blobs.put(key, data)
            assert current.id is not None
            before = await self._db.fork_user_reference(
                current.id, new_hash, key, len(data), utcnow()
            )

        is_new_copy = not before.is_modified
        if is_new_copy:
            logger.info(
                "Forked user copy: user=%s entry=%d from %s", user_id, entry_id, before.content_hash[:12]
            )
        return UpdateResult(is_new_copy, before.user_path, new_hash)

    # --- Reads ---

    async def _require_shared(self, ref: UserReference) -> SharedObject:
        obj = await self._db.get_shared_object(ref.content_hash)
        if obj is None:
            raise CorruptStateError(
                f"Reference {ref.id} points at missing shared object {ref.content_hash}",
                user_id=ref.user_id,
                entry_id=ref.entry_id,
            )
        return obj

    async def read_object(self, obj: SharedObject) -> bytes:
        """Return the plain bytes of a shared object. Caller holds the hash lock."""
        data = await self._blobs.get(obj.storage_path)
        if obj.is_compressed:
            try:
                data = zlib.decompress(data)
            except zlib.error as e:
                raise TransientIOError(f"Corrupt compressed blob {obj.storage_path}: {e}") from e
        return data

    async def get_user_content(self, user_id: str, entry_id: int) -> Optional[UserContent]:
        """Read a user's copy. A dangling reference is removed and None returned."""
        ref = await self._db.get_user_reference(user_id, entry_id)
        if ref is None:
            raise NotFoundError(f"No reference for user {user_id} entry {entry_id}")
        assert ref.id is not None
        now = utcnow()

        if ref.is_modified:
            data = await self._blobs.get(ref.storage_path)
        else:
            async with self._locks.hold(ref.content_hash):
                try:
                    obj = await self._require_shared(ref)
                except CorruptStateError as e:
                    logger.warning("%s; removing orphaned reference", e)
                    await self._db.delete_user_reference(ref.id)
                    return None
                data = await self.read_object(obj)
                await self._db.touch_shared_object(obj.content_hash, now)

        await self._db.touch_reference(ref.id, now)
        assert ref.current_hash is not None
        return UserContent(data.decode("utf-8"), ref.user_path, ref.is_modified, ref.current_hash)

    async def resolve_path(self, user_id: str, user_path: str) -> Optional[UserReference]:
        return await self._db.get_reference_by_path(user_id, user_path)

    # --- Release / GC ---

    @_retry_on_conflict
    async def release_user_copy(self, user_id: str, entry_id: int) -> bool:
        """Drop a user's reference and its quota usage. Returns False if absent."""
        ref = await self._db.get_user_reference(user_id, entry_id)
        if ref is None:
            return False
        assert ref.id is not None
        async with self._locks.hold(ref.content_hash):
            deleted = await self._db.delete_user_reference(ref.id)
        if deleted is None:
            return False
        if deleted.is_modified:
            await self._blobs.delete(deleted.storage_path)
        logger.info("Released user copy: user=%s entry=%d", user_id, entry_id)
        return True

    async def remove_orphaned_reference(self, ref: UserReference) -> bool:
        """Delete an unmodified reference whose shared object is gone."""
        assert ref.id is not None
        async with self._locks.hold(ref.content_hash):
            if await self._db.get_shared_object(ref.content_hash) is not None:
                return False
            return await self._db.delete_user_reference(ref.id) is not None

    @_retry_on_conflict
    async def delete_unreferenced(self, content_hash: str) -> Optional[SharedObject]:
        """Delete a shared object if it still has no references.

        Returns the deleted object, or None if it was kept.
        """
        async with self._locks.hold(content_hash):
            obj = await self._db.delete_shared_object_if_unreferenced(content_hash)
            if obj is None:
                return None
            try:
                await self._blobs.delete(obj.storage_path)
            except TransientIOError as e:
                logger.warning("Shared object %s deleted but blob removal failed: %s", content_hash, e)
        logger.info("Deleted unreferenced object %s (%d bytes)", content_hash, obj.stored_size_bytes)
        return obj

    async def repair_reference_count(self, content_hash: str) -> int:
        """Recount a hash's unmodified references under its lock."""
        async with self._locks.hold(content_hash):
            return await self._db.repair_reference_count(content_hash)

    # --- Maintenance primitives ---

    @_retry_on_conflict
    async def optimize_references(self, content_hash: str) -> int:
        """Re-point drifted unmodified references at the canonical path.

        Stray blobs no longer referenced by anything are deleted. Returns the
        number of references re-pointed.
        """
        async with self._locks.hold(content_hash):
            obj = await self._db.get_shared_object(content_hash)
            if obj is None:
                return 0
            repointed, strays = await self._db.realign_reference_paths(
                content_hash, obj.storage_path
            )
            for path in strays:
                if not await self._db.storage_path_in_use(path):
                    await self._blobs.delete(path)
        if repointed:
            logger.info("Realigned %d references for %s", repointed, content_hash[:12])
        return repointed

    @_retry_on_conflict
    async def compress_object(self, content_hash: str) -> int:
        """zlib-compress a shared object's blob. Returns bytes saved (0 if skipped)."""
        async with self._locks.hold(content_hash):
            obj = await self._db.get_shared_object(content_hash)
            if obj is None or obj.is_compressed:
                return 0
            data = await self._blobs.get(obj.storage_path)
            packed = zlib.compress(data, self.compression_level)
            if len(packed) >= len(data):
                logger.debug("Compression does not shrink %s; skipped", content_hash[:12])
                return 0
            new_key = object_key(content_hash, obj.storage_tier, compressed=True)
            await self._blobs.put(new_key, packed)
            ratio = round(len(packed) / len(data), 4) if data else 1.0
            await self._db.mark_compressed(content_hash, new_key, len(packed), ratio, utcnow())
            await self._blobs.delete(obj.storage_path)
        return len(data) - len(packed)

    @_retry_on_conflict
    async def archive_object(self, content_hash: str) -> bool:
        """Move a shared object's blob to the cold tier."""
        async with self._locks.hold(content_hash):
            obj = await self._db.get_shared_object(content_hash)
            if obj is None or obj.storage_tier == TIER_COLD:
                return False
            data = await self._blobs.get(obj.storage_path)
            new_key = object_key(content_hash, TIER_COLD, compressed=obj.is_compressed)
            await self._blobs.put(new_key, data)
            await self._db.move_shared_object(content_hash, new_key, TIER_COLD, utcnow())
            await self._blobs.delete(obj.storage_path)
        logger.info("Archived %s to cold tier", content_hash[:12])
        return True

    # --- Stats ---

    async def get_storage_stats(self) -> dict[str, Any]:
        """Counts and byte totals, plus the space saved by sharing."""
        summary = await self._db.get_pool_summary()
        shared = summary["shared"]
        refs = summary["references"]
        logical = refs.get("size", 0)
        actual = shared.get("stored", 0) + refs.get("private_size", 0)
        savings = max(0, logical - actual)
        return {
            "total_shared_files": shared.get("files", 0),
            "total_user_files": refs.get("files", 0),
            "modified_user_files": refs.get("modified", 0),
            "shared_bytes": shared.get("size", 0),
            "stored_bytes": shared.get("stored", 0),
            "private_bytes": refs.get("private_size", 0),
            "total_storage_used": actual,
            "shared_content_savings": savings,
            "savings_ratio": round(savings / logical, 4) if logical else 0.0,
            "unused_shared_files": shared.get("unused", 0),
            "compressed_shared_files": shared.get("compressed", 0),
            "cold_shared_files": shared.get("cold", 0),
        }
