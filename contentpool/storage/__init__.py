"""Storage layer - SQLite (WAL mode) for metadata, a blob store for content bytes."""

from contentpool.storage.blobs import BlobStore, LocalBlobStore
from contentpool.storage.db import DatabaseManager
from contentpool.storage.models import (
    ContentFingerprint,
    DistributionLog,
    SharedObject,
    UserPreferences,
    UserQuota,
    UserReference,
)

__all__ = [
    "BlobStore",
    "LocalBlobStore",
    "DatabaseManager",
    "ContentFingerprint",
    "DistributionLog",
    "SharedObject",
    "UserPreferences",
    "UserQuota",
    "UserReference",
]
