"""Shared content pool: content-addressed storage with copy-on-write user copies."""

from contentpool.pool.locks import HashLocks
from contentpool.pool.shared import SharedContentPool, UpdateResult, UserContent

__all__ = ["HashLocks", "SharedContentPool", "UpdateResult", "UserContent"]
