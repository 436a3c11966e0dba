"""URL fingerprint index and its in-process cache."""

from contentpool.dedup.cache import DedupCache
from contentpool.dedup.fingerprint import (
    ContentCheckResult,
    FingerprintIndex,
    UrlRegistration,
    canonical_url,
)

__all__ = [
    "DedupCache",
    "ContentCheckResult",
    "FingerprintIndex",
    "UrlRegistration",
    "canonical_url",
]
