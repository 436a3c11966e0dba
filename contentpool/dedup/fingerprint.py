"""URL fingerprint index: decides whether an incoming URL was already ingested.

The persistent ``content_fingerprints`` table is the source of truth. A
``DedupCache`` sits in front of it as a soft accelerator; a cache miss always
falls through to the database and a cache entry is only written after the
database write succeeded.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from contentpool.dedup.cache import DEFAULT_CAPACITY, DEFAULT_TTL_SECONDS, DedupCache
from contentpool.storage.db import DatabaseManager
from contentpool.storage.models import ContentFingerprint, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTENT_AGE_DAYS = 30

_TRACKING_PARAMS = {
    "ref", "source", "fbclid", "gclid", "dclid", "msclkid", "mc_cid", "mc_eid", "igshid",
}
_DEFAULT_PORTS = {"http": 80, "https": 443}


# ---------------------------------------------------------------------------
# URL canonicalization
# ---------------------------------------------------------------------------

def canonical_url(url: str) -> str:
    """Normalize a URL for dedup comparison.

    Lowercases scheme and host, upgrades http to https, drops ``www.``,
    default ports, fragments, trailing slashes and tracking parameters, and
    sorts the remaining query parameters.
    """
    raw = url.strip()
    if not raw:
        raise ValueError("Empty URL")
    parsed = urlparse(raw)
    scheme = parsed.scheme.lower()
    if not scheme or not parsed.netloc:
        return raw.lower()

    original_scheme = scheme
    if scheme == "http":
        scheme = "https"

    host = (parsed.hostname or "").rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    try:
        port = parsed.port
    except ValueError:
        port = None
    netloc = host
    if port is not None and port != _DEFAULT_PORTS.get(original_scheme):
        netloc = f"{host}:{port}"

    path = parsed.path.rstrip("/") or "/"

    params = [
        (k, v)
        for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if not k.lower().startswith("utm_") and k.lower() not in _TRACKING_PARAMS
    ]
    query = urlencode(sorted(params))
    return urlunparse((scheme, netloc, path, "", query, ""))


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ContentCheckResult:
    """Outcome of a duplicate check."""

    is_duplicate: bool
    existing_entry_id: Optional[int] = None
    user_id: Optional[str] = None
    processing_ms: float = 0.0
    normalized_url: Optional[str] = None


@dataclass
class UrlRegistration:
    """One URL to register in a batch."""

    url: str
    entry_id: int
    user_id: str
    content_hash: Optional[str] = None
    source_id: Optional[int] = None
    title: Optional[str] = None
    published_at: Optional[datetime] = None
    metadata: Optional[dict[str, Any]] = None


@dataclass
class BatchRegisterResult:
    success: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class CleanupStats:
    expired_removed: int = 0
    cache_evicted: int = 0
    processing_ms: float = 0.0


# ---------------------------------------------------------------------------
# FingerprintIndex
# ---------------------------------------------------------------------------

class FingerprintIndex:
    """URL-based deduplication backed by SQLite with an in-process cache."""

    def __init__(
        self,
        db: DatabaseManager,
        config: Optional[dict[str, Any]] = None,
        cache: Optional[DedupCache] = None,
    ) -> None:
        cfg = (config or {}).get("dedup", {})
        self._db = db
        self.max_content_age_days: int = cfg.get(
            "max_content_age_days", DEFAULT_MAX_CONTENT_AGE_DAYS
        )
        self._cache = cache or DedupCache(
            ttl_seconds=cfg.get("cache_ttl_seconds", DEFAULT_TTL_SECONDS),
            capacity=cfg.get("cache_capacity", DEFAULT_CAPACITY),
        )

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return (time.perf_counter() - start) * 1000

    async def check_duplicate(
        self,
        url: str,
        user_id: Optional[str] = None,
        source_id: Optional[int] = None,
    ) -> ContentCheckResult:
        """Return whether ``url`` was already ingested.

        Any failure is reported as a duplicate so the caller skips the entry.
        """
        start = time.perf_counter()
        try:
            key = canonical_url(url)
            cached = self._cache.get(key)
            if cached is not None:
                entry_id, owner = cached
                return ContentCheckResult(
                    True, entry_id, owner, self._elapsed_ms(start), key
                )

            fp = await self._db.get_fingerprint(key)
            if fp is not None:
                self._cache.put(key, (fp.canonical_entry_id, fp.owner_user_id))
                logger.debug(
                    "Duplicate URL %s (entry %d, source %s)", key, fp.canonical_entry_id, source_id
                )
                return ContentCheckResult(
                    True, fp.canonical_entry_id, fp.owner_user_id, self._elapsed_ms(start), key
                )
            return ContentCheckResult(False, None, None, self._elapsed_ms(start), key)
        except Exception as e:
            logger.error("Duplicate check failed for %s (user %s): %s", url, user_id, e)
            return ContentCheckResult(True, processing_ms=self._elapsed_ms(start))

    async def register_processed_url(
        self,
        url: str,
        entry_id: int,
        user_id: str,
        metadata: Optional[dict[str, Any]] = None,
        content_hash: Optional[str] = None,
        source_id: Optional[int] = None,
        title: Optional[str] = None,
        published_at: Optional[datetime] = None,
    ) -> ContentFingerprint:
        """Record that ``url`` was ingested as ``entry_id``. Idempotent.

        Raises TransientIOError if the persistent write fails; the cache is
        left untouched in that case.
        """
        fp = self._make_fingerprint(
            UrlRegistration(
                url, entry_id, user_id, content_hash, source_id, title, published_at, metadata
            )
        )
        await self._db.upsert_fingerprint(fp)
        self._cache.put(fp.normalized_url, (entry_id, user_id))
        logger.info("Registered URL %s -> entry %d", fp.normalized_url, entry_id)
        return fp

    async def batch_check_duplicate_urls(self, urls: list[str]) -> dict[str, ContentCheckResult]:
        """Check many URLs with a single database round trip for cache misses."""
        start = time.perf_counter()
        results: dict[str, ContentCheckResult] = {}
        try:
            keys = {url: canonical_url(url) for url in dict.fromkeys(urls)}
            misses: list[str] = []
            for url, key in keys.items():
                cached = self._cache.get(key)
                if cached is not None:
                    results[url] = ContentCheckResult(True, cached[0], cached[1], 0.0, key)
                else:
                    misses.append(key)

            found = await self._db.get_fingerprints(sorted(set(misses))) if misses else {}
            for url, key in keys.items():
                if url in results:
                    continue
                fp = found.get(key)
                if fp is not None:
                    self._cache.put(key, (fp.canonical_entry_id, fp.owner_user_id))
                    results[url] = ContentCheckResult(
                        True, fp.canonical_entry_id, fp.owner_user_id, 0.0, key
                    )
                else:
                    results[url] = ContentCheckResult(False, normalized_url=key)

            elapsed = self._elapsed_ms(start)
            for result in results.values():
                result.processing_ms = elapsed
            logger.debug(
                "Batch duplicate check: %d urls, %d db lookups, %.1fms",
                len(keys), len(misses), elapsed,
            )
            return results
        except Exception as e:
            logger.error("Batch duplicate check failed: %s", e)
            elapsed = self._elapsed_ms(start)
            return {url: ContentCheckResult(True, processing_ms=elapsed) for url in urls}

    async def batch_register_processed_urls(
        self, entries: list[UrlRegistration]
    ) -> BatchRegisterResult:
        """Register many URLs in one transaction."""
        result = BatchRegisterResult()
        fingerprints: list[ContentFingerprint] = []
        for entry in entries:
            try:
                fingerprints.append(self._make_fingerprint(entry))
            except ValueError as e:
                result.failed += 1
                result.errors.append(f"{entry.url}: {e}")

        if not fingerprints:
            return result
        try:
            await self._db.batch_upsert_fingerprints(fingerprints)
        except Exception as e:
            logger.error("Batch URL registration failed: %s", e)
            result.failed += len(fingerprints)
            result.errors.append(f"batch write failed: {e}")
            return result

        for fp in fingerprints:
            self._cache.put(fp.normalized_url, (fp.canonical_entry_id, fp.owner_user_id))
        result.success = len(fingerprints)
        logger.info("Registered %d URLs (%d failed)", result.success, result.failed)
        return result

    async def cleanup_expired_urls(
        self, max_content_age_days: Optional[int] = None
    ) -> CleanupStats:
        """Delete fingerprints older than the age limit and purge stale cache entries."""
        start = time.perf_counter()
        days = max_content_age_days if max_content_age_days is not None else self.max_content_age_days
        cutoff = utcnow() - timedelta(days=days)
        stats = CleanupStats()
        stats.expired_removed = await self._db.delete_fingerprints_before(cutoff)
        if stats.expired_removed:
            # Deleted rows may still be cached
            stats.cache_evicted = len(self._cache)
            self._cache.clear()
        else:
            stats.cache_evicted = self._cache.evict_expired()
        stats.processing_ms = self._elapsed_ms(start)
        logger.info(
            "URL index cleanup: %d expired rows, %d cache entries, %.1fms",
            stats.expired_removed, stats.cache_evicted, stats.processing_ms,
        )
        return stats

    async def get_deduplication_stats(self) -> dict[str, Any]:
        raw = await self._db.get_fingerprint_stats()
        total = raw.get("total_urls") or 0
        unique = raw.get("unique_entries") or 0
        return {
            "total_urls": total,
            "unique_entries": unique,
            "duplicate_urls": total - unique,
            "cache_size": len(self._cache),
            "oldest_record": raw.get("oldest"),
            "newest_record": raw.get("newest"),
        }

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("Dedup cache cleared")

    def cache_size(self) -> int:
        return len(self._cache)

    # --- Helpers ---

    @staticmethod
    def _make_fingerprint(entry: UrlRegistration) -> ContentFingerprint:
        now = utcnow()
        return ContentFingerprint(
            normalized_url=canonical_url(entry.url),
            canonical_entry_id=entry.entry_id,
            owner_user_id=entry.user_id,
            content_hash=entry.content_hash,
            source_id=entry.source_id,
            title=entry.title,
            published_at=entry.published_at,
            metadata=entry.metadata,
            first_seen_at=now,
            last_accessed_at=now,
        )
