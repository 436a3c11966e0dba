"""Data models for the content pool storage layer."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

TIER_HOT = "hot"
TIER_COLD = "cold"

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def compute_content_hash(content: str | bytes) -> str:
    """SHA-256 hex digest of the canonical content bytes."""
    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()


@dataclass
class ContentFingerprint:
    """One row per distinct normalized URL. Existence means "do not re-ingest"."""

    normalized_url: str
    canonical_entry_id: int
    owner_user_id: str
    content_hash: Optional[str] = None
    source_id: Optional[int] = None
    title: Optional[str] = None
    published_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    first_seen_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None

    def to_row(self) -> tuple:
        return (
            self.normalized_url,
            self.content_hash,
            self.canonical_entry_id,
            self.owner_user_id,
            self.source_id,
            self.title,
            format_ts(self.published_at),
            json.dumps(self.metadata) if self.metadata else None,
            format_ts(self.first_seen_at),
            format_ts(self.last_accessed_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> ContentFingerprint:
        return cls(
            normalized_url=row["normalized_url"],
            content_hash=row.get("content_hash"),
            canonical_entry_id=row["canonical_entry_id"],
            owner_user_id=row["owner_user_id"],
            source_id=row.get("source_id"),
            title=row.get("title"),
            published_at=_parse_ts(row.get("published_at")),
            metadata=_parse_json(row.get("metadata")),
            first_seen_at=_parse_ts(row.get("first_seen_at")),
            last_accessed_at=_parse_ts(row.get("last_accessed_at")),
        )


@dataclass
class SharedObject:
    """Canonical, content-addressed copy of a processed document."""

    content_hash: str
    storage_path: str
    size_bytes: int
    reference_count: int = 0
    is_compressed: bool = False
    compressed_size_bytes: Optional[int] = None
    compression_ratio: Optional[float] = None
    access_frequency: float = 0.0
    storage_tier: str = TIER_HOT
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    last_optimized_at: Optional[datetime] = None

    @property
    def stored_size_bytes(self) -> int:
        """Bytes actually occupied in the blob store."""
        if self.is_compressed and self.compressed_size_bytes is not None:
            return self.compressed_size_bytes
        return self.size_bytes

    def to_row(self) -> tuple:
        return (
            self.content_hash,
            self.storage_path,
            self.size_bytes,
            self.reference_count,
            int(self.is_compressed),
            self.compressed_size_bytes,
            self.compression_ratio,
            self.access_frequency,
            self.storage_tier,
            json.dumps(self.metadata) if self.metadata else None,
            format_ts(self.created_at),
            format_ts(self.last_accessed_at),
            format_ts(self.last_optimized_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> SharedObject:
        return cls(
            content_hash=row["content_hash"],
            storage_path=row["storage_path"],
            size_bytes=row["size_bytes"],
            reference_count=row.get("reference_count", 0),
            is_compressed=bool(row.get("is_compressed", 0)),
            compressed_size_bytes=row.get("compressed_size_bytes"),
            compression_ratio=row.get("compression_ratio"),
            access_frequency=row.get("access_frequency") or 0.0,
            storage_tier=row.get("storage_tier") or TIER_HOT,
            metadata=_parse_json(row.get("metadata")),
            created_at=_parse_ts(row.get("created_at")),
            last_accessed_at=_parse_ts(row.get("last_accessed_at")),
            last_optimized_at=_parse_ts(row.get("last_optimized_at")),
        )


@dataclass
class UserReference:
    """A user's logical copy of a shared object.

    While ``is_modified`` is false, ``storage_path`` is the shared object's key
    and the row counts towards that object's ``reference_count``. After a fork
    ``storage_path`` is a private key, ``current_hash`` tracks the private
    bytes and ``content_hash`` keeps the origin for provenance.
    """

    user_id: str
    entry_id: int
    content_hash: str
    user_path: str
    storage_path: str
    file_size_bytes: int
    current_hash: Optional[str] = None
    is_modified: bool = False
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.current_hash is None:
            self.current_hash = self.content_hash

    def to_row(self) -> tuple:
        return (
            self.user_id,
            self.entry_id,
            self.content_hash,
            self.current_hash,
            int(self.is_modified),
            self.user_path,
            self.storage_path,
            self.file_size_bytes,
            format_ts(self.created_at),
            format_ts(self.modified_at),
            format_ts(self.last_accessed_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> UserReference:
        return cls(
            id=row.get("id"),
            user_id=row["user_id"],
            entry_id=row["entry_id"],
            content_hash=row["content_hash"],
            current_hash=row.get("current_hash"),
            is_modified=bool(row.get("is_modified", 0)),
            user_path=row["user_path"],
            storage_path=row["storage_path"],
            file_size_bytes=row.get("file_size_bytes") or 0,
            created_at=_parse_ts(row.get("created_at")),
            modified_at=_parse_ts(row.get("modified_at")),
            last_accessed_at=_parse_ts(row.get("last_accessed_at")),
        )


@dataclass
class UserQuota:
    """Per-user storage ceiling and current usage."""

    user_id: str
    max_storage_bytes: int
    max_file_count: int
    used_storage_bytes: int = 0
    used_file_count: int = 0

    @property
    def usage_percent(self) -> float:
        if self.max_storage_bytes <= 0:
            return 0.0
        return self.used_storage_bytes / self.max_storage_bytes * 100

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> UserQuota:
        return cls(
            user_id=row["user_id"],
            max_storage_bytes=row["max_storage_bytes"],
            max_file_count=row["max_file_count"],
            used_storage_bytes=row.get("used_storage_bytes", 0),
            used_file_count=row.get("used_file_count", 0),
        )


@dataclass
class UserPreferences:
    """A subscriber's content preference profile."""

    user_id: str
    enabled_topics: List[str] = field(default_factory=list)
    enabled_keywords: List[str] = field(default_factory=list)
    min_importance_score: float = 0.5
    content_types: List[str] = field(default_factory=lambda: ["news", "analysis", "tutorial"])
    max_daily_content: int = 100
    is_active: bool = True

    def to_row(self) -> tuple:
        return (
            self.user_id,
            json.dumps(self.enabled_topics),
            json.dumps(self.enabled_keywords),
            self.min_importance_score,
            json.dumps(self.content_types),
            self.max_daily_content,
            int(self.is_active),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> UserPreferences:
        return cls(
            user_id=row["user_id"],
            enabled_topics=_parse_list(row.get("enabled_topics")),
            enabled_keywords=_parse_list(row.get("enabled_keywords")),
            min_importance_score=row.get("min_importance_score", 0.5),
            content_types=_parse_list(row.get("content_types")),
            max_daily_content=row.get("max_daily_content", 100),
            is_active=bool(row.get("is_active", 1)),
        )


@dataclass
class UserNote:
    """User-facing note record written for each delivered entry."""

    user_id: str
    entry_id: int
    processed_content_id: int
    user_path: str
    title: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_row(self) -> tuple:
        return (
            self.user_id,
            self.entry_id,
            self.processed_content_id,
            self.title,
            self.user_path,
            format_ts(self.created_at),
        )


@dataclass
class DistributionLog:
    """Outcome of one distribution target."""

    user_id: str
    entry_id: int
    content_hash: str
    success: bool
    processing_ms: float
    error: Optional[str] = None
    priority: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_row(self) -> tuple:
        return (
            self.user_id,
            self.entry_id,
            self.content_hash,
            "success" if self.success else "failed",
            self.error,
            self.priority,
            self.processing_ms,
            format_ts(self.created_at),
        )


@dataclass
class IsolationFailure:
    """An edit-guard failure awaiting reconciliation."""

    id: int
    user_id: str
    path: str
    operation: str
    error: str
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> IsolationFailure:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            path=row["path"],
            operation=row["operation"],
            error=row["error"],
            created_at=_parse_ts(row.get("created_at")),
            resolved_at=_parse_ts(row.get("resolved_at")),
        )


# --- Helpers ---

def format_ts(val: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so SQL string comparison orders correctly."""
    if val is None:
        return None
    if val.tzinfo is None:
        val = val.replace(tzinfo=timezone.utc)
    return val.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _parse_ts(val: Any) -> Optional[datetime]:
    """Parse a timestamp string or return None."""
    if val is None:
        return None
    if isinstance(val, datetime):
        return val
    try:
        from dateutil.parser import parse
        parsed = parse(str(val))
    except (ValueError, TypeError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_json(val: Any) -> Optional[Dict[str, Any]]:
    """Parse a JSON string or return None."""
    if val is None:
        return None
    if isinstance(val, dict):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError):
        return None


def _parse_list(val: Any) -> List[str]:
    if val is None:
        return []
    if isinstance(val, list):
        return val
    try:
        parsed = json.loads(val)
    except (json.JSONDecodeError, TypeError):
        return [part for part in str(val).split(",") if part]
    return parsed if isinstance(parsed, list) else []
