"""Error taxonomy for the content pool engine."""

from __future__ import annotations


class ContentPoolError(Exception):
    """Base class for all engine errors."""


class TransientIOError(ContentPoolError):
    """Storage or database failure. Retryable by the caller."""


class NotFoundError(ContentPoolError):
    """A fingerprint, reference, quota row or stored object does not exist."""


class QuotaExceededError(ContentPoolError):
    """The operation would push a user past their storage quota."""

    def __init__(self, user_id: str, used: int, requested: int, limit: int, unit: str = "bytes"):
        self.user_id = user_id
        self.used = used
        self.requested = requested
        self.limit = limit
        self.unit = unit
        super().__init__(
            f"Quota exceeded for user {user_id}: {used} + {requested} > {limit} {unit}"
        )


class ConcurrencyConflictError(ContentPoolError):
    """Two writers raced on the same content hash or reference row."""


class CorruptStateError(ContentPoolError):
    """A user reference points at a shared object that no longer exists."""

    def __init__(self, message: str, user_id: str | None = None, entry_id: int | None = None):
        self.user_id = user_id
        self.entry_id = entry_id
        super().__init__(message)
