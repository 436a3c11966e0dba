"""Edit isolation guard for user writes on shared notes."""

from contentpool.isolation.guard import CopyMarker, EditIsolationGuard, GuardOutcome

__all__ = ["CopyMarker", "EditIsolationGuard", "GuardOutcome"]
