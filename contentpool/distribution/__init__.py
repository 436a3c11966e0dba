"""Preference matching and batch delivery of shared content."""

from contentpool.distribution.executor import BatchDistributor, DistributionResult
from contentpool.distribution.matcher import (
    ContentFeatures,
    DistributionMatcher,
    DistributionTarget,
)
from contentpool.distribution.service import DistributionService

__all__ = [
    "BatchDistributor",
    "DistributionResult",
    "ContentFeatures",
    "DistributionMatcher",
    "DistributionTarget",
    "DistributionService",
]
