"""Background storage optimization: GC, compression, lifecycle, quotas, defrag."""

from contentpool.optimizer.optimizer import (
    PHASES,
    OptimizationReport,
    OptimizerConfig,
    PhaseReport,
    StorageOptimizer,
)

__all__ = ["PHASES", "OptimizationReport", "OptimizerConfig", "PhaseReport", "StorageOptimizer"]
