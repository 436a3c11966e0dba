"""Engine facade and command-line interface."""

from contentpool.pipeline.engine import AnalysisResult, ContentEngine, IngestedEntry

__all__ = ["AnalysisResult", "ContentEngine", "IngestedEntry"]
