"""Shared content storage and distribution engine."""

__version__ = "0.1.0"
