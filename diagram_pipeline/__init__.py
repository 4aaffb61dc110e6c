"""Orchestration layer for diagram rendering: job pipeline, content cache, format orchestration and webhooks."""

__version__ = "0.1.0"
