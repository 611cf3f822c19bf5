"""Dependency-aware orchestration of coding-agent sessions over work shards."""

__version__ = "0.1.0"
