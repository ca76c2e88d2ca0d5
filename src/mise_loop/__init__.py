"""Orchestrator for long-running coding-agent tasks."""

__version__ = "0.1.0"
