"""Deterministic orchestration of agent-driven build tasks."""

__version__ = "0.1.0"
