"""Agent backend implementations."""

from build_coordinator.agents.backend.base import AgentBackend, BackendRunRequest, BackendRunResult
from build_coordinator.agents.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "BackendRunError",
    "BackendRunRequest",
    "BackendRunResult",
    "CliAgentBackend",
]
