"""Backend interface for CLI agent invocations."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class BackendRunRequest:
    """Inputs required to run one agent command."""

    prompt: str
    prompt_file: Path
    stdout_path: Path
    stderr_path: Path
    timeout_seconds: int
    agent: str
    profile: str
    model: str
    command_template: str
    manifest_path: Path | None = None
    cwd: Path | None = None
    extra_env: dict[str, str] = field(default_factory=dict)
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class BackendRunResult:
    """Execution outcome from backend runner."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path
    elapsed_seconds: float = 0.0
    cancelled: bool = False


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        """Run an agent command and return execution metadata."""
