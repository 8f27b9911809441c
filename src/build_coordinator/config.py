"""Runtime configuration for the engine, agents, coordinator, and worktrees."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

_DEFAULT_COMMAND_TEMPLATES = {
    "claude": "claude -p --model {model} --permission-mode acceptEdits -- {prompt}",
    "codex": "codex exec --sandbox workspace-write --model {model} {prompt}",
    "gemini": "gemini --model {model} --approval-mode auto_edit --prompt {prompt}",
}


@dataclass(slots=True)
class EngineSettings:
    """Engine loop limits."""

    max_iterations: int = 1000
    timeout_seconds: float | None = None
    seed: int = 0


@dataclass(slots=True)
class AgentSettings:
    """CLI agent routing and execution settings."""

    default_agent: str = "codex"
    workdir_root: Path = Path(".build_coordinator/workdir")
    timeout_seconds: int = 900
    transient_exit_codes: tuple[int, ...] = (137, 143)
    claude_command_template: str = _DEFAULT_COMMAND_TEMPLATES["claude"]
    codex_command_template: str = _DEFAULT_COMMAND_TEMPLATES["codex"]
    gemini_command_template: str = _DEFAULT_COMMAND_TEMPLATES["gemini"]
    claude_model_fast: str = "sonnet"
    claude_model_quality: str = "opus"
    codex_model_fast: str = "gpt-5-codex-mini"
    codex_model_quality: str = "gpt-5-codex"
    gemini_model_fast: str = "gemini-2.5-flash"
    gemini_model_quality: str = "gemini-2.5-pro"
    kind_profile_map: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CoordinatorSettings:
    """Problem analysis and escalation settings."""

    agents_dir: Path = field(default_factory=lambda: Path.home() / ".claude" / "agents")
    report_path: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "coordinator-diagnostic.json",
    )
    agent: str | None = None
    timeout_seconds: int = 300


@dataclass(slots=True)
class GitSettings:
    """Identity and shared files for isolated worktrees."""

    user_name: str = "build-coordinator"
    user_email: str = "build-coordinator@localhost"
    guidance_files: tuple[str, ...] = ("CLAUDE.md", "AGENTS.md")
    remove_branches: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    engine: EngineSettings = field(default_factory=EngineSettings)
    agents: AgentSettings = field(default_factory=AgentSettings)
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    git: GitSettings = field(default_factory=GitSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        agent_defaults = AgentSettings()
        coordinator_defaults = CoordinatorSettings()
        git_defaults = GitSettings()
        timeout_raw = os.getenv("BUILD_COORDINATOR_ENGINE_TIMEOUT_SECONDS", "").strip()
        coordinator_agent = os.getenv("BUILD_COORDINATOR_COORDINATOR_AGENT", "").strip()

        return cls(
            engine=EngineSettings(
                max_iterations=int(os.getenv("BUILD_COORDINATOR_ENGINE_MAX_ITERATIONS", "1000")),
                timeout_seconds=float(timeout_raw) if timeout_raw else None,
                seed=int(os.getenv("BUILD_COORDINATOR_ENGINE_SEED", "0")),
            ),
            agents=AgentSettings(
                default_agent=os.getenv("BUILD_COORDINATOR_DEFAULT_AGENT", "codex"),
                workdir_root=Path(
                    os.getenv("BUILD_COORDINATOR_WORKDIR_ROOT", str(agent_defaults.workdir_root)),
                ),
                timeout_seconds=int(os.getenv("BUILD_COORDINATOR_AGENT_TIMEOUT_SECONDS", "900")),
                transient_exit_codes=_parse_exit_codes(
                    os.getenv("BUILD_COORDINATOR_TRANSIENT_EXIT_CODES", "137,143"),
                ),
                claude_command_template=os.getenv(
                    "BUILD_COORDINATOR_CLAUDE_COMMAND_TEMPLATE",
                    agent_defaults.claude_command_template,
                ),
                codex_command_template=os.getenv(
                    "BUILD_COORDINATOR_CODEX_COMMAND_TEMPLATE",
                    agent_defaults.codex_command_template,
                ),
                gemini_command_template=os.getenv(
                    "BUILD_COORDINATOR_GEMINI_COMMAND_TEMPLATE",
                    agent_defaults.gemini_command_template,
                ),
                claude_model_fast=os.getenv(
                    "BUILD_COORDINATOR_CLAUDE_MODEL_FAST",
                    agent_defaults.claude_model_fast,
                ),
                claude_model_quality=os.getenv(
                    "BUILD_COORDINATOR_CLAUDE_MODEL_QUALITY",
                    agent_defaults.claude_model_quality,
                ),
                codex_model_fast=os.getenv(
                    "BUILD_COORDINATOR_CODEX_MODEL_FAST",
                    agent_defaults.codex_model_fast,
                ),
                codex_model_quality=os.getenv(
                    "BUILD_COORDINATOR_CODEX_MODEL_QUALITY",
                    agent_defaults.codex_model_quality,
                ),
                gemini_model_fast=os.getenv(
                    "BUILD_COORDINATOR_GEMINI_MODEL_FAST",
                    agent_defaults.gemini_model_fast,
                ),
                gemini_model_quality=os.getenv(
                    "BUILD_COORDINATOR_GEMINI_MODEL_QUALITY",
                    agent_defaults.gemini_model_quality,
                ),
                kind_profile_map=_parse_kind_profile_map(
                    os.getenv("BUILD_COORDINATOR_KIND_PROFILE_MAP", ""),
                ),
            ),
            coordinator=CoordinatorSettings(
                agents_dir=Path(
                    os.getenv(
                        "BUILD_COORDINATOR_AGENTS_DIR",
                        str(coordinator_defaults.agents_dir),
                    ),
                ).expanduser(),
                report_path=Path(
                    os.getenv(
                        "BUILD_COORDINATOR_REPORT_PATH",
                        str(coordinator_defaults.report_path),
                    ),
                ),
                agent=coordinator_agent or None,
                timeout_seconds=int(
                    os.getenv("BUILD_COORDINATOR_COORDINATOR_TIMEOUT_SECONDS", "300"),
                ),
            ),
            git=GitSettings(
                user_name=os.getenv("BUILD_COORDINATOR_GIT_USER_NAME", git_defaults.user_name),
                user_email=os.getenv("BUILD_COORDINATOR_GIT_USER_EMAIL", git_defaults.user_email),
                guidance_files=_parse_csv(
                    os.getenv(
                        "BUILD_COORDINATOR_GUIDANCE_FILES",
                        ",".join(git_defaults.guidance_files),
                    ),
                ),
                remove_branches=_env_bool("BUILD_COORDINATOR_REMOVE_BRANCHES", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.engine.max_iterations <= 0:
            raise ValueError("BUILD_COORDINATOR_ENGINE_MAX_ITERATIONS must be > 0.")
        if self.engine.timeout_seconds is not None and self.engine.timeout_seconds <= 0:
            raise ValueError("BUILD_COORDINATOR_ENGINE_TIMEOUT_SECONDS must be > 0.")
        if self.agents.timeout_seconds <= 0:
            raise ValueError("BUILD_COORDINATOR_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.coordinator.timeout_seconds <= 0:
            raise ValueError("BUILD_COORDINATOR_COORDINATOR_TIMEOUT_SECONDS must be > 0.")
        if not self.git.user_name.strip() or not self.git.user_email.strip():
            raise ValueError("Git identity (BUILD_COORDINATOR_GIT_USER_*) must be non-empty.")


def _parse_exit_codes(raw: str) -> tuple[int, ...]:
    codes: list[int] = []
    for token in _parse_csv(raw):
        try:
            codes.append(int(token))
        except ValueError as error:
            raise ValueError(
                f"Invalid BUILD_COORDINATOR_TRANSIENT_EXIT_CODES entry: {token!r}",
            ) from error
    return tuple(codes)


def _parse_kind_profile_map(raw: str) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for token in _parse_csv(raw):
        if "=" not in token:
            raise ValueError(
                "Invalid BUILD_COORDINATOR_KIND_PROFILE_MAP entry: "
                f"{token!r}. Expected format '<kind>=<profile>'.",
            )
        kind, profile = token.split("=", 1)
        mapping[kind.strip().lower()] = profile.strip().lower()
    return mapping


def _parse_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
