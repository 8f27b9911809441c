from __future__ import annotations

from pathlib import Path

import allure
import pytest

from build_coordinator.config import EngineSettings, GitSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def test_from_env_defaults(monkeypatch) -> None:
    for name in (
        "BUILD_COORDINATOR_ENGINE_MAX_ITERATIONS",
        "BUILD_COORDINATOR_ENGINE_TIMEOUT_SECONDS",
        "BUILD_COORDINATOR_DEFAULT_AGENT",
        "BUILD_COORDINATOR_TRANSIENT_EXIT_CODES",
        "BUILD_COORDINATOR_KIND_PROFILE_MAP",
        "BUILD_COORDINATOR_COORDINATOR_AGENT",
        "BUILD_COORDINATOR_GUIDANCE_FILES",
        "BUILD_COORDINATOR_REMOVE_BRANCHES",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.engine.max_iterations == 1000
    assert settings.engine.timeout_seconds is None
    assert settings.agents.default_agent == "codex"
    assert settings.agents.transient_exit_codes == (137, 143)
    assert settings.agents.kind_profile_map == {}
    assert settings.coordinator.agent is None
    assert settings.git.guidance_files == ("CLAUDE.md", "AGENTS.md")
    assert settings.git.remove_branches is True
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BUILD_COORDINATOR_ENGINE_MAX_ITERATIONS", "25")
    monkeypatch.setenv("BUILD_COORDINATOR_ENGINE_TIMEOUT_SECONDS", "90.5")
    monkeypatch.setenv("BUILD_COORDINATOR_TRANSIENT_EXIT_CODES", "1, 2 ,3")
    monkeypatch.setenv("BUILD_COORDINATOR_KIND_PROFILE_MAP", "Review=Quality, build=fast")
    monkeypatch.setenv("BUILD_COORDINATOR_AGENTS_DIR", str(tmp_path / "agents"))
    monkeypatch.setenv("BUILD_COORDINATOR_COORDINATOR_AGENT", "claude")
    monkeypatch.setenv("BUILD_COORDINATOR_GUIDANCE_FILES", "CLAUDE.md")
    monkeypatch.setenv("BUILD_COORDINATOR_REMOVE_BRANCHES", "no")

    settings = Settings.from_env()

    assert settings.engine.max_iterations == 25
    assert settings.engine.timeout_seconds == 90.5
    assert settings.agents.transient_exit_codes == (1, 2, 3)
    assert settings.agents.kind_profile_map == {"review": "quality", "build": "fast"}
    assert settings.coordinator.agents_dir == tmp_path / "agents"
    assert settings.coordinator.agent == "claude"
    assert settings.git.guidance_files == ("CLAUDE.md",)
    assert settings.git.remove_branches is False


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("BUILD_COORDINATOR_TRANSIENT_EXIT_CODES", "137,boom", "TRANSIENT_EXIT_CODES"),
        ("BUILD_COORDINATOR_KIND_PROFILE_MAP", "review", "Expected format"),
        ("BUILD_COORDINATOR_REMOVE_BRANCHES", "maybe", "Invalid boolean value"),
    ],
)
def test_from_env_rejects_malformed_values(
    monkeypatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


def test_validate_rejects_non_positive_engine_limits() -> None:
    with pytest.raises(ValueError, match="MAX_ITERATIONS"):
        Settings(engine=EngineSettings(max_iterations=0)).validate()
    with pytest.raises(ValueError, match="TIMEOUT_SECONDS"):
        Settings(engine=EngineSettings(timeout_seconds=-1)).validate()


def test_validate_rejects_blank_git_identity() -> None:
    with pytest.raises(ValueError, match="Git identity"):
        Settings(git=GitSettings(user_email=" ")).validate()
