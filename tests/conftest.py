"""Shared test fixtures."""

from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path

import pytest

import build_coordinator
from build_coordinator.agents.routing import RoutingDefaults
from build_coordinator.workspace.isolation import GitRunner

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m build_coordinator.agents.backend.echo_agent "
    "--task-manifest {task_manifest} --prompt-file {prompt_file}"
)
_SRC_DIR = Path(build_coordinator.__file__).resolve().parents[1]


@pytest.fixture()
def echo_template(monkeypatch) -> str:
    """Echo agent command template importable from agent subprocesses."""

    pythonpath = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        f"{_SRC_DIR}{os.pathsep}{pythonpath}" if pythonpath else str(_SRC_DIR),
    )
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def routing_defaults(echo_template: str) -> RoutingDefaults:
    return RoutingDefaults(
        default_agent="codex",
        kind_profile_map={"review": "quality"},
        command_templates={
            "claude": echo_template,
            "codex": echo_template,
            "gemini": echo_template,
        },
        models={
            "claude": {"fast": "claude-fast", "quality": "claude-quality"},
            "codex": {"fast": "codex-fast", "quality": "codex-quality"},
            "gemini": {"fast": "gemini-fast", "quality": "gemini-quality"},
        },
    )


@pytest.fixture()
def echo_agent_env(monkeypatch, tmp_path, echo_template):
    """Point every CLI agent at the echo agent and keep all paths under tmp_path."""

    for agent in ("CLAUDE", "CODEX", "GEMINI"):
        monkeypatch.setenv(f"BUILD_COORDINATOR_{agent}_COMMAND_TEMPLATE", echo_template)
    monkeypatch.setenv("BUILD_COORDINATOR_WORKDIR_ROOT", str(tmp_path / "workdir"))
    monkeypatch.setenv("BUILD_COORDINATOR_AGENTS_DIR", str(tmp_path / "agents"))
    monkeypatch.setenv("BUILD_COORDINATOR_REPORT_PATH", str(tmp_path / "report.json"))
    return tmp_path


@pytest.fixture()
def git() -> GitRunner:
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    return GitRunner(user_name="Test Runner", user_email="test@example.com")


@pytest.fixture()
def repo(tmp_path: Path, git: GitRunner) -> Path:
    """Main repository with one commit on branch ``main``."""

    repo_path = tmp_path / "main-repo"
    repo_path.mkdir()
    git.run(["init"], cwd=repo_path)
    git.run(["checkout", "-B", "main"], cwd=repo_path)
    (repo_path / "README.md").write_text("# demo\n", "utf-8")
    git.run(["add", "README.md"], cwd=repo_path)
    git.run(["commit", "-m", "Initial commit"], cwd=repo_path)
    return repo_path

