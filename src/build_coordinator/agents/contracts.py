"""File-based contracts for step inputs and agent outputs."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from build_coordinator.engine.models import ResponseStatus

CONTRACT_VERSION = 1


@dataclass(slots=True)
class StepInputContract:
    """Step input payload consumed by the agent."""

    goal_id: str
    step_id: str
    kind: str
    prompt: str
    payload: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentResultContract:
    """Top-level output payload written by the agent."""

    status: str
    content: Any = None
    artifacts: dict[str, Any] | None = None
    metrics: dict[str, Any] | None = None


@dataclass(slots=True)
class TaskManifest:
    """Manifest stored with each materialized step."""

    contract_version: int
    task_id: str
    step_kind: str
    workdir: str
    step_input_path: str
    output_result_path: str
    output_stdout_path: str
    output_stderr_path: str
    workspace_path: str | None = None


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Write ``payload`` as sorted, indented UTF-8 JSON, creating parent dirs."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Read a JSON file that must hold an object."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_step_input(path: Path, payload: StepInputContract) -> None:
    """Serialize step input contract."""

    write_json(path, asdict(payload))


def read_step_input(path: Path) -> StepInputContract:
    """Deserialize and validate step input contract."""

    raw = load_json(path)
    for key in ("goal_id", "step_id", "kind"):
        value = raw.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"step_input.{key} must be a non-empty string")
    prompt = raw.get("prompt")
    metadata = raw.get("metadata", {})
    if not isinstance(prompt, str):
        raise TypeError("step_input.prompt must be a string")
    if not isinstance(metadata, dict):
        raise TypeError("step_input.metadata must be an object")
    return StepInputContract(
        goal_id=raw["goal_id"],
        step_id=raw["step_id"],
        kind=raw["kind"],
        prompt=prompt,
        payload=raw.get("payload"),
        metadata=metadata,
    )


def write_agent_result(path: Path, payload: AgentResultContract) -> None:
    """Serialize agent output contract."""

    write_json(path, asdict(payload))


def read_agent_result(path: Path) -> AgentResultContract:
    """Load and validate the agent output contract."""

    raw = load_json(path)
    status = raw.get("status")
    valid_statuses = {item.value for item in ResponseStatus}
    if not isinstance(status, str) or status.strip().upper() not in valid_statuses:
        raise ValueError(
            f"agent_result.status must be one of {sorted(valid_statuses)}, got {status!r}",
        )
    artifacts = raw.get("artifacts")
    metrics = raw.get("metrics")
    if artifacts is not None and not isinstance(artifacts, dict):
        raise TypeError("agent_result.artifacts must be an object when provided")
    if metrics is not None and not isinstance(metrics, dict):
        raise TypeError("agent_result.metrics must be an object when provided")
    return AgentResultContract(
        status=status.strip().upper(),
        content=raw.get("content"),
        artifacts=artifacts,
        metrics=metrics,
    )


def read_manifest(path: Path) -> TaskManifest:
    """Read ``meta/task_manifest.json``; every path field is required."""

    raw = load_json(path)
    path_fields = [
        item.name
        for item in fields(TaskManifest)
        if item.name not in {"contract_version", "workspace_path"}
    ]
    missing = [name for name in path_fields if name not in raw]
    if missing:
        raise ValueError(f"task_manifest is missing: {', '.join(missing)}")
    version = raw.get("contract_version", CONTRACT_VERSION)
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise ValueError(f"task_manifest.contract_version must be a positive int, got {version!r}")
    workspace_path = raw.get("workspace_path")
    if workspace_path is not None and not isinstance(workspace_path, str):
        raise ValueError("task_manifest.workspace_path must be a string when provided")
    return TaskManifest(
        contract_version=version,
        workspace_path=workspace_path,
        **{name: str(raw[name]) for name in path_fields},
    )


def write_manifest(path: Path, manifest: TaskManifest) -> None:
    write_json(path, asdict(manifest))
