"""Workdir materialization helpers for file-based step execution."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from build_coordinator.agents.contracts import (
    CONTRACT_VERSION,
    StepInputContract,
    TaskManifest,
    write_manifest,
    write_step_input,
)


@dataclass(slots=True)
class MaterializedStep:
    """Materialized file-based step contract paths."""

    manifest_path: Path
    manifest: TaskManifest


class StepWorkdirManager:
    """Creates deterministic per-run directory layout."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir.resolve()

    def materialize(
        self,
        *,
        task_id: str,
        step_input: StepInputContract,
        workspace_path: Path | None = None,
    ) -> MaterializedStep:
        base_dir = self.root_dir / task_id
        input_dir = base_dir / "input"
        output_dir = base_dir / "output"
        meta_dir = base_dir / "meta"
        input_dir.mkdir(parents=True, exist_ok=True)
        output_dir.mkdir(parents=True, exist_ok=True)
        meta_dir.mkdir(parents=True, exist_ok=True)

        step_input_path = input_dir / "step_input.json"
        manifest_path = meta_dir / "task_manifest.json"
        write_step_input(step_input_path, step_input)

        manifest = TaskManifest(
            contract_version=CONTRACT_VERSION,
            task_id=task_id,
            step_kind=step_input.kind,
            workdir=str(base_dir),
            step_input_path=str(step_input_path),
            output_result_path=str(output_dir / "agent_result.json"),
            output_stdout_path=str(output_dir / "agent_stdout.log"),
            output_stderr_path=str(output_dir / "agent_stderr.log"),
            workspace_path=str(workspace_path) if workspace_path is not None else None,
        )
        write_manifest(manifest_path, manifest)

        return MaterializedStep(manifest_path=manifest_path, manifest=manifest)
