from __future__ import annotations

import json
import sys
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from build_coordinator.agents.executor import CliAgentExecutor, step_prompt
from build_coordinator.agents.routing import RoutingDefaults
from build_coordinator.engine.loop import Engine
from build_coordinator.engine.models import (
    AgentErrorKind,
    ExecutionContext,
    GoalStatus,
    ResponseStatus,
    StepState,
    StepStatus,
)
from build_coordinator.engine.specs import Stage, pipeline_spec
from build_coordinator.engine.transitions import new_goal_state

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("CLI Agent Executor"),
]


def _step(kind: str = "build", payload: object = None) -> StepState:
    return StepState(
        kind=kind,
        status=StepStatus.IN_PROGRESS,
        requested_at=0.0,
        updated_at=0.0,
        payload=payload,
    )


def _executor(
    tmp_path: Path,
    routing_defaults: RoutingDefaults,
    **kwargs,
) -> CliAgentExecutor:
    return CliAgentExecutor(
        goal_id="goal-1",
        workdir_root=tmp_path / "workdir",
        routing_defaults=routing_defaults,
        timeout_seconds=60,
        **kwargs,
    )


def test_successful_run_maps_result_contract_to_ok_response(
    tmp_path: Path,
    routing_defaults: RoutingDefaults,
) -> None:
    executor = _executor(tmp_path, routing_defaults)

    response = executor.execute("build-1", _step(payload={"prompt": "Compile the package"}))

    assert response.status is ResponseStatus.OK
    assert response.run_id == "build-1-run-1"
    assert response.agent_role == "codex"
    assert response.errors == ()
    assert response.artifacts == {"summary": "build done"}
    assert response.content == {
        "step_id": "build-1",
        "kind": "build",
        "prompt": "Compile the package",
    }
    assert response.metrics["backend"] == "echo_agent"
    assert response.metrics["agent"] == "codex"
    assert response.metrics["model"] == "codex-fast"
    assert response.metrics["exit_code"] == 0


def test_run_materializes_step_input_with_routing_metadata(
    tmp_path: Path,
    routing_defaults: RoutingDefaults,
) -> None:
    executor = _executor(tmp_path, routing_defaults)

    executor.execute("build-1", _step())
    executor.execute("build-1", _step())

    first = tmp_path / "workdir" / "goal-1-build-1-run-1"
    second = tmp_path / "workdir" / "goal-1-build-1-run-2"
    step_input = json.loads((first / "input" / "step_input.json").read_text("utf-8"))
    assert step_input["prompt"] == "Complete the build step."
    assert step_input["metadata"]["routing"]["agent"] == "codex"
    assert step_input["metadata"]["routing"]["profile"] == "fast"
    assert (first / "meta" / "task_manifest.json").is_file()
    assert "## Execution contract" in (first / "input" / "prompt.txt").read_text("utf-8")
    assert (second / "output" / "agent_result.json").is_file()


def test_kind_profile_map_and_agent_override_drive_routing(
    tmp_path: Path,
    routing_defaults: RoutingDefaults,
) -> None:
    executor = _executor(tmp_path, routing_defaults, agent_override="gemini")

    response = executor.execute("review-1", _step(kind="review"))

    assert response.agent_role == "gemini"
    assert response.metrics["model"] == "gemini-quality"


def test_partial_status_is_reported(tmp_path: Path, routing_defaults: RoutingDefaults) -> None:
    executor = _executor(tmp_path, routing_defaults)

    response = executor.execute("build-1", _step(payload={"echo": {"status": "PARTIAL"}}))

    assert response.status is ResponseStatus.PARTIAL


def test_nonzero_exit_is_classified(tmp_path: Path, routing_defaults: RoutingDefaults) -> None:
    executor = _executor(tmp_path, routing_defaults)

    response = executor.execute(
        "build-1",
        _step(payload={"echo": {"exit_code": 2, "stderr": "HTTP 429: rate limit exceeded"}}),
    )

    assert response.status is ResponseStatus.RATE_LIMITED
    assert len(response.errors) == 1
    assert response.errors[0].kind is AgentErrorKind.RATE_LIMIT
    assert response.errors[0].retryable is True
    assert response.metrics["exit_code"] == 2
    assert response.metrics["failure"]["matched_rule"] == "rate_limit"


def test_missing_result_file_is_validation_error(
    tmp_path: Path,
    routing_defaults: RoutingDefaults,
) -> None:
    executor = _executor(tmp_path, routing_defaults)

    response = executor.execute("build-1", _step(payload={"echo": {"skip_result": True}}))

    assert response.status is ResponseStatus.FAIL
    assert response.errors[0].kind is AgentErrorKind.VALIDATION_ERROR
    assert response.errors[0].retryable is False


def test_agent_runs_inside_workspace(tmp_path: Path, routing_defaults: RoutingDefaults) -> None:
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    executor = _executor(tmp_path, routing_defaults, workspace_path=workspace)

    response = executor.execute("build-1", _step())

    assert response.status is ResponseStatus.OK
    manifest = json.loads(
        (tmp_path / "workdir" / "goal-1-build-1-run-1" / "meta" / "task_manifest.json").read_text(
            "utf-8",
        ),
    )
    assert manifest["workspace_path"] == str(workspace)


def test_shutdown_request_stops_running_agent(
    tmp_path: Path,
    routing_defaults: RoutingDefaults,
) -> None:
    script = tmp_path / "sleepy.py"
    script.write_text("import time\ntime.sleep(30)\n", "utf-8")
    template = f"{sys.executable} {script} {{prompt_file}}"
    sleepy = replace(
        routing_defaults,
        command_templates={agent: template for agent in routing_defaults.command_templates},
    )
    engine = Engine(new_goal_state("goal-1", ExecutionContext(now=0.0)))
    engine.request_cancel("operator stop")
    executor = _executor(
        tmp_path,
        sleepy,
        shutdown_requested=lambda: engine.cancel_requested,
    )

    response = executor.execute("build-1", _step())

    assert response.status is ResponseStatus.FAIL
    assert response.errors[0].kind is AgentErrorKind.PROVIDER_ERROR
    assert response.errors[0].retryable is False
    assert response.metrics["exit_code"] == 130


def test_engine_drives_pipeline_through_cli_agents(
    tmp_path: Path,
    routing_defaults: RoutingDefaults,
) -> None:
    engine = Engine(new_goal_state("goal-1", ExecutionContext(now=0.0)))
    spec = pipeline_spec([Stage("scaffold"), Stage("implement", payload="Write the code")])

    state = engine.run(spec, _executor(tmp_path, routing_defaults))

    assert state.status is GoalStatus.COMPLETED
    assert state.artifacts["implement-2/implement-2-run-1"] == {"summary": "implement done"}


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ("Fix the imports", "Fix the imports"),
        ({"prompt": "Run tests"}, "Run tests"),
        ({"instructions": "Repair build"}, "Repair build"),
        ({"other": 1}, "Complete the build step."),
        (None, "Complete the build step."),
    ],
)
def test_step_prompt(payload: object, expected: str) -> None:
    assert step_prompt(_step(payload=payload)) == expected
