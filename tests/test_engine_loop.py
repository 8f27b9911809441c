from __future__ import annotations

import allure
import pytest

from build_coordinator.engine.loop import Engine, EngineLimitError
from build_coordinator.engine.models import (
    AgentErrorKind,
    AgentResponse,
    Annotate,
    Decision,
    ExecutionContext,
    GoalState,
    GoalStatus,
    RequestApproval,
    RequestWork,
    ResponseStatus,
    StepState,
    StepStatus,
)
from build_coordinator.engine.specs import Stage, pipeline_spec, single_step_spec
from build_coordinator.engine.transitions import new_goal_state

pytestmark = [
    allure.epic("Engine"),
    allure.feature("Engine Loop"),
]


class RecordingExecutor:
    """Returns a fixed status per step and records dispatch order."""

    def __init__(self, statuses: dict[str, ResponseStatus] | None = None) -> None:
        self.statuses = statuses or {}
        self.calls: list[tuple[str, StepStatus]] = []

    def execute(self, step_id: str, step: StepState) -> AgentResponse:
        self.calls.append((step_id, step.status))
        return AgentResponse(
            goal_id="goal-1",
            step_id=step_id,
            status=self.statuses.get(step_id, ResponseStatus.OK),
            run_id="run-1",
            artifacts={"kind": step.kind},
        )


class ExplodingExecutor:
    def execute(self, step_id: str, step: StepState) -> AgentResponse:
        raise RuntimeError("agent process crashed")


class FakeClock:
    def __init__(self, start: float = 0.0, step: float = 0.0) -> None:
        self.value = start
        self.step = step

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current


def _engine(state: GoalState | None = None, **kwargs) -> Engine:
    kwargs.setdefault("clock", FakeClock(start=10.0))
    return Engine(state or new_goal_state("goal-1", ExecutionContext(now=0.0)), **kwargs)


def _state_with_waiting_step() -> GoalState:
    state = new_goal_state("goal-1", ExecutionContext(now=0.0))
    return GoalState(
        goal_id=state.goal_id,
        status=state.status,
        open_steps={
            "build-1": StepState(
                kind="build",
                status=StepStatus.WAITING,
                requested_at=0.0,
                updated_at=0.0,
            ),
        },
        log=state.log,
    )


def test_waiting_step_with_finalizing_spec_completes_in_one_iteration() -> None:
    engine = _engine(_state_with_waiting_step())
    executor = RecordingExecutor()

    state = engine.run(lambda _state: Decision(decision_id="final", finalize=True), executor)

    assert state.status is GoalStatus.COMPLETED
    assert engine.iterations == 1
    assert executor.calls == [("build-1", StepStatus.IN_PROGRESS)]
    assert state.open_steps["build-1"].status is StepStatus.DONE


def test_pipeline_runs_stages_in_order_and_completes() -> None:
    engine = _engine()
    executor = RecordingExecutor()
    spec = pipeline_spec([Stage("scaffold"), Stage("implement"), Stage("test")])

    state = engine.run(spec, executor)

    assert state.status is GoalStatus.COMPLETED
    assert [call[0] for call in executor.calls] == ["scaffold-1", "implement-2", "test-3"]
    assert state.artifacts["implement-2/run-1"] == {"kind": "implement"}


def test_pipeline_failed_stage_fails_goal_and_records_it() -> None:
    engine = _engine()
    executor = RecordingExecutor({"implement-2": ResponseStatus.FAIL})
    spec = pipeline_spec([Stage("scaffold"), Stage("implement"), Stage("test")])

    state = engine.run(spec, executor)

    assert state.status is GoalStatus.FAILED
    assert state.artifacts["failed_stage"] == "implement-2"
    assert [call[0] for call in executor.calls] == ["scaffold-1", "implement-2"]


def test_steps_requested_together_dispatch_in_insertion_order_once() -> None:
    def spec(state: GoalState) -> Decision:
        if not state.open_steps:
            return Decision(
                decision_id="fan-out",
                actions=(
                    RequestWork(work_kind="lint", step_id="b"),
                    RequestWork(work_kind="test", step_id="a"),
                    RequestWork(work_kind="docs", step_id="c"),
                ),
            )
        return Decision(decision_id="done", finalize=True)

    executor = RecordingExecutor()
    state = _engine().run(spec, executor)

    assert state.status is GoalStatus.COMPLETED
    assert [call[0] for call in executor.calls] == ["b", "a", "c"]


def test_max_iterations_is_fatal_and_names_the_limit() -> None:
    engine = _engine(max_iterations=3)
    spec = lambda state: Decision(  # noqa: E731
        decision_id=f"d-{len(state.log)}",
        actions=(Annotate(key="tick", value=len(state.log)),),
    )

    with pytest.raises(EngineLimitError, match="Maximum iterations \\(3\\)") as excinfo:
        engine.run(spec, RecordingExecutor())

    assert excinfo.value.limit == "max_iterations"
    assert excinfo.value.value == 3
    assert engine.iterations == 3


def test_timeout_is_fatal_and_names_the_limit() -> None:
    engine = _engine(timeout_seconds=5, monotonic=FakeClock(start=0.0, step=4.0))
    spec = lambda state: Decision(decision_id=f"d-{len(state.log)}")  # noqa: E731

    with pytest.raises(EngineLimitError, match="exceeded timeout of 5s") as excinfo:
        engine.run(spec, RecordingExecutor())

    assert excinfo.value.limit == "timeout_seconds"


def test_executor_raise_is_folded_as_provider_error_and_reraised() -> None:
    engine = _engine()

    with pytest.raises(RuntimeError, match="agent process crashed"):
        engine.run(single_step_spec("build"), ExplodingExecutor())

    step = engine.state.open_steps["build-1"]
    assert step.status is StepStatus.FAILED
    response_entry = engine.state.log[-1]
    assert response_entry.event == "AGENT_RESPONSE"
    assert response_entry.data["status"] == ResponseStatus.FAIL.value
    assert response_entry.data["errors"] == [
        {
            "kind": AgentErrorKind.PROVIDER_ERROR.value,
            "message": "agent process crashed",
            "retryable": False,
        },
    ]


def test_request_cancel_stops_at_iteration_boundary() -> None:
    engine = _engine()
    engine.request_cancel("operator stop")

    state = engine.run(single_step_spec("build"), RecordingExecutor())

    assert state.status is GoalStatus.CANCELLED
    assert state.log[-1].data == {"reason": "operator stop"}
    assert engine.iterations == 0


def test_approval_request_leaves_loop_awaiting_approval() -> None:
    spec = lambda state: Decision(  # noqa: E731
        decision_id="gate",
        actions=(RequestApproval(step_id="release"),),
    )
    executor = RecordingExecutor()

    state = _engine().run(spec, executor)

    assert state.status is GoalStatus.AWAITING_APPROVAL
    assert executor.calls == []


def test_log_timestamps_come_from_injected_clock() -> None:
    engine = _engine(clock=FakeClock(start=500.0))

    state = engine.run(single_step_spec("build"), RecordingExecutor())

    assert all(entry.at == 500.0 for entry in state.log[1:])


@pytest.mark.parametrize(
    "kwargs",
    [{"max_iterations": 0}, {"timeout_seconds": 0}],
)
def test_engine_rejects_invalid_limits(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        _engine(**kwargs)


def test_pipeline_spec_is_deterministic_for_the_same_state() -> None:
    spec = pipeline_spec([Stage("build", payload={"prompt": "go"})])
    state = new_goal_state("goal-1", ExecutionContext(now=0.0))

    assert spec(state) == spec(state)
    assert spec(state).actions == (
        RequestWork(work_kind="build", payload={"prompt": "go"}, step_id="build-1"),
    )


def test_pipeline_spec_requires_stages() -> None:
    with pytest.raises(ValueError):
        pipeline_spec([])
