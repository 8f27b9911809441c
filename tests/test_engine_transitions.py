from __future__ import annotations

import allure
import pytest

from build_coordinator.engine.models import (
    AgentError,
    AgentErrorKind,
    AgentResponse,
    Annotate,
    Decision,
    DecisionValidationError,
    ExecutionContext,
    GoalState,
    GoalStatus,
    RequestApproval,
    RequestWork,
    ResponseStatus,
    StepStatus,
    decision_from_dict,
    goal_state_from_dict,
    goal_state_to_dict,
)
from build_coordinator.engine.transitions import (
    UnknownStepError,
    apply_action,
    apply_agent_response,
    apply_decision,
    approve_step,
    cancel_state,
    finalize_state,
    mark_in_progress,
    new_goal_state,
)

pytestmark = [
    allure.epic("Engine"),
    allure.feature("State Transitions"),
]

CTX = ExecutionContext(now=100.0)


def _goal() -> GoalState:
    return new_goal_state("goal-1", ExecutionContext(now=1.0))


def _with_step(step_id: str = "build-1") -> GoalState:
    return apply_action(_goal(), RequestWork(work_kind="build", step_id=step_id), CTX)


def test_new_goal_state_is_running_with_init_entry() -> None:
    state = _goal()

    assert state.status is GoalStatus.RUNNING
    assert state.open_steps == {}
    assert [entry.event for entry in state.log] == ["GOAL_INITIALIZED"]
    assert state.log[0].at == 1.0


def test_request_work_adds_waiting_step_with_context_timestamps() -> None:
    state = apply_action(_goal(), RequestWork(work_kind="build", payload={"x": 1}), CTX)

    assert list(state.open_steps) == ["build-1"]
    step = state.open_steps["build-1"]
    assert step.status is StepStatus.WAITING
    assert step.requested_at == 100.0
    assert step.updated_at == 100.0
    assert step.payload == {"x": 1}
    assert state.log[-1].event == "WORK_REQUESTED"


def test_derived_step_ids_are_stable_and_unique() -> None:
    state = _goal()
    state = apply_action(state, RequestWork(work_kind="build"), CTX)
    state = apply_action(state, RequestWork(work_kind="build"), CTX)
    replayed = apply_action(_goal(), RequestWork(work_kind="build"), CTX)
    replayed = apply_action(replayed, RequestWork(work_kind="build"), CTX)

    assert list(state.open_steps) == ["build-1", "build-2"]
    assert state == replayed


def test_request_approval_blocks_goal() -> None:
    state = apply_action(_goal(), RequestApproval(payload="deploy?"), CTX)

    assert state.status is GoalStatus.AWAITING_APPROVAL
    assert state.open_steps["approval-1"].status is StepStatus.BLOCKED


def test_annotate_writes_artifact() -> None:
    state = apply_action(_goal(), Annotate(key="plan", value="v2"), CTX)

    assert state.artifacts == {"plan": "v2"}
    assert state.log[-1].event == "ANNOTATED"


def test_transitions_never_mutate_previous_snapshot() -> None:
    before = _with_step()
    before_dict = goal_state_to_dict(before)

    after = apply_action(before, RequestWork(work_kind="test"), CTX)
    after = apply_action(after, Annotate(key="k", value=1), CTX)

    assert goal_state_to_dict(before) == before_dict
    assert after.open_steps is not before.open_steps
    assert after.artifacts is not before.artifacts
    assert "test-2" not in before.open_steps


def test_same_inputs_and_context_give_equal_outputs() -> None:
    decision = Decision(
        decision_id="d-1",
        actions=(RequestWork(work_kind="build"), Annotate(key="k", value="v")),
    )

    assert apply_decision(_goal(), decision, CTX) == apply_decision(_goal(), decision, CTX)


def test_apply_decision_applies_actions_in_order_then_finalizes() -> None:
    decision = Decision(
        decision_id="d-1",
        actions=(Annotate(key="first", value=1), Annotate(key="second", value=2)),
        finalize=True,
    )

    state = apply_decision(_goal(), decision, CTX)

    assert state.status is GoalStatus.COMPLETED
    assert [entry.event for entry in state.log][-3:] == ["ANNOTATED", "ANNOTATED", "GOAL_COMPLETED"]


def test_apply_decision_rejects_empty_decision_id() -> None:
    with pytest.raises(DecisionValidationError):
        apply_decision(_goal(), Decision(decision_id=""), CTX)


def test_finalize_with_unfinished_step_fails_and_names_it() -> None:
    state = finalize_state(_with_step(), CTX)

    assert state.status is GoalStatus.FAILED
    assert state.log[-1].event == "FINALIZE_BLOCKED"
    assert state.log[-1].data["blockingSteps"] == {"build-1": "WAITING"}


def test_terminal_state_is_not_changed_by_decisions() -> None:
    completed = finalize_state(_goal(), CTX)
    decision = Decision(decision_id="late", actions=(RequestWork(work_kind="build"),))

    assert apply_decision(completed, decision, CTX) is completed
    assert apply_action(completed, Annotate(key="k", value=1), CTX) is completed


def test_agent_response_ok_marks_step_done_and_merges_artifacts() -> None:
    state = mark_in_progress(_with_step(), "build-1", CTX)
    assert state.open_steps["build-1"].status is StepStatus.IN_PROGRESS

    state = apply_agent_response(
        state,
        AgentResponse(
            goal_id="goal-1",
            step_id="build-1",
            status=ResponseStatus.OK,
            run_id="run-7",
            artifacts={"dist": "pkg.whl"},
        ),
        ExecutionContext(now=200.0),
    )

    assert state.open_steps["build-1"].status is StepStatus.DONE
    assert state.open_steps["build-1"].updated_at == 200.0
    assert state.artifacts["build-1/run-7"] == {"dist": "pkg.whl"}


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (ResponseStatus.PARTIAL, StepStatus.DONE),
        (ResponseStatus.FAIL, StepStatus.FAILED),
        (ResponseStatus.RATE_LIMITED, StepStatus.FAILED),
        (ResponseStatus.CONTEXT_EXCEEDED, StepStatus.FAILED),
    ],
)
def test_agent_response_status_mapping(status: ResponseStatus, expected: StepStatus) -> None:
    state = apply_agent_response(
        _with_step(),
        AgentResponse(goal_id="goal-1", step_id="build-1", status=status),
        CTX,
    )

    assert state.open_steps["build-1"].status is expected


def test_agent_response_logs_errors_with_retryable_flag_untouched() -> None:
    state = apply_agent_response(
        _with_step(),
        AgentResponse(
            goal_id="goal-1",
            step_id="build-1",
            status=ResponseStatus.RATE_LIMITED,
            errors=(AgentError(kind=AgentErrorKind.RATE_LIMIT, message="slow", retryable=True),),
        ),
        CTX,
    )

    entry = state.log[-1]
    assert entry.event == "AGENT_RESPONSE"
    assert entry.data["errors"] == [{"kind": "RATE_LIMIT", "message": "slow", "retryable": True}]
    assert state.status is GoalStatus.RUNNING


def test_agent_response_for_unknown_step_raises() -> None:
    with pytest.raises(UnknownStepError, match="nope"):
        apply_agent_response(
            _goal(),
            AgentResponse(goal_id="goal-1", step_id="nope", status=ResponseStatus.OK),
            CTX,
        )


def test_agent_response_is_folded_for_cancelled_goal() -> None:
    cancelled = cancel_state(_with_step(), CTX, reason="stop")

    state = apply_agent_response(
        cancelled,
        AgentResponse(goal_id="goal-1", step_id="build-1", status=ResponseStatus.OK),
        CTX,
    )

    assert state.status is GoalStatus.CANCELLED
    assert state.open_steps["build-1"].status is StepStatus.DONE


def test_approve_step_resumes_goal() -> None:
    state = apply_action(_goal(), RequestApproval(step_id="gate"), CTX)

    approved = approve_step(state, "gate", CTX)
    rejected = approve_step(state, "gate", CTX, approved=False)

    assert approved.status is GoalStatus.RUNNING
    assert approved.open_steps["gate"].status is StepStatus.DONE
    assert rejected.status is GoalStatus.FAILED
    assert rejected.open_steps["gate"].status is StepStatus.FAILED


def test_approve_step_rejects_non_approval_steps() -> None:
    with pytest.raises(ValueError, match="not a pending approval"):
        approve_step(_with_step(), "build-1", CTX)


def test_decision_from_dict_parses_actions() -> None:
    decision = decision_from_dict(
        {
            "decisionId": "d-9",
            "basedOn": {"iteration": 3},
            "actions": [
                {"type": "REQUEST_WORK", "workKind": "build", "payload": {"a": 1}},
                {"type": "REQUEST_APPROVAL", "stepId": "gate"},
                {"type": "ANNOTATE", "key": "k", "value": "v"},
            ],
            "finalize": False,
        },
    )

    assert decision.decision_id == "d-9"
    assert decision.based_on == {"iteration": 3}
    assert decision.actions == (
        RequestWork(work_kind="build", payload={"a": 1}),
        RequestApproval(step_id="gate"),
        Annotate(key="k", value="v"),
    )


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ({"actions": []}, "decisionId"),
        ({"decisionId": "d", "actions": [{"type": "REQUEST_WORK"}]}, "workKind"),
        ({"decisionId": "d", "actions": [{"type": "ANNOTATE"}]}, "requires key"),
        ({"decisionId": "d", "actions": [{"type": "SHIP_IT"}]}, "unknown action type"),
        ({"decisionId": "d", "finalize": "yes"}, "finalize"),
    ],
)
def test_decision_from_dict_rejects_malformed_input(raw: dict, message: str) -> None:
    with pytest.raises(DecisionValidationError, match=message):
        decision_from_dict(raw)


def test_goal_state_snapshot_roundtrip() -> None:
    state = apply_action(_with_step(), Annotate(key="k", value=[1, 2]), CTX)

    assert goal_state_from_dict(goal_state_to_dict(state)) == state
