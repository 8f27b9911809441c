"""Pure state transitions for goals and steps.

No function here reads the clock, touches the filesystem, or mutates its
inputs.  Each returns a new ``GoalState`` whose containers are freshly built,
so a consumer holding an earlier snapshot never observes later changes.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from build_coordinator.engine.models import (
    Action,
    AgentError,
    AgentErrorKind,
    AgentResponse,
    Annotate,
    Decision,
    DecisionValidationError,
    ExecutionContext,
    GoalState,
    GoalStatus,
    LogEntry,
    RequestApproval,
    RequestWork,
    ResponseStatus,
    StepState,
    StepStatus,
)

APPROVAL_STEP_KIND = "approval"

_DONE_RESPONSE_STATUSES = frozenset({ResponseStatus.OK, ResponseStatus.PARTIAL})


class UnknownStepError(LookupError):
    """Response or command references a step the goal does not track."""

    def __init__(self, goal_id: str, step_id: str) -> None:
        super().__init__(f"Goal {goal_id!r} has no open step {step_id!r}")
        self.goal_id = goal_id
        self.step_id = step_id


def new_goal_state(
    goal_id: str,
    ctx: ExecutionContext,
    *,
    data: Mapping[str, Any] | None = None,
) -> GoalState:
    """Create a RUNNING goal with its initialization log entry."""

    if not goal_id.strip():
        raise ValueError("goal_id must be a non-empty string")
    return GoalState(
        goal_id=goal_id,
        status=GoalStatus.RUNNING,
        open_steps={},
        artifacts={},
        log=(LogEntry(at=ctx.now, event="GOAL_INITIALIZED", data=dict(data or {})),),
    )


def apply_action(state: GoalState, action: Action, ctx: ExecutionContext) -> GoalState:
    """Apply one decision action; terminal goals are returned unchanged."""

    if state.status.is_terminal:
        return state

    if isinstance(action, RequestWork):
        step_id = action.step_id or _derive_step_id(state, action.work_kind)
        step = StepState(
            kind=action.work_kind,
            status=StepStatus.WAITING,
            requested_at=ctx.now,
            updated_at=ctx.now,
            payload=action.payload,
        )
        return _with(
            state,
            open_steps={**state.open_steps, step_id: step},
            event=("WORK_REQUESTED", {"stepId": step_id, "kind": action.work_kind}),
            at=ctx.now,
        )

    if isinstance(action, RequestApproval):
        step_id = action.step_id or _derive_step_id(state, APPROVAL_STEP_KIND)
        step = StepState(
            kind=APPROVAL_STEP_KIND,
            status=StepStatus.BLOCKED,
            requested_at=ctx.now,
            updated_at=ctx.now,
            payload=action.payload,
        )
        return _with(
            state,
            status=GoalStatus.AWAITING_APPROVAL,
            open_steps={**state.open_steps, step_id: step},
            event=("APPROVAL_REQUESTED", {"stepId": step_id}),
            at=ctx.now,
        )

    if isinstance(action, Annotate):
        return _with(
            state,
            artifacts={**state.artifacts, action.key: action.value},
            event=("ANNOTATED", {"key": action.key}),
            at=ctx.now,
        )

    raise DecisionValidationError(f"Unsupported action: {action!r}")


def apply_decision(state: GoalState, decision: Decision, ctx: ExecutionContext) -> GoalState:
    """Apply all decision actions in order, then finalize when requested."""

    if not decision.decision_id:
        raise DecisionValidationError("Decision must have a decision_id")
    new_state = state
    for action in decision.actions:
        new_state = apply_action(new_state, action, ctx)
    if decision.finalize:
        new_state = finalize_state(new_state, ctx)
    return new_state


def finalize_state(state: GoalState, ctx: ExecutionContext) -> GoalState:
    """Complete the goal when every open step is DONE, otherwise fail it."""

    if state.status.is_terminal:
        return state

    blocking = {
        step_id: step.status.value
        for step_id, step in state.open_steps.items()
        if step.status is not StepStatus.DONE
    }
    if blocking:
        return _with(
            state,
            status=GoalStatus.FAILED,
            event=("FINALIZE_BLOCKED", {"blockingSteps": blocking}),
            at=ctx.now,
        )
    return _with(
        state,
        status=GoalStatus.COMPLETED,
        event=("GOAL_COMPLETED", {"steps": len(state.open_steps)}),
        at=ctx.now,
    )


def mark_in_progress(state: GoalState, step_id: str, ctx: ExecutionContext) -> GoalState:
    """Move a dispatched step to IN_PROGRESS."""

    step = _require_step(state, step_id)
    return _with(
        state,
        open_steps={
            **state.open_steps,
            step_id: replace(step, status=StepStatus.IN_PROGRESS, updated_at=ctx.now),
        },
        event=("STEP_DISPATCHED", {"stepId": step_id, "kind": step.kind}),
        at=ctx.now,
    )


def apply_agent_response(
    state: GoalState,
    response: AgentResponse,
    ctx: ExecutionContext,
) -> GoalState:
    """Fold an agent response into the step it answers.

    Responses are folded even for terminal goals: a cancelled goal still
    records the outcome of calls that were in flight when it stopped.
    """

    step = _require_step(state, response.step_id)
    step_status = (
        StepStatus.DONE if response.status in _DONE_RESPONSE_STATUSES else StepStatus.FAILED
    )
    artifacts = dict(state.artifacts)
    if response.artifacts:
        artifacts[f"{response.step_id}/{response.run_id}"] = dict(response.artifacts)

    return _with(
        state,
        open_steps={
            **state.open_steps,
            response.step_id: replace(step, status=step_status, updated_at=ctx.now),
        },
        artifacts=artifacts,
        event=(
            "AGENT_RESPONSE",
            {
                "stepId": response.step_id,
                "runId": response.run_id,
                "agentRole": response.agent_role,
                "status": response.status.value,
                "errors": [
                    {
                        "kind": error.kind.value,
                        "message": error.message,
                        "retryable": error.retryable,
                    }
                    for error in response.errors
                ],
            },
        ),
        at=ctx.now,
    )


def approve_step(
    state: GoalState,
    step_id: str,
    ctx: ExecutionContext,
    *,
    approved: bool = True,
) -> GoalState:
    """Resolve a pending approval and resume or fail the goal."""

    if state.status.is_terminal:
        raise ValueError(f"Goal {state.goal_id!r} is already {state.status.value}")
    step = _require_step(state, step_id)
    if step.kind != APPROVAL_STEP_KIND or step.status is not StepStatus.BLOCKED:
        raise ValueError(f"Step {step_id!r} is not a pending approval")
    still_pending = any(
        other_id != step_id
        and other.kind == APPROVAL_STEP_KIND
        and other.status is StepStatus.BLOCKED
        for other_id, other in state.open_steps.items()
    )
    if approved:
        status = GoalStatus.AWAITING_APPROVAL if still_pending else GoalStatus.RUNNING
    else:
        status = GoalStatus.FAILED
    return _with(
        state,
        status=status,
        open_steps={
            **state.open_steps,
            step_id: replace(
                step,
                status=StepStatus.DONE if approved else StepStatus.FAILED,
                updated_at=ctx.now,
            ),
        },
        event=("APPROVAL_RESOLVED", {"stepId": step_id, "approved": approved}),
        at=ctx.now,
    )


def cancel_state(state: GoalState, ctx: ExecutionContext, *, reason: str) -> GoalState:
    """Cancel a goal that has not reached a terminal status yet."""

    if state.status.is_terminal:
        return state
    return _with(
        state,
        status=GoalStatus.CANCELLED,
        event=("GOAL_CANCELLED", {"reason": reason}),
        at=ctx.now,
    )


def executor_failure_response(goal_id: str, step_id: str, error: BaseException) -> AgentResponse:
    """Synthesize the response folded when an executor raises instead of answering."""

    return AgentResponse(
        goal_id=goal_id,
        step_id=step_id,
        status=ResponseStatus.FAIL,
        errors=(
            AgentError(
                kind=AgentErrorKind.PROVIDER_ERROR,
                message=str(error) or type(error).__name__,
                retryable=False,
            ),
        ),
    )


def _derive_step_id(state: GoalState, kind: str) -> str:
    ordinal = len(state.open_steps) + 1
    candidate = f"{kind}-{ordinal}"
    while candidate in state.open_steps:
        ordinal += 1
        candidate = f"{kind}-{ordinal}"
    return candidate


def _require_step(state: GoalState, step_id: str) -> StepState:
    step = state.open_steps.get(step_id)
    if step is None:
        raise UnknownStepError(state.goal_id, step_id)
    return step


def _with(  # noqa: PLR0913
    state: GoalState,
    *,
    event: tuple[str, Mapping[str, Any]],
    at: float,
    status: GoalStatus | None = None,
    open_steps: Mapping[str, StepState] | None = None,
    artifacts: Mapping[str, Any] | None = None,
) -> GoalState:
    name, data = event
    return GoalState(
        goal_id=state.goal_id,
        status=status if status is not None else state.status,
        open_steps=dict(open_steps if open_steps is not None else state.open_steps),
        artifacts=dict(artifacts if artifacts is not None else state.artifacts),
        log=(*state.log, LogEntry(at=at, event=name, data=dict(data))),
    )
