"""Domain models for goal state, decisions, and agent responses."""

from __future__ import annotations

import random
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar


class GoalStatus(str, Enum):
    """Goal lifecycle states."""

    RUNNING = "RUNNING"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_GOAL_STATUSES


TERMINAL_GOAL_STATUSES = frozenset(
    {GoalStatus.COMPLETED, GoalStatus.FAILED, GoalStatus.CANCELLED},
)


class StepStatus(str, Enum):
    """Step lifecycle states."""

    WAITING = "WAITING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"


class ActionType(str, Enum):
    """Tags of the decision action variants."""

    REQUEST_WORK = "REQUEST_WORK"
    REQUEST_APPROVAL = "REQUEST_APPROVAL"
    ANNOTATE = "ANNOTATE"


class ResponseStatus(str, Enum):
    """Outcome reported by an agent for one step run."""

    OK = "OK"
    PARTIAL = "PARTIAL"
    FAIL = "FAIL"
    RATE_LIMITED = "RATE_LIMITED"
    CONTEXT_EXCEEDED = "CONTEXT_EXCEEDED"


class AgentErrorKind(str, Enum):
    """Normalized remote error kinds."""

    RATE_LIMIT = "RATE_LIMIT"
    CONTEXT_EXCEEDED = "CONTEXT_EXCEEDED"
    INVALID_REQUEST = "INVALID_REQUEST"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    TIMEOUT = "TIMEOUT"


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """Injected time and randomness for pure state transitions."""

    now: float
    random: random.Random = field(
        default_factory=lambda: random.Random(0),  # noqa: S311
        compare=False,
    )


@dataclass(frozen=True, slots=True)
class LogEntry:
    """One audit/replay record."""

    at: float
    event: str
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StepState:
    """State of one unit of requested work."""

    kind: str
    status: StepStatus
    requested_at: float
    updated_at: float
    payload: Any = None


@dataclass(frozen=True, slots=True)
class GoalState:
    """Snapshot of a goal; replaced wholesale on every transition."""

    goal_id: str
    status: GoalStatus
    open_steps: Mapping[str, StepState] = field(default_factory=dict)
    artifacts: Mapping[str, Any] = field(default_factory=dict)
    log: tuple[LogEntry, ...] = ()


@dataclass(frozen=True, slots=True)
class RequestWork:
    """Ask for a new unit of work of ``work_kind``."""

    type: ClassVar[ActionType] = ActionType.REQUEST_WORK

    work_kind: str
    payload: Any = None
    step_id: str | None = None


@dataclass(frozen=True, slots=True)
class RequestApproval:
    """Pause the goal until a human approves."""

    type: ClassVar[ActionType] = ActionType.REQUEST_APPROVAL

    payload: Any = None
    step_id: str | None = None


@dataclass(frozen=True, slots=True)
class Annotate:
    """Record an artifact value on the goal."""

    type: ClassVar[ActionType] = ActionType.ANNOTATE

    key: str
    value: Any = None


Action = RequestWork | RequestApproval | Annotate


@dataclass(frozen=True, slots=True)
class Decision:
    """Output of a spec for one iteration."""

    decision_id: str
    actions: tuple[Action, ...] = ()
    finalize: bool = False
    based_on: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class AgentError:
    """Classified remote error; ``retryable`` is set by the originator."""

    kind: AgentErrorKind
    message: str
    retryable: bool


@dataclass(frozen=True, slots=True)
class AgentResponse:
    """Result of one agent run for one step."""

    goal_id: str
    step_id: str
    status: ResponseStatus
    run_id: str = "unknown"
    agent_role: str = "unknown"
    content: Any = None
    artifacts: Mapping[str, Any] | None = None
    metrics: Mapping[str, Any] | None = None
    errors: tuple[AgentError, ...] = ()


class DecisionValidationError(ValueError):
    """Structurally invalid decision or action."""


def decision_from_dict(raw: Mapping[str, Any]) -> Decision:
    """Parse and validate a serialized decision."""

    decision_id = raw.get("decisionId", raw.get("decision_id"))
    if not isinstance(decision_id, str) or not decision_id.strip():
        raise DecisionValidationError(
            f"Decision must have a non-empty decisionId (got keys: {sorted(raw)})",
        )
    raw_actions = raw.get("actions", [])
    if not isinstance(raw_actions, list):
        raise DecisionValidationError(f"Decision {decision_id!r}: actions must be a list")
    finalize = raw.get("finalize", False)
    if not isinstance(finalize, bool):
        raise DecisionValidationError(f"Decision {decision_id!r}: finalize must be a boolean")
    based_on = raw.get("basedOn", raw.get("based_on"))
    if based_on is not None and not isinstance(based_on, Mapping):
        raise DecisionValidationError(f"Decision {decision_id!r}: basedOn must be an object")

    return Decision(
        decision_id=decision_id,
        actions=tuple(_action_from_dict(decision_id, item) for item in raw_actions),
        finalize=finalize,
        based_on=dict(based_on) if based_on is not None else None,
    )


def _action_from_dict(decision_id: str, raw: object) -> Action:
    if not isinstance(raw, Mapping):
        raise DecisionValidationError(f"Decision {decision_id!r}: action must be an object")
    action_type = raw.get("type")
    step_id = raw.get("stepId", raw.get("step_id"))
    if step_id is not None and not isinstance(step_id, str):
        raise DecisionValidationError(f"Decision {decision_id!r}: stepId must be a string")

    if action_type == ActionType.REQUEST_WORK.value:
        work_kind = raw.get("workKind", raw.get("work_kind"))
        if not isinstance(work_kind, str) or not work_kind.strip():
            raise DecisionValidationError(
                f"Decision {decision_id!r}: REQUEST_WORK requires workKind",
            )
        return RequestWork(work_kind=work_kind, payload=raw.get("payload"), step_id=step_id)
    if action_type == ActionType.REQUEST_APPROVAL.value:
        return RequestApproval(payload=raw.get("payload"), step_id=step_id)
    if action_type == ActionType.ANNOTATE.value:
        key = raw.get("key")
        if not isinstance(key, str) or not key:
            raise DecisionValidationError(f"Decision {decision_id!r}: ANNOTATE requires key")
        return Annotate(key=key, value=raw.get("value"))
    raise DecisionValidationError(
        f"Decision {decision_id!r}: unknown action type {action_type!r}",
    )


def goal_state_to_dict(state: GoalState) -> dict[str, Any]:
    """Serialize a goal snapshot for callers that persist it."""

    return {
        "goalId": state.goal_id,
        "status": state.status.value,
        "openSteps": {
            step_id: {
                "kind": step.kind,
                "status": step.status.value,
                "requestedAt": step.requested_at,
                "updatedAt": step.updated_at,
                "payload": step.payload,
            }
            for step_id, step in state.open_steps.items()
        },
        "artifacts": dict(state.artifacts),
        "log": [
            {"at": entry.at, "event": entry.event, "data": dict(entry.data)}
            for entry in state.log
        ],
    }


def goal_state_from_dict(raw: Mapping[str, Any]) -> GoalState:
    """Restore a goal snapshot produced by ``goal_state_to_dict``."""

    missing = [
        key for key in ("goalId", "status", "openSteps", "artifacts", "log") if key not in raw
    ]
    if missing:
        raise ValueError(f"Goal state missing required fields: {', '.join(missing)}")
    return GoalState(
        goal_id=str(raw["goalId"]),
        status=GoalStatus(raw["status"]),
        open_steps={
            step_id: StepState(
                kind=str(step["kind"]),
                status=StepStatus(step["status"]),
                requested_at=float(step["requestedAt"]),
                updated_at=float(step["updatedAt"]),
                payload=step.get("payload"),
            )
            for step_id, step in raw["openSteps"].items()
        },
        artifacts=dict(raw["artifacts"]),
        log=tuple(
            LogEntry(at=float(entry["at"]), event=str(entry["event"]), data=entry.get("data", {}))
            for entry in raw["log"]
        ),
    )
