"""Problem reports and coordinator actions."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ProblemType(str, Enum):
    """Failure categories reported by the build workflow."""

    BUILD_FAILURE = "BUILD_FAILURE"
    TEST_FAILURE = "TEST_FAILURE"
    QUALITY_FAILURE = "QUALITY_FAILURE"
    ENVIRONMENT_ERROR = "ENVIRONMENT_ERROR"


class CoordinatorDecision(str, Enum):
    """What the coordinator chose to do about a problem."""

    DELEGATE = "DELEGATE"
    ESCALATE = "ESCALATE"


@dataclass(frozen=True, slots=True)
class ProblemError:
    message: str
    stack: str | None = None
    code: str | None = None
    stdout: str | None = None
    stderr: str | None = None


@dataclass(frozen=True, slots=True)
class ProblemContext:
    package_name: str
    package_path: str
    plan_path: str
    phase: str
    attempt_number: int = 1


@dataclass(frozen=True, slots=True)
class Problem:
    """A failure the build workflow could not resolve on its own."""

    type: ProblemType
    error: ProblemError
    context: ProblemContext

    def to_dict(self) -> dict[str, Any]:
        error = {
            key: value
            for key, value in (
                ("message", self.error.message),
                ("stack", self.error.stack),
                ("code", self.error.code),
                ("stdout", self.error.stdout),
                ("stderr", self.error.stderr),
            )
            if value is not None
        }
        return {
            "type": self.type.value,
            "error": error,
            "context": {
                "packageName": self.context.package_name,
                "packagePath": self.context.package_path,
                "planPath": self.context.plan_path,
                "phase": self.context.phase,
                "attemptNumber": self.context.attempt_number,
            },
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Problem:
        """Parse a problem report as written by ``to_dict``."""

        error = raw.get("error")
        context = raw.get("context")
        if not isinstance(error, Mapping) or not isinstance(error.get("message"), str):
            raise ValueError("problem.error.message must be a string")
        if not isinstance(context, Mapping):
            raise ValueError("problem.context must be an object")
        try:
            problem_type = ProblemType(raw.get("type"))
        except ValueError as exc:
            allowed = ", ".join(item.value for item in ProblemType)
            raise ValueError(
                f"problem.type must be one of {allowed}, got {raw.get('type')!r}",
            ) from exc
        return cls(
            type=problem_type,
            error=ProblemError(
                message=error["message"],
                stack=error.get("stack"),
                code=error.get("code"),
                stdout=error.get("stdout"),
                stderr=error.get("stderr"),
            ),
            context=ProblemContext(
                package_name=str(context.get("packageName", "")),
                package_path=str(context.get("packagePath", "")),
                plan_path=str(context.get("planPath", "")),
                phase=str(context.get("phase", "")),
                attempt_number=int(context.get("attemptNumber", 1)),
            ),
        )


@dataclass(frozen=True, slots=True)
class DelegateTask:
    type: str
    instructions: str
    context: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Escalation:
    reason: str
    wait_for_signal: bool = False
    report_path: str | None = None


@dataclass(frozen=True, slots=True)
class CoordinatorAction:
    """Validated coordinator reply.

    DELEGATE carries ``agent`` and ``task``; ESCALATE carries ``escalation``.
    """

    decision: CoordinatorDecision
    reasoning: str
    agent: str | None = None
    task: DelegateTask | None = None
    escalation: Escalation | None = None
    modifications: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "decision": self.decision.value,
            "reasoning": self.reasoning,
        }
        if self.agent is not None:
            payload["agent"] = self.agent
        if self.task is not None:
            payload["task"] = {
                "type": self.task.type,
                "instructions": self.task.instructions,
                "context": dict(self.task.context),
            }
        if self.escalation is not None:
            payload["escalation"] = {
                "reason": self.escalation.reason,
                "waitForSignal": self.escalation.wait_for_signal,
                "reportPath": self.escalation.report_path,
            }
        if self.modifications:
            payload["modifications"] = list(self.modifications)
        return payload
