"""Built-in decision policies.

A spec is any pure callable ``GoalState -> Decision``.  The factories here
close over immutable configuration only, so calling the returned function
twice with the same state yields the same decision.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from build_coordinator.engine.loop import SpecFunction
from build_coordinator.engine.models import (
    Annotate,
    Decision,
    GoalState,
    RequestWork,
    StepStatus,
)


@dataclass(frozen=True, slots=True)
class Stage:
    """One unit of work requested by a pipeline spec."""

    kind: str
    payload: Any = None


def pipeline_spec(stages: Sequence[Stage]) -> SpecFunction:
    """Request stages one after another; finalize after the last or on failure."""

    frozen = tuple(stages)
    if not frozen:
        raise ValueError("pipeline_spec requires at least one stage")

    def decide(state: GoalState) -> Decision:
        decision_id = f"{state.goal_id}-decision-{len(state.log)}"
        step_ids = [f"{stage.kind}-{index + 1}" for index, stage in enumerate(frozen)]

        for index, (stage, step_id) in enumerate(zip(frozen, step_ids, strict=True)):
            step = state.open_steps.get(step_id)
            if step is None:
                return Decision(
                    decision_id=decision_id,
                    actions=(
                        RequestWork(work_kind=stage.kind, payload=stage.payload, step_id=step_id),
                    ),
                    based_on={"stage": index},
                )
            if step.status is StepStatus.FAILED:
                return Decision(
                    decision_id=decision_id,
                    actions=(Annotate(key="failed_stage", value=step_id),),
                    finalize=True,
                    based_on={"stepId": step_id},
                )
            if step.status is not StepStatus.DONE:
                return Decision(decision_id=decision_id, based_on={"stepId": step_id})

        return Decision(decision_id=decision_id, finalize=True)

    return decide


def single_step_spec(kind: str, payload: Any = None) -> SpecFunction:
    """Request one unit of work and finalize once it has an outcome."""

    return pipeline_spec([Stage(kind=kind, payload=payload)])
