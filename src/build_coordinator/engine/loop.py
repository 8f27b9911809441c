"""Sequential engine loop driving a goal to completion."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Protocol

from build_coordinator.engine.models import (
    AgentResponse,
    Decision,
    ExecutionContext,
    GoalState,
    GoalStatus,
    StepState,
    StepStatus,
)
from build_coordinator.engine.transitions import (
    apply_agent_response,
    apply_decision,
    cancel_state,
    executor_failure_response,
    finalize_state,
    mark_in_progress,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 1000

SpecFunction = Callable[[GoalState], Decision]


class AgentExecutor(Protocol):
    """Protocol implemented by step executors."""

    def execute(self, step_id: str, step: StepState) -> AgentResponse:
        """Run one step and return the agent's response; may raise."""


class EngineLimitError(RuntimeError):
    """Engine stopped because a configured limit was hit."""

    def __init__(self, message: str, *, limit: str, value: float) -> None:
        super().__init__(message)
        self.limit = limit
        self.value = value


class Engine:
    """Drives decision -> dispatch -> fold cycles for a single goal.

    The loop is strictly sequential: a decision is computed only after the
    previous iteration's responses have been folded into state.  The only
    call that leaves the process is ``executor.execute``.
    """

    def __init__(  # noqa: PLR0913
        self,
        initial_state: GoalState,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        seed: int = 0,
    ) -> None:
        _validate_state(initial_state)
        if max_iterations <= 0:
            raise ValueError("max_iterations must be > 0")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0 when provided")
        self._state = initial_state
        self.max_iterations = max_iterations
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._monotonic = monotonic
        self._random = random.Random(seed)  # noqa: S311
        self._cancel_reason: str | None = None
        self.iterations = 0

    @property
    def state(self) -> GoalState:
        return self._state

    def request_cancel(self, reason: str = "cancel requested") -> None:
        """Stop the loop at the next iteration boundary."""

        self._cancel_reason = reason

    @property
    def cancel_requested(self) -> bool:
        """Shutdown probe for executors running a step when cancel arrives."""

        return self._cancel_reason is not None

    def process_decision(self, decision: Decision, ctx: ExecutionContext) -> GoalState:
        self._state = apply_decision(self._state, decision, ctx)
        return self._state

    def process_agent_response(self, response: AgentResponse, ctx: ExecutionContext) -> GoalState:
        self._state = apply_agent_response(self._state, response, ctx)
        return self._state

    def run(self, spec: SpecFunction, executor: AgentExecutor) -> GoalState:
        """Run until the goal leaves RUNNING; limits exhaustion is fatal."""

        started = self._monotonic()
        while self._state.status is GoalStatus.RUNNING:
            if self._cancel_reason is not None:
                self._state = cancel_state(self._state, self._context(), reason=self._cancel_reason)
                logger.info("Goal %s cancelled: %s", self._state.goal_id, self._cancel_reason)
                break
            if self.iterations >= self.max_iterations:
                raise EngineLimitError(
                    f"Maximum iterations ({self.max_iterations}) reached without completion "
                    f"for goal {self._state.goal_id!r}",
                    limit="max_iterations",
                    value=self.max_iterations,
                )
            elapsed = self._monotonic() - started
            if self.timeout_seconds is not None and elapsed > self.timeout_seconds:
                raise EngineLimitError(
                    f"Goal {self._state.goal_id!r} exceeded timeout of "
                    f"{self.timeout_seconds}s after {elapsed:.1f}s",
                    limit="timeout_seconds",
                    value=self.timeout_seconds,
                )

            ctx = self._context()
            decision = spec(self._state)
            # Finalize after the dispatch sweep so steps still WAITING at decision
            # time are folded before the completion check.
            self.process_decision(replace(decision, finalize=False), ctx)
            self._dispatch_waiting(executor, ctx)
            if decision.finalize:
                self._state = finalize_state(self._state, ctx)
            self.iterations += 1

        logger.info(
            "Goal %s finished with status=%s after %d iteration(s)",
            self._state.goal_id,
            self._state.status.value,
            self.iterations,
        )
        return self._state

    def _dispatch_waiting(self, executor: AgentExecutor, ctx: ExecutionContext) -> None:
        waiting = [
            step_id
            for step_id, step in self._state.open_steps.items()
            if step.status is StepStatus.WAITING
        ]
        for step_id in waiting:
            self._state = mark_in_progress(self._state, step_id, ctx)
            step = self._state.open_steps[step_id]
            try:
                response = executor.execute(step_id, step)
            except Exception as error:
                logger.warning("Executor raised for step %s: %s", step_id, error)
                self._state = apply_agent_response(
                    self._state,
                    executor_failure_response(self._state.goal_id, step_id, error),
                    ctx,
                )
                raise
            self.process_agent_response(response, ctx)

    def _context(self) -> ExecutionContext:
        return ExecutionContext(now=self._clock(), random=self._random)


def _validate_state(state: GoalState) -> None:
    if not state.goal_id:
        raise ValueError("GoalState must have goal_id")
    if not isinstance(state.status, GoalStatus):
        raise TypeError("GoalState.status must be a GoalStatus")
