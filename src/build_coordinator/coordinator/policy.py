"""Coordinator escalation policy.

``analyze_problem`` makes exactly one call to the agent service and never
retries: a reply that cannot be parsed or validated raises
``CoordinatorResponseError`` and the calling workflow owns the retry policy.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from build_coordinator.agents.backend import (
    AgentBackend,
    BackendRunError,
    BackendRunRequest,
    CliAgentBackend,
)
from build_coordinator.agents.contracts import write_json
from build_coordinator.agents.failure_classifier import classify_agent_failure
from build_coordinator.agents.registry import AgentRegistry
from build_coordinator.agents.routing import FrozenRouting
from build_coordinator.coordinator.models import (
    CoordinatorAction,
    CoordinatorDecision,
    DelegateTask,
    Escalation,
    Problem,
)
from build_coordinator.coordinator.prompts import build_analysis_prompt

logger = logging.getLogger(__name__)

COORDINATOR_WORK_KIND = "coordinator"
ESCALATED_BY = "CoordinatorWorkflow"
RESPONSE_PREVIEW_CHARS = 500

_CODE_BLOCK = re.compile(r"```(?:json)?\s*\n([\s\S]*?)\n```")


class CoordinatorResponseError(ValueError):
    """Agent service reply is not a valid coordinator action."""


@runtime_checkable
class AgentService(Protocol):
    """Single-turn prompt in, text out."""

    def complete(self, prompt: str) -> str:
        """Return the raw reply for ``prompt``; failures raise."""


class CliAgentService:
    """Agent service backed by a CLI agent command; the reply is its stdout."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        routing: FrozenRouting,
        workdir_root: Path,
        timeout_seconds: int = 300,
        backend: AgentBackend | None = None,
        cwd: Path | None = None,
        transient_exit_codes: tuple[int, ...] = (137, 143),
    ) -> None:
        self.routing = routing
        self.workdir_root = workdir_root
        self.timeout_seconds = timeout_seconds
        self.backend = backend or CliAgentBackend()
        self.cwd = cwd
        self.transient_exit_codes = transient_exit_codes
        self._calls = 0

    def complete(self, prompt: str) -> str:
        self._calls += 1
        run_dir = self.workdir_root.resolve() / "coordinator" / f"call-{self._calls}"
        result = self.backend.run(
            BackendRunRequest(
                prompt=prompt,
                prompt_file=run_dir / "prompt.txt",
                stdout_path=run_dir / "stdout.log",
                stderr_path=run_dir / "stderr.log",
                timeout_seconds=self.timeout_seconds,
                agent=self.routing.agent,
                profile=self.routing.profile,
                model=self.routing.model,
                command_template=self.routing.command_template,
                cwd=self.cwd,
            ),
        )
        if result.timed_out:
            raise BackendRunError(
                f"Coordinator agent timed out after {self.timeout_seconds}s",
                transient=True,
            )
        stdout = result.stdout_path.read_text("utf-8", errors="replace")
        if result.exit_code != 0:
            stderr = result.stderr_path.read_text("utf-8", errors="replace")
            classification = classify_agent_failure(
                agent=self.routing.agent,
                exit_code=result.exit_code,
                stdout=stdout,
                stderr=stderr,
                transient_exit_codes=self.transient_exit_codes,
            )
            raise BackendRunError(
                f"Coordinator agent exited with code {result.exit_code} "
                f"({classification.reason_code}): {stderr.strip()[:RESPONSE_PREVIEW_CHARS]}",
                transient=classification.retryable,
            )
        return stdout


def strip_markdown_code_blocks(text: str) -> str:
    """Return the body of the first fenced block, or the trimmed text."""

    match = _CODE_BLOCK.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def analyze_problem(
    problem: Problem,
    registry: AgentRegistry,
    service: AgentService,
) -> CoordinatorAction:
    """Ask the agent service to delegate or escalate ``problem``."""

    prompt = build_analysis_prompt(problem, registry.agents)
    reply = service.complete(prompt)
    action = parse_coordinator_action(reply)
    if action.agent is not None and action.agent not in registry:
        logger.warning("Coordinator delegated to unregistered agent %r", action.agent)
    logger.info(
        "Coordinator decided %s for %s (%s)",
        action.decision.value,
        problem.context.package_name or "<unnamed package>",
        problem.type.value,
    )
    return action


def parse_coordinator_action(reply: str) -> CoordinatorAction:
    """Parse and validate a raw agent service reply."""

    cleaned = strip_markdown_code_blocks(reply)
    try:
        raw = json.loads(cleaned)
    except json.JSONDecodeError as error:
        raise CoordinatorResponseError(
            f"Failed to parse coordinator reply as JSON: {error}\n"
            f"Response content: {reply[:RESPONSE_PREVIEW_CHARS]}...",
        ) from error
    if not isinstance(raw, dict):
        raise CoordinatorResponseError(
            f"Coordinator reply must be a JSON object, got {type(raw).__name__}",
        )
    validate_coordinator_action(raw)

    decision = CoordinatorDecision(raw["decision"])
    task = raw.get("task")
    escalation = raw.get("escalation")
    modifications = raw.get("modifications") or []
    return CoordinatorAction(
        decision=decision,
        reasoning=str(raw["reasoning"]),
        agent=str(raw["agent"]) if decision is CoordinatorDecision.DELEGATE else None,
        task=(
            DelegateTask(
                type=str(task.get("type", "")),
                instructions=str(task.get("instructions", "")),
                context=dict(task["context"]) if isinstance(task.get("context"), dict) else {},
            )
            if decision is CoordinatorDecision.DELEGATE
            else None
        ),
        escalation=(
            Escalation(
                reason=str(escalation.get("reason", "")),
                wait_for_signal=bool(escalation.get("waitForSignal", False)),
                report_path=escalation.get("reportPath") or None,
            )
            if decision is CoordinatorDecision.ESCALATE
            else None
        ),
        modifications=tuple(str(item) for item in modifications),
    )


def validate_coordinator_action(raw: Mapping[str, Any]) -> None:
    """Raise ``CoordinatorResponseError`` unless ``raw`` is a well-formed action."""

    decision = raw.get("decision")
    shape = f"(reply keys: {sorted(raw)}, decision: {decision!r})"
    if not decision:
        raise CoordinatorResponseError(f"CoordinatorAction must have decision field {shape}")
    allowed = {item.value for item in CoordinatorDecision}
    if not isinstance(decision, str) or decision not in allowed:
        raise CoordinatorResponseError(
            f"CoordinatorAction decision must be one of {sorted(allowed)} {shape}",
        )
    if decision == CoordinatorDecision.DELEGATE.value:
        agent = raw.get("agent")
        task = raw.get("task")
        has_agent = isinstance(agent, str) and bool(agent.strip())
        has_task = isinstance(task, dict) and bool(task)
        if not (has_agent and has_task):
            raise CoordinatorResponseError(
                f"DELEGATE decision requires agent and task fields {shape}",
            )
    if decision == CoordinatorDecision.ESCALATE.value:
        escalation = raw.get("escalation")
        if not isinstance(escalation, dict) or not escalation:
            raise CoordinatorResponseError(f"ESCALATE decision requires escalation field {shape}")
    reasoning = raw.get("reasoning")
    if not isinstance(reasoning, str) or not reasoning.strip():
        raise CoordinatorResponseError(f"CoordinatorAction must have reasoning field {shape}")


def write_diagnostic_report(
    problem: Problem,
    action: CoordinatorAction,
    *,
    default_path: Path,
    escalated_by: str = ESCALATED_BY,
    now: datetime | None = None,
) -> Path:
    """Persist the escalation report for a human reviewer and return its path."""

    report_path = (
        Path(action.escalation.report_path)
        if action.escalation is not None and action.escalation.report_path
        else default_path
    )
    write_json(
        report_path,
        {
            "timestamp": (now or datetime.now(UTC)).isoformat(),
            "problem": problem.to_dict(),
            "action": action.to_dict(),
            "escalatedBy": escalated_by,
        },
    )
    logger.info("Diagnostic report written: %s", report_path)
    return report_path
