"""CLI agent executor: runs one engine step through a routed CLI agent."""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Callable
from pathlib import Path
from typing import Any

from build_coordinator.agents.backend import (
    AgentBackend,
    BackendRunRequest,
    BackendRunResult,
    CliAgentBackend,
)
from build_coordinator.agents.contracts import StepInputContract, TaskManifest, read_agent_result
from build_coordinator.agents.failure_classifier import classify_agent_failure
from build_coordinator.agents.routing import FrozenRouting, RoutingDefaults, resolve_routing
from build_coordinator.agents.workdir import StepWorkdirManager
from build_coordinator.engine.models import (
    AgentError,
    AgentErrorKind,
    AgentResponse,
    ResponseStatus,
    StepState,
)

logger = logging.getLogger(__name__)

_UNSAFE_TASK_ID = re.compile(r"[^A-Za-z0-9._-]+")


class CliAgentExecutor:
    """Executes engine steps by materializing a workdir and running a CLI agent.

    A non-zero exit, a timeout, or an unreadable result becomes a FAIL-family
    ``AgentResponse``.  Only failures to start the agent at all
    (``BackendRunError``) propagate to the engine.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        goal_id: str,
        workdir_root: Path,
        routing_defaults: RoutingDefaults,
        backend: AgentBackend | None = None,
        timeout_seconds: int = 900,
        transient_exit_codes: tuple[int, ...] = (137, 143),
        workspace_path: Path | None = None,
        agent_override: str | None = None,
        profile_override: str | None = None,
        model_override: str | None = None,
        shutdown_requested: Callable[[], bool] | None = None,
        graceful_shutdown_seconds: int = 0,
    ) -> None:
        self.goal_id = goal_id
        self.workdir = StepWorkdirManager(workdir_root)
        self.routing_defaults = routing_defaults
        self.backend = backend or CliAgentBackend()
        self.timeout_seconds = timeout_seconds
        self.transient_exit_codes = transient_exit_codes
        self.workspace_path = workspace_path
        self.agent_override = agent_override
        self.profile_override = profile_override
        self.model_override = model_override
        self.shutdown_requested = shutdown_requested
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._attempts: Counter[str] = Counter()

    def execute(self, step_id: str, step: StepState) -> AgentResponse:
        routing = resolve_routing(
            defaults=self.routing_defaults,
            work_kind=step.kind,
            agent_override=self.agent_override,
            profile_override=self.profile_override,
            model_override=self.model_override,
        )
        self._attempts[step_id] += 1
        run_id = f"{step_id}-run-{self._attempts[step_id]}"
        step_input = StepInputContract(
            goal_id=self.goal_id,
            step_id=step_id,
            kind=step.kind,
            prompt=step_prompt(step),
            payload=step.payload,
            metadata={"routing": routing.to_metadata()},
        )
        materialized = self.workdir.materialize(
            task_id=_UNSAFE_TASK_ID.sub("_", f"{self.goal_id}-{run_id}"),
            step_input=step_input,
            workspace_path=self.workspace_path,
        )
        manifest = materialized.manifest
        logger.info(
            "Running step %s (%s) with agent=%s model=%s",
            step_id,
            step.kind,
            routing.agent,
            routing.model,
        )
        result = self.backend.run(
            BackendRunRequest(
                prompt=build_agent_prompt(step_input, manifest),
                prompt_file=Path(manifest.workdir) / "input" / "prompt.txt",
                stdout_path=Path(manifest.output_stdout_path),
                stderr_path=Path(manifest.output_stderr_path),
                timeout_seconds=self.timeout_seconds,
                agent=routing.agent,
                profile=routing.profile,
                model=routing.model,
                command_template=routing.command_template,
                manifest_path=materialized.manifest_path,
                cwd=self.workspace_path,
                shutdown_requested=self.shutdown_requested,
                graceful_shutdown_seconds=self.graceful_shutdown_seconds,
            ),
        )
        return self._to_response(step_id, run_id, routing, manifest, result)

    def _to_response(  # noqa: PLR0913
        self,
        step_id: str,
        run_id: str,
        routing: FrozenRouting,
        manifest: TaskManifest,
        result: BackendRunResult,
    ) -> AgentResponse:
        metrics: dict[str, Any] = {
            "exit_code": result.exit_code,
            "elapsed_seconds": round(result.elapsed_seconds, 3),
            "model": routing.model,
        }

        if result.timed_out:
            return self._failure(
                step_id,
                run_id,
                routing,
                metrics,
                error=AgentError(
                    kind=AgentErrorKind.TIMEOUT,
                    message=f"Agent timed out after {self.timeout_seconds}s",
                    retryable=True,
                ),
            )

        if result.cancelled:
            return self._failure(
                step_id,
                run_id,
                routing,
                metrics,
                error=AgentError(
                    kind=AgentErrorKind.PROVIDER_ERROR,
                    message="Agent run stopped: shutdown requested",
                    retryable=False,
                ),
            )

        if result.exit_code != 0:
            classification = classify_agent_failure(
                agent=routing.agent,
                exit_code=result.exit_code,
                stdout=_read_text(result.stdout_path),
                stderr=_read_text(result.stderr_path),
                transient_exit_codes=self.transient_exit_codes,
            )
            metrics["failure"] = classification.to_details(agent=routing.agent, model=routing.model)
            return self._failure(
                step_id,
                run_id,
                routing,
                metrics,
                error=AgentError(
                    kind=classification.kind,
                    message=(
                        f"Agent exited with code {result.exit_code} "
                        f"({classification.reason_code})"
                    ),
                    retryable=classification.retryable,
                ),
                status=classification.response_status,
            )

        try:
            contract = read_agent_result(Path(manifest.output_result_path))
        except (OSError, ValueError, TypeError) as error:
            return self._failure(
                step_id,
                run_id,
                routing,
                metrics,
                error=AgentError(
                    kind=AgentErrorKind.VALIDATION_ERROR,
                    message=f"Invalid agent result: {error}",
                    retryable=False,
                ),
            )

        return AgentResponse(
            goal_id=self.goal_id,
            step_id=step_id,
            status=ResponseStatus(contract.status),
            run_id=run_id,
            agent_role=routing.agent,
            content=contract.content,
            artifacts=contract.artifacts,
            metrics={**(contract.metrics or {}), **metrics},
        )

    def _failure(  # noqa: PLR0913
        self,
        step_id: str,
        run_id: str,
        routing: FrozenRouting,
        metrics: dict[str, Any],
        *,
        error: AgentError,
        status: ResponseStatus = ResponseStatus.FAIL,
    ) -> AgentResponse:
        logger.warning("Step %s failed: %s (%s)", step_id, error.message, error.kind.value)
        return AgentResponse(
            goal_id=self.goal_id,
            step_id=step_id,
            status=status,
            run_id=run_id,
            agent_role=routing.agent,
            metrics=metrics,
            errors=(error,),
        )


def step_prompt(step: StepState) -> str:
    """Extract the instruction text carried by a step payload."""

    payload = step.payload
    if isinstance(payload, str) and payload.strip():
        return payload
    if isinstance(payload, dict):
        prompt = payload.get("prompt") or payload.get("instructions")
        if isinstance(prompt, str) and prompt.strip():
            return prompt
    return f"Complete the {step.kind} step."


def build_agent_prompt(step_input: StepInputContract, manifest: TaskManifest) -> str:
    """Wrap step instructions with the file contract the agent must honor."""

    lines = [
        step_input.prompt.strip(),
        "",
        "## Execution contract",
        f"- Task manifest: {manifest.workdir}/meta/task_manifest.json",
        f"- Step input (JSON): {manifest.step_input_path}",
        f"- Write your result as JSON to: {manifest.output_result_path}",
        '- Result shape: {"status": "OK" | "PARTIAL" | "FAIL", "content": ..., '
        '"artifacts": {...}, "metrics": {...}}',
    ]
    if manifest.workspace_path:
        lines.append(f"- Work only inside: {manifest.workspace_path}")
    return "\n".join(lines) + "\n"


def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")
