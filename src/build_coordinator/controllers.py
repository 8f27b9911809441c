"""Controllers for build-coordinator CLI commands."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, replace
from pathlib import Path

from build_coordinator.agents.executor import CliAgentExecutor
from build_coordinator.agents.registry import load_agent_registry
from build_coordinator.agents.routing import SUPPORTED_AGENTS, RoutingDefaults, resolve_routing
from build_coordinator.config import Settings
from build_coordinator.coordinator.models import CoordinatorDecision, Problem
from build_coordinator.coordinator.policy import (
    COORDINATOR_WORK_KIND,
    CliAgentService,
    analyze_problem,
    write_diagnostic_report,
)
from build_coordinator.engine.loop import Engine
from build_coordinator.engine.models import ExecutionContext, GoalStatus
from build_coordinator.engine.specs import single_step_spec
from build_coordinator.engine.transitions import new_goal_state
from build_coordinator.flows import coordinator_flow
from build_coordinator.workspace.isolation import (
    GitRunner,
    cleanup_isolated_workspaces,
    create_isolated_workspace,
    describe_worktree,
    merge_isolated_workspaces,
)
from build_coordinator.workspace.resume import get_resume_context


@dataclass(slots=True)
class AgentsListCommand:
    agents_dir: Path | None


@dataclass(slots=True)
class ResumeDetectCommand:
    workspace_root: Path
    package_path: str
    plan_path: Path


@dataclass(slots=True)
class WorktreeCreateCommand:
    repo_path: Path
    branch_name: str
    task_name: str
    base_branch: str | None


@dataclass(slots=True)
class WorktreeMergeCommand:
    repo_path: Path
    task_names: tuple[str, ...]
    commit_message: str | None


@dataclass(slots=True)
class WorktreeCleanupCommand:
    repo_path: Path
    task_names: tuple[str, ...]
    remove_branches: bool


@dataclass(slots=True)
class CoordinatorAnalyzeCommand:
    """CLI input for one-shot problem analysis."""

    problem_file: Path
    agent: str | None
    agents_dir: Path | None
    report_path: Path | None


@dataclass(slots=True)
class GoalRunCommand:
    """CLI input for a single-step goal run."""

    goal_id: str
    kind: str
    prompt: str
    agent: str | None
    model_profile: str | None
    model: str | None
    workspace: Path | None
    max_iterations: int | None


@dataclass(slots=True)
class CommandResult:
    lines: list[str]
    success: bool


@dataclass(slots=True)
class BuildCoordinatorCliController:
    """Turns CLI commands into calls on the engine, coordinator and workspace layers."""

    def list_agents(self, command: AgentsListCommand) -> list[str]:
        settings = _settings()
        registry = load_agent_registry(command.agents_dir or settings.coordinator.agents_dir)
        lines = [f"Agents: {len(registry)}"]
        for agent in registry.agents:
            lines.append(
                f"- {agent.name} priority={agent.priority} "
                f"problem_types={','.join(sorted(agent.problem_types))} "
                f"capabilities={','.join(sorted(agent.capabilities))} "
                f"source={agent.path}",
            )
        return lines

    def detect_resume(self, command: ResumeDetectCommand) -> list[str]:
        context = get_resume_context(
            command.workspace_root,
            command.package_path,
            command.plan_path,
        )
        if not context.should_resume or context.resume_point is None:
            return [f"Nothing to resume in {command.package_path}: start from scratch."]
        point = context.resume_point
        return [
            f"Phase: {point.phase.value} ({point.completion_percentage}% complete)",
            *context.findings,
            "",
            point.resume_instruction,
        ]

    def create_worktree(self, command: WorktreeCreateCommand) -> list[str]:
        settings = _settings()
        record = create_isolated_workspace(
            command.repo_path,
            command.branch_name,
            command.task_name,
            base_branch=command.base_branch,
            git=GitRunner.from_settings(settings.git),
            guidance_files=settings.git.guidance_files,
        )
        return [
            f"Worktree created: task={record.task_name} branch={record.branch_name}",
            f"Path: {record.path}",
        ]

    def merge_worktrees(self, command: WorktreeMergeCommand) -> CommandResult:
        git = GitRunner.from_settings(_settings().git)
        records = [
            describe_worktree(command.repo_path, task_name, git) for task_name in command.task_names
        ]
        result = merge_isolated_workspaces(
            command.repo_path,
            records,
            commit_message=command.commit_message,
            git=git,
        )
        lines = [f"Merged: {branch}" for branch in result.merged_branches]
        lines += [f"Conflict: {branch}" for branch in result.conflicts]
        lines += [f"Error: {error}" for error in result.errors]
        return CommandResult(lines=lines or ["Nothing to merge."], success=result.success)

    def cleanup_worktrees(self, command: WorktreeCleanupCommand) -> CommandResult:
        git = GitRunner.from_settings(_settings().git)
        lines: list[str] = []
        records = []
        for task_name in command.task_names:
            try:
                records.append(describe_worktree(command.repo_path, task_name, git))
            except RuntimeError as error:
                lines.append(f"Error: {error}")
        result = cleanup_isolated_workspaces(
            command.repo_path,
            records,
            remove_branches=command.remove_branches,
            git=git,
        )
        lines += [f"Removed worktree: {path}" for path in result.removed_worktrees]
        lines += [f"Removed branch: {branch}" for branch in result.removed_branches]
        lines += [f"Error: {error}" for error in result.errors]
        success = result.success and len(records) == len(command.task_names)
        return CommandResult(lines=lines, success=success)

    def analyze(self, command: CoordinatorAnalyzeCommand) -> list[str]:
        settings = _settings()
        problem = Problem.from_dict(json.loads(command.problem_file.read_text("utf-8")))
        registry = load_agent_registry(command.agents_dir or settings.coordinator.agents_dir)
        routing = resolve_routing(
            defaults=_routing_defaults(settings=settings),
            work_kind=COORDINATOR_WORK_KIND,
            agent_override=command.agent or settings.coordinator.agent,
        )
        service = CliAgentService(
            routing=routing,
            workdir_root=settings.agents.workdir_root,
            timeout_seconds=settings.coordinator.timeout_seconds,
            transient_exit_codes=settings.agents.transient_exit_codes,
        )
        action = analyze_problem(problem, registry, service)

        lines = [f"Decision: {action.decision.value}", f"Reasoning: {action.reasoning}"]
        if action.decision is CoordinatorDecision.DELEGATE and action.task is not None:
            lines.append(f"Agent: {action.agent}")
            lines.append(f"Task: {action.task.type}")
            lines.append(f"Instructions: {action.task.instructions}")
        elif action.escalation is not None:
            report_path = write_diagnostic_report(
                problem,
                action,
                default_path=command.report_path or settings.coordinator.report_path,
            )
            lines.append(f"Escalation: {action.escalation.reason}")
            lines.append(f"Diagnostic report: {report_path}")
        lines += [f"Modification: {item}" for item in action.modifications]
        return lines

    def run_coordinator(self, command: CoordinatorAnalyzeCommand) -> CommandResult:
        """Run the full coordinator workflow, including the delegated fix."""

        settings = _settings()
        coordinator_settings = replace(
            settings.coordinator,
            agent=command.agent or settings.coordinator.agent,
            agents_dir=command.agents_dir or settings.coordinator.agents_dir,
            report_path=command.report_path or settings.coordinator.report_path,
        )
        settings = replace(settings, coordinator=coordinator_settings)
        problem = Problem.from_dict(json.loads(command.problem_file.read_text("utf-8")))
        lines: list[str] = []
        result = coordinator_flow(problem, settings=settings, on_progress=lines.append)
        lines.append(f"Decision: {result.action.decision.value}")
        if result.report_path is not None:
            lines.append(f"Diagnostic report: {result.report_path}")
        success = True
        if result.delegated_state is not None:
            lines.append(f"Delegated goal: {result.delegated_state.status.value}")
            success = result.delegated_state.status is GoalStatus.COMPLETED
        return CommandResult(lines=lines, success=success)

    def run_goal(self, command: GoalRunCommand) -> CommandResult:
        settings = _settings()
        if command.agent is not None and command.agent.strip().lower() not in SUPPORTED_AGENTS:
            raise ValueError(
                f"Unsupported agent: {command.agent!r}. Use one of {', '.join(SUPPORTED_AGENTS)}.",
            )
        engine_settings = (
            replace(settings.engine, max_iterations=command.max_iterations)
            if command.max_iterations is not None
            else settings.engine
        )
        executor = CliAgentExecutor(
            goal_id=command.goal_id,
            workdir_root=settings.agents.workdir_root,
            routing_defaults=_routing_defaults(settings=settings),
            timeout_seconds=settings.agents.timeout_seconds,
            transient_exit_codes=settings.agents.transient_exit_codes,
            workspace_path=command.workspace,
            agent_override=command.agent,
            profile_override=command.model_profile,
            model_override=command.model,
        )
        engine = Engine(
            new_goal_state(command.goal_id, ExecutionContext(now=time.time())),
            max_iterations=engine_settings.max_iterations,
            timeout_seconds=engine_settings.timeout_seconds,
            seed=engine_settings.seed,
        )
        state = engine.run(single_step_spec(command.kind, {"prompt": command.prompt}), executor)

        lines = [
            f"Goal {state.goal_id}: {state.status.value} "
            f"after {engine.iterations} iteration(s)",
        ]
        for step_id, step in state.open_steps.items():
            lines.append(f"- {step_id} kind={step.kind} status={step.status.value}")
        for entry in state.log:
            if entry.event != "AGENT_RESPONSE":
                continue
            for error in entry.data.get("errors", []):
                lines.append(
                    f"  error {error['kind']}: {error['message']} "
                    f"(retryable={str(error['retryable']).lower()})",
                )
        return CommandResult(lines=lines, success=state.status is GoalStatus.COMPLETED)


def _settings() -> Settings:
    settings = Settings.from_env()
    settings.validate()
    return settings


def _routing_defaults(*, settings: Settings) -> RoutingDefaults:
    return RoutingDefaults.from_settings(settings.agents)
