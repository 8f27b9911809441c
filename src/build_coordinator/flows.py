"""Prefect workflows around the engine: coordination and parallel builds.

The engine itself stays synchronous and pure; these flows supply the
surrounding build workflow that decides when to call the coordinator and
how many isolated engines to run side by side.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from prefect import flow, task

from build_coordinator.agents.executor import CliAgentExecutor
from build_coordinator.agents.registry import AgentRegistry, load_agent_registry
from build_coordinator.agents.routing import RoutingDefaults, resolve_routing
from build_coordinator.config import Settings
from build_coordinator.coordinator.models import CoordinatorAction, CoordinatorDecision, Problem
from build_coordinator.coordinator.policy import (
    COORDINATOR_WORK_KIND,
    AgentService,
    CliAgentService,
    analyze_problem,
    write_diagnostic_report,
)
from build_coordinator.engine.loop import AgentExecutor, Engine, SpecFunction
from build_coordinator.engine.models import ExecutionContext, GoalState, GoalStatus
from build_coordinator.engine.specs import Stage, pipeline_spec, single_step_spec
from build_coordinator.engine.transitions import new_goal_state
from build_coordinator.workspace.isolation import (
    CleanupResult,
    GitRunner,
    MergeResult,
    WorktreeRecord,
    WorktreeRegistry,
    cleanup_isolated_workspaces,
    create_isolated_workspace,
    merge_isolated_workspaces,
)

logger = logging.getLogger(__name__)


def run_goal(
    *,
    goal_id: str,
    spec: SpecFunction,
    executor: AgentExecutor,
    settings: Settings,
    data: dict[str, Any] | None = None,
) -> GoalState:
    """Run one goal from a fresh state with the configured engine limits."""

    engine = Engine(
        new_goal_state(goal_id, ExecutionContext(now=time.time()), data=data),
        max_iterations=settings.engine.max_iterations,
        timeout_seconds=settings.engine.timeout_seconds,
        seed=settings.engine.seed,
    )
    return engine.run(spec, executor)


@dataclass(slots=True)
class CoordinatorFlowResult:
    action: CoordinatorAction
    report_path: Path | None = None
    delegated_state: GoalState | None = None


@dataclass(frozen=True, slots=True)
class BuildTask:
    """One independent unit of a parallel build."""

    task_name: str
    branch_name: str
    stages: tuple[Stage, ...]


@dataclass(slots=True)
class ParallelBuildResult:
    worktrees: list[WorktreeRecord] = field(default_factory=list)
    goal_states: dict[str, GoalState] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    merge: MergeResult | None = None
    cleanup: CleanupResult | None = None


@task(name="analyze_problem")
def analyze_problem_task(
    problem: Problem,
    registry: AgentRegistry,
    service: AgentService,
) -> CoordinatorAction:
    return analyze_problem(problem, registry, service)


@task(name="run_task_build")
def run_task_build(
    *,
    worktree: WorktreeRecord,
    stages: tuple[Stage, ...],
    settings: Settings,
    routing_defaults: RoutingDefaults,
    agent_override: str | None = None,
) -> GoalState:
    """Drive one task's engine inside its own worktree."""

    executor = CliAgentExecutor(
        goal_id=worktree.task_name,
        workdir_root=settings.agents.workdir_root / worktree.task_name,
        routing_defaults=routing_defaults,
        timeout_seconds=settings.agents.timeout_seconds,
        transient_exit_codes=settings.agents.transient_exit_codes,
        workspace_path=worktree.path,
        agent_override=agent_override,
    )
    return run_goal(
        goal_id=worktree.task_name,
        spec=pipeline_spec(stages),
        executor=executor,
        settings=settings,
        data={"branch": worktree.branch_name, "worktree": str(worktree.path)},
    )


@flow(name="coordinator_flow", validate_parameters=False)
def coordinator_flow(
    problem: Problem,
    *,
    settings: Settings | None = None,
    service: AgentService | None = None,
    registry: AgentRegistry | None = None,
    on_progress: Callable[[str], None] | None = None,
) -> CoordinatorFlowResult:
    """Analyze a failure, then escalate with a report or run the delegated fix."""

    emit = on_progress or (lambda _: None)
    settings = settings or Settings.from_env()
    routing_defaults = RoutingDefaults.from_settings(settings.agents)
    registry = registry or load_agent_registry(settings.coordinator.agents_dir)
    if service is None:
        service = CliAgentService(
            routing=resolve_routing(
                defaults=routing_defaults,
                work_kind=COORDINATOR_WORK_KIND,
                agent_override=settings.coordinator.agent,
            ),
            workdir_root=settings.agents.workdir_root,
            timeout_seconds=settings.coordinator.timeout_seconds,
            transient_exit_codes=settings.agents.transient_exit_codes,
        )

    emit(f"Analyzing {problem.type.value} in {problem.context.package_name or '<package>'}")
    action = analyze_problem_task(problem, registry, service)
    result = CoordinatorFlowResult(action=action)

    if action.decision is CoordinatorDecision.ESCALATE:
        result.report_path = write_diagnostic_report(
            problem,
            action,
            default_path=settings.coordinator.report_path,
        )
        emit(f"Escalated to a human: {result.report_path}")
        return result

    if action.task is None or action.agent is None:
        raise ValueError("DELEGATE action without agent or task")
    descriptor = registry.get(action.agent)
    instructions = action.task.instructions
    if descriptor is not None and descriptor.instructions:
        instructions = f"{descriptor.instructions}\n\n{instructions}"
    package_path = Path(problem.context.package_path) if problem.context.package_path else None
    executor = CliAgentExecutor(
        goal_id=f"delegate-{action.agent}",
        workdir_root=settings.agents.workdir_root,
        routing_defaults=routing_defaults,
        timeout_seconds=settings.agents.timeout_seconds,
        transient_exit_codes=settings.agents.transient_exit_codes,
        workspace_path=package_path,
    )
    emit(f"Delegating {action.task.type or 'fix'} to {action.agent}")
    result.delegated_state = run_goal(
        goal_id=f"delegate-{action.agent}",
        spec=single_step_spec(
            action.task.type or "delegate",
            {
                "prompt": instructions,
                "agent": action.agent,
                "context": dict(action.task.context),
            },
        ),
        executor=executor,
        settings=settings,
    )
    emit(f"Delegated task finished: {result.delegated_state.status.value}")
    return result


@flow(name="parallel_build_flow", validate_parameters=False)
def parallel_build_flow(  # noqa: PLR0913
    *,
    repo_path: Path,
    tasks: Sequence[BuildTask],
    settings: Settings | None = None,
    agent_override: str | None = None,
    cleanup: bool = True,
    on_progress: Callable[[str], None] | None = None,
) -> ParallelBuildResult:
    """Run each task's engine in its own worktree, then merge back in task order."""

    emit = on_progress or (lambda _: None)
    settings = settings or Settings.from_env()
    routing_defaults = RoutingDefaults.from_settings(settings.agents)
    git = GitRunner.from_settings(settings.git)
    registry = WorktreeRegistry()
    result = ParallelBuildResult()

    for build_task in tasks:
        record = create_isolated_workspace(
            repo_path,
            build_task.branch_name,
            build_task.task_name,
            registry=registry,
            git=git,
            guidance_files=settings.git.guidance_files,
        )
        result.worktrees.append(record)
        emit(f"[{build_task.task_name}] worktree ready at {record.path}")

    futures = [
        run_task_build.submit(
            worktree=record,
            stages=build_task.stages,
            settings=settings,
            routing_defaults=routing_defaults,
            agent_override=agent_override,
        )
        for record, build_task in zip(result.worktrees, tasks, strict=True)
    ]

    completed: list[WorktreeRecord] = []
    for record, future in zip(result.worktrees, futures, strict=True):
        try:
            state = future.result()
        except Exception as exc:  # noqa: BLE001
            result.failures[record.task_name] = str(exc)
            logger.exception("Task %s failed", record.task_name)
            continue
        result.goal_states[record.task_name] = state
        emit(f"[{record.task_name}] {state.status.value}")
        if state.status is GoalStatus.COMPLETED:
            completed.append(record)

    result.merge = merge_isolated_workspaces(repo_path, completed, git=git)
    emit(
        f"Merged {len(result.merge.merged_branches)} branch(es), "
        f"{len(result.merge.conflicts)} conflict(s)",
    )
    if cleanup:
        # Unmerged branches are kept so their work can be recovered by hand.
        merged = set(result.merge.merged_branches)
        merged_records = [r for r in result.worktrees if r.branch_name in merged]
        other_records = [r for r in result.worktrees if r.branch_name not in merged]
        result.cleanup = CleanupResult()
        for remove_branches, records in (
            (settings.git.remove_branches, merged_records),
            (False, other_records),
        ):
            partial = cleanup_isolated_workspaces(
                repo_path,
                records,
                remove_branches=remove_branches,
                registry=registry,
                git=git,
            )
            result.cleanup.removed_worktrees.extend(partial.removed_worktrees)
            result.cleanup.removed_branches.extend(partial.removed_branches)
            result.cleanup.errors.extend(partial.errors)
    return result
