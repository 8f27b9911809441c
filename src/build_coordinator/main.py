"""CLI entrypoint for build-coordinator."""

from pathlib import Path

import rich_click as click

from build_coordinator import __version__
from build_coordinator.agents.backend import BackendRunError
from build_coordinator.controllers import (
    AgentsListCommand,
    BuildCoordinatorCliController,
    CommandResult,
    CoordinatorAnalyzeCommand,
    GoalRunCommand,
    ResumeDetectCommand,
    WorktreeCleanupCommand,
    WorktreeCreateCommand,
    WorktreeMergeCommand,
)
from build_coordinator.engine.loop import EngineLimitError
from build_coordinator.workspace.isolation import IsolationError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = BuildCoordinatorCliController()

_USER_ERRORS = (ValueError, LookupError, OSError, BackendRunError, EngineLimitError, IsolationError)


@click.group()
@click.version_option(version=__version__, prog_name="build-coordinator")
def build_coordinator() -> None:
    """Deterministic orchestration of agent-driven package builds."""


@build_coordinator.group()
def agents() -> None:
    """Remediation agent registry."""


@agents.command("list")
@click.option(
    "--agents-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory of agent descriptor documents. Defaults to ~/.claude/agents.",
)
def agents_list(agents_dir: Path | None) -> None:
    """List built-in and discovered agents, highest priority first."""

    _emit_lines(_guarded(lambda: CONTROLLER.list_agents(AgentsListCommand(agents_dir=agents_dir))))


@build_coordinator.group()
def resume() -> None:
    """Resume detection for interrupted builds."""


@resume.command("detect")
@click.option(
    "--workspace-root",
    type=click.Path(path_type=Path, file_okay=False),
    required=True,
    help="Workspace root directory.",
)
@click.option("--package-path", required=True, help="Package directory relative to the root.")
@click.option(
    "--plan-path",
    type=click.Path(path_type=Path, dir_okay=False),
    required=True,
    help="Plan document listing the expected files.",
)
def resume_detect(workspace_root: Path, package_path: str, plan_path: Path) -> None:
    """Audit a package against its plan and print where to resume."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.detect_resume(
                ResumeDetectCommand(
                    workspace_root=workspace_root,
                    package_path=package_path,
                    plan_path=plan_path,
                ),
            ),
        ),
    )


@build_coordinator.group()
def worktree() -> None:
    """Isolated git worktrees for parallel tasks."""


_REPO_OPTION = click.option(
    "--repo",
    "repo_path",
    type=click.Path(path_type=Path, file_okay=False),
    required=True,
    help="Main repository (created and initialized if missing).",
)


@worktree.command("create")
@_REPO_OPTION
@click.option("--branch", "branch_name", required=True, help="Branch to create for the task.")
@click.option("--task", "task_name", required=True, help="Task name; keys the worktree path.")
@click.option("--base-branch", default=None, help="Start the branch from this ref.")
def worktree_create(
    repo_path: Path,
    branch_name: str,
    task_name: str,
    base_branch: str | None,
) -> None:
    """Create (or re-create) the worktree for a task."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.create_worktree(
                WorktreeCreateCommand(
                    repo_path=repo_path,
                    branch_name=branch_name,
                    task_name=task_name,
                    base_branch=base_branch,
                ),
            ),
        ),
    )


@worktree.command("merge")
@_REPO_OPTION
@click.option(
    "--task",
    "task_names",
    multiple=True,
    required=True,
    help="Task whose worktree to merge. Repeat to merge several, in order.",
)
@click.option("--message", "commit_message", default=None, help="Commit message for changes.")
def worktree_merge(
    repo_path: Path,
    task_names: tuple[str, ...],
    commit_message: str | None,
) -> None:
    """Merge task branches into the main branch, in the given order."""

    _emit_result(
        _guarded(
            lambda: CONTROLLER.merge_worktrees(
                WorktreeMergeCommand(
                    repo_path=repo_path,
                    task_names=task_names,
                    commit_message=commit_message,
                ),
            ),
        ),
        failure="Merge finished with conflicts or errors.",
    )


@worktree.command("cleanup")
@_REPO_OPTION
@click.option(
    "--task",
    "task_names",
    multiple=True,
    required=True,
    help="Task whose worktree to remove. Can be repeated.",
)
@click.option(
    "--remove-branches/--keep-branches",
    default=False,
    show_default=True,
    help="Also delete the task branches.",
)
def worktree_cleanup(
    repo_path: Path,
    task_names: tuple[str, ...],
    remove_branches: bool,
) -> None:
    """Remove task worktrees; failures are reported, not fatal."""

    _emit_result(
        _guarded(
            lambda: CONTROLLER.cleanup_worktrees(
                WorktreeCleanupCommand(
                    repo_path=repo_path,
                    task_names=task_names,
                    remove_branches=remove_branches,
                ),
            ),
        ),
        failure="Cleanup finished with errors.",
    )


@build_coordinator.group()
def coordinator() -> None:
    """Problem analysis: delegate or escalate."""


def _coordinator_options(func):
    func = click.option(
        "--report-path",
        type=click.Path(path_type=Path, dir_okay=False),
        default=None,
        help="Where to write the diagnostic report when escalating.",
    )(func)
    func = click.option(
        "--agents-dir",
        type=click.Path(path_type=Path, file_okay=False),
        default=None,
        help="Directory of agent descriptor documents.",
    )(func)
    func = click.option(
        "--agent",
        type=click.Choice(["codex", "claude", "gemini"], case_sensitive=False),
        default=None,
        help="CLI agent that performs the analysis.",
    )(func)
    return click.option(
        "--problem-file",
        type=click.Path(path_type=Path, dir_okay=False, exists=True),
        required=True,
        help="JSON problem report.",
    )(func)


@coordinator.command("analyze")
@_coordinator_options
def coordinator_analyze(
    problem_file: Path,
    agent: str | None,
    agents_dir: Path | None,
    report_path: Path | None,
) -> None:
    """Ask the coordinator agent to delegate or escalate one problem."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.analyze(
                CoordinatorAnalyzeCommand(
                    problem_file=problem_file,
                    agent=agent,
                    agents_dir=agents_dir,
                    report_path=report_path,
                ),
            ),
        ),
    )


@coordinator.command("run")
@_coordinator_options
def coordinator_run(
    problem_file: Path,
    agent: str | None,
    agents_dir: Path | None,
    report_path: Path | None,
) -> None:
    """Run the coordinator flow: analyze, then escalate or execute the delegated task."""

    _emit_result(
        _guarded(
            lambda: CONTROLLER.run_coordinator(
                CoordinatorAnalyzeCommand(
                    problem_file=problem_file,
                    agent=agent,
                    agents_dir=agents_dir,
                    report_path=report_path,
                ),
            ),
        ),
        failure="Delegated task did not complete.",
    )


@build_coordinator.group()
def goal() -> None:
    """Engine goals."""


@goal.command("run")
@click.option("--goal-id", required=True, help="Goal identifier.")
@click.option("--kind", default="implement", show_default=True, help="Work kind of the step.")
@click.option("--prompt", required=True, help="Instructions for the agent.")
@click.option(
    "--agent",
    type=click.Choice(["codex", "claude", "gemini"], case_sensitive=False),
    default=None,
    help="Override the default CLI agent.",
)
@click.option(
    "--model-profile",
    type=click.Choice(["fast", "quality"], case_sensitive=False),
    default=None,
    help="Override the model profile for the work kind.",
)
@click.option("--model", default=None, help="Explicit model id.")
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory the agent works in.",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Engine iteration cap.",
)
def goal_run(  # noqa: PLR0913
    goal_id: str,
    kind: str,
    prompt: str,
    agent: str | None,
    model_profile: str | None,
    model: str | None,
    workspace: Path | None,
    max_iterations: int | None,
) -> None:
    """Run a single-step goal through the engine and the CLI agent executor."""

    _emit_result(
        _guarded(
            lambda: CONTROLLER.run_goal(
                GoalRunCommand(
                    goal_id=goal_id,
                    kind=kind,
                    prompt=prompt,
                    agent=agent,
                    model_profile=model_profile,
                    model=model,
                    workspace=workspace,
                    max_iterations=max_iterations,
                ),
            ),
        ),
        failure="Goal did not complete.",
    )


def _guarded(call):
    try:
        return call()
    except _USER_ERRORS as error:
        raise click.ClickException(str(error)) from error


def _emit_result(result: CommandResult, *, failure: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    build_coordinator()
