"""Per-task git worktrees: create, merge back, and reclaim.

Every task gets a sibling directory ``build-<task_name>`` next to the main
repository, checked out on its own branch.  Merge-back is sequential in the
order given so conflicts resolve deterministically.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from build_coordinator.config import GitSettings

logger = logging.getLogger(__name__)

DEFAULT_MAIN_BRANCH = "main"


class GitCommandError(RuntimeError):
    """A git invocation exited with a non-zero status."""

    def __init__(self, args: Sequence[str], returncode: int, stdout: str, stderr: str) -> None:
        super().__init__(
            f"git {' '.join(args)} failed with exit code {returncode}: "
            f"{stderr.strip() or stdout.strip()}",
        )
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class IsolationError(RuntimeError):
    """Creating an isolated workspace failed."""

    def __init__(self, message: str, *, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class GitRunner:
    """Runs git with a fixed commit identity so commits work on bare CI hosts."""

    def __init__(self, *, user_name: str, user_email: str, binary: str = "git") -> None:
        self.user_name = user_name
        self.user_email = user_email
        self.binary = binary

    @classmethod
    def from_settings(cls, settings: GitSettings) -> GitRunner:
        return cls(user_name=settings.user_name, user_email=settings.user_email)

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        argv = [
            self.binary,
            "-c",
            f"user.name={self.user_name}",
            "-c",
            f"user.email={self.user_email}",
            "-c",
            "commit.gpgsign=false",
            *args,
        ]
        completed = subprocess.run(  # noqa: S603
            argv,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
        if check and completed.returncode != 0:
            raise GitCommandError(args, completed.returncode, completed.stdout, completed.stderr)
        return completed


@dataclass(frozen=True, slots=True)
class WorktreeRecord:
    """An isolated workspace owned by one task."""

    path: Path
    branch_name: str
    task_name: str


class WorktreeRegistry:
    """Caller-owned map of task name -> active worktree."""

    def __init__(self) -> None:
        self._records: dict[str, WorktreeRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, task_name: object) -> bool:
        return task_name in self._records

    def __iter__(self) -> Iterator[WorktreeRecord]:
        return iter(list(self._records.values()))

    def get(self, task_name: str) -> WorktreeRecord | None:
        return self._records.get(task_name)

    def register(self, record: WorktreeRecord) -> WorktreeRecord | None:
        """Store ``record`` and return the one it replaced, if any."""

        previous = self._records.get(record.task_name)
        self._records[record.task_name] = record
        return previous

    def discard(self, task_name: str) -> WorktreeRecord | None:
        return self._records.pop(task_name, None)


@dataclass(slots=True)
class MergeResult:
    merged_branches: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.conflicts and not self.errors


@dataclass(slots=True)
class CleanupResult:
    removed_worktrees: list[Path] = field(default_factory=list)
    removed_branches: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def worktree_path_for(repo_path: Path, task_name: str) -> Path:
    """Deterministic location of the worktree for ``task_name``."""

    return repo_path.resolve().parent / f"build-{task_name}"


def describe_worktree(repo_path: Path, task_name: str, git: GitRunner) -> WorktreeRecord:
    """Rebuild the record of an existing task worktree from disk."""

    path = worktree_path_for(repo_path, task_name)
    if not path.is_dir():
        raise IsolationError(f"No worktree for task {task_name!r} at {path}")
    try:
        branch = git.run(["branch", "--show-current"], cwd=path).stdout.strip()
    except GitCommandError as error:
        raise IsolationError(
            f"Cannot read branch of worktree {path}: {error}",
            stderr=error.stderr,
        ) from error
    if not branch:
        raise IsolationError(f"Worktree {path} has a detached HEAD")
    return WorktreeRecord(path=path, branch_name=branch, task_name=task_name)


def ensure_repository(repo_path: Path, git: GitRunner) -> None:
    """Initialize ``repo_path`` as a git repository with at least one commit."""

    repo_path.mkdir(parents=True, exist_ok=True)
    if git.run(["rev-parse", "--git-dir"], cwd=repo_path, check=False).returncode != 0:
        logger.info("Initializing git repository at %s", repo_path)
        git.run(["init"], cwd=repo_path)
    if git.run(["rev-parse", "--verify", "HEAD"], cwd=repo_path, check=False).returncode != 0:
        (repo_path / ".gitkeep").write_text("", "utf-8")
        git.run(["add", ".gitkeep"], cwd=repo_path)
        git.run(["commit", "-m", "Initial commit"], cwd=repo_path)


def create_isolated_workspace(  # noqa: PLR0913
    repo_path: Path,
    branch_name: str,
    task_name: str,
    *,
    base_branch: str | None = None,
    registry: WorktreeRegistry | None = None,
    git: GitRunner | None = None,
    guidance_files: Sequence[str] = GitSettings().guidance_files,
) -> WorktreeRecord:
    """Create (or re-create) the worktree for ``task_name`` on ``branch_name``.

    The branch is checked out with ``worktree add -B``: an existing branch of
    the same name is reset to ``base_branch`` (or HEAD), and commits on it that
    are not reachable from there are dropped from the branch.  A warning with
    the number of such commits is logged before the reset.
    """

    if not task_name.strip() or "/" in task_name or "\\" in task_name:
        raise ValueError(f"task_name must be a non-empty path segment, got {task_name!r}")
    if not branch_name.strip():
        raise ValueError("branch_name must be non-empty")
    git = git or GitRunner.from_settings(GitSettings())
    worktree_path = worktree_path_for(repo_path, task_name)

    try:
        ensure_repository(repo_path, git)
        previous = registry.get(task_name) if registry is not None else None
        if previous is not None and previous.path != worktree_path:
            _force_remove_worktree(repo_path, previous.path, git)
        _force_remove_worktree(repo_path, worktree_path, git)
        if worktree_path.exists():
            raise IsolationError(
                f"Cannot reuse {worktree_path}: directory exists and is not a removable worktree",
            )

        _warn_on_branch_reset(repo_path, branch_name, base_branch or "HEAD", git)
        args = ["worktree", "add", "-B", branch_name, str(worktree_path)]
        if base_branch:
            args.append(base_branch)
        git.run(args, cwd=repo_path)
        _share_guidance_files(repo_path, worktree_path, guidance_files, git)
    except GitCommandError as error:
        raise IsolationError(
            f"Failed to create worktree for task {task_name!r}: {error}",
            stderr=error.stderr,
        ) from error

    record = WorktreeRecord(path=worktree_path, branch_name=branch_name, task_name=task_name)
    if registry is not None:
        registry.register(record)
    logger.info("Created worktree %s on branch %s", worktree_path, branch_name)
    return record


def merge_isolated_workspaces(
    main_workspace: Path,
    worktrees: Sequence[WorktreeRecord],
    *,
    commit_message: str | None = None,
    git: GitRunner | None = None,
) -> MergeResult:
    """Commit pending worktree changes and merge each branch, in order."""

    git = git or GitRunner.from_settings(GitSettings())
    result = MergeResult()
    try:
        current = git.run(["branch", "--show-current"], cwd=main_workspace).stdout.strip()
    except GitCommandError as error:
        result.errors.append(f"Cannot determine main branch: {error}")
        return result
    main_branch = current or DEFAULT_MAIN_BRANCH

    for worktree in worktrees:
        try:
            _commit_pending(worktree, commit_message, git)
            git.run(["checkout", main_branch], cwd=main_workspace)
            merge = git.run(
                ["merge", worktree.branch_name, "--no-edit"],
                cwd=main_workspace,
                check=False,
            )
        except (GitCommandError, OSError) as error:
            # A vanished worktree directory surfaces as OSError from subprocess.
            logger.warning("Error merging %s: %s", worktree.branch_name, error)
            result.errors.append(f"{worktree.branch_name}: {error}")
            continue

        if merge.returncode == 0:
            result.merged_branches.append(worktree.branch_name)
            continue
        output = f"{merge.stdout}\n{merge.stderr}"
        if "CONFLICT" in output or "conflict" in output:
            logger.warning("Merge conflict for %s; aborting merge", worktree.branch_name)
            result.conflicts.append(worktree.branch_name)
            git.run(["merge", "--abort"], cwd=main_workspace, check=False)
        else:
            result.errors.append(
                f"{worktree.branch_name}: merge failed with exit code {merge.returncode}: "
                f"{merge.stderr.strip() or merge.stdout.strip()}",
            )
    return result


def cleanup_isolated_workspaces(
    main_workspace: Path,
    worktrees: Sequence[WorktreeRecord],
    *,
    remove_branches: bool = False,
    registry: WorktreeRegistry | None = None,
    git: GitRunner | None = None,
) -> CleanupResult:
    """Remove worktrees (and optionally their branches); never raises on git errors."""

    git = git or GitRunner.from_settings(GitSettings())
    result = CleanupResult()
    branches: list[str] = []

    for worktree in worktrees:
        try:
            git.run(["worktree", "remove", "--force", str(worktree.path)], cwd=main_workspace)
        except GitCommandError as error:
            result.errors.append(f"Failed to remove worktree {worktree.path}: {error}")
            continue
        result.removed_worktrees.append(worktree.path)
        if registry is not None:
            registry.discard(worktree.task_name)
        if remove_branches:
            branches.append(worktree.branch_name)

    for branch_name in branches:
        try:
            listed = git.run(["branch", "--list", branch_name], cwd=main_workspace).stdout
            if listed.strip():
                git.run(["branch", "-D", branch_name], cwd=main_workspace)
                result.removed_branches.append(branch_name)
        except GitCommandError as error:
            result.errors.append(f"Failed to remove branch {branch_name}: {error}")

    for error in result.errors:
        logger.warning("Cleanup: %s", error)
    return result


def _force_remove_worktree(repo_path: Path, worktree_path: Path, git: GitRunner) -> None:
    if not worktree_path.exists():
        return
    removed = git.run(
        ["worktree", "remove", "--force", str(worktree_path)],
        cwd=repo_path,
        check=False,
    )
    if removed.returncode != 0:
        logger.warning("Could not remove worktree %s: %s", worktree_path, removed.stderr.strip())
    git.run(["worktree", "prune"], cwd=repo_path, check=False)


def _warn_on_branch_reset(
    repo_path: Path,
    branch_name: str,
    start_point: str,
    git: GitRunner,
) -> None:
    ref = f"refs/heads/{branch_name}"
    if git.run(["rev-parse", "--verify", "--quiet", ref], cwd=repo_path, check=False).returncode:
        return
    counted = git.run(
        ["rev-list", "--count", f"{start_point}..{ref}"],
        cwd=repo_path,
        check=False,
    )
    dropped = int(counted.stdout.strip() or 0) if counted.returncode == 0 else 0
    if dropped:
        logger.warning(
            "Resetting branch %s to %s drops %d unmerged commit(s)",
            branch_name,
            start_point,
            dropped,
        )


def _share_guidance_files(
    repo_path: Path,
    worktree_path: Path,
    names: Sequence[str],
    git: GitRunner,
) -> None:
    copied: list[str] = []
    for name in names:
        source = repo_path / name
        target = worktree_path / name
        if not source.is_file() or target.exists():
            continue
        shutil.copy2(source, target)
        copied.append(name)
    if copied:
        _exclude_from_commits(repo_path, copied, git)


def _exclude_from_commits(repo_path: Path, names: Sequence[str], git: GitRunner) -> None:
    """Add root-anchored patterns for ``names`` to the shared ``info/exclude``.

    Worktrees have no private exclude file, so the patterns live in the common
    git dir: copied guidance files stay out of worktree commits and merge-back
    never collides with the originals.  The main repository shares the file,
    so its own untracked copies of these names are hidden from ``git status``
    there too.
    """

    common_dir = Path(
        git.run(["rev-parse", "--git-common-dir"], cwd=repo_path).stdout.strip(),
    )
    if not common_dir.is_absolute():
        common_dir = repo_path / common_dir
    exclude = common_dir / "info" / "exclude"
    exclude.parent.mkdir(parents=True, exist_ok=True)
    text = exclude.read_text("utf-8") if exclude.exists() else ""
    existing = text.splitlines()
    missing = [f"/{name}" for name in names if f"/{name}" not in existing]
    if missing:
        with exclude.open("a", encoding="utf-8") as handle:
            if text and not text.endswith("\n"):
                handle.write("\n")
            handle.write("\n".join(missing) + "\n")


def _commit_pending(
    worktree: WorktreeRecord,
    commit_message: str | None,
    git: GitRunner,
) -> None:
    status = git.run(["status", "--porcelain"], cwd=worktree.path).stdout
    if not status.strip():
        return
    git.run(["add", "-A"], cwd=worktree.path)
    git.run(
        ["commit", "-m", commit_message or f"Implementation from {worktree.branch_name}"],
        cwd=worktree.path,
    )
