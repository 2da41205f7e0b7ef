"""Git worktree management: one isolated working copy per task branch."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from .models import RepoStats, TaskType, Worktree, WorktreeStatus
from .process import ProcessResult, ProcessRunner, ProcessRunnerError, ProcessSpec

logger = logging.getLogger(__name__)

SLUG_MAX_LENGTH = 50

_BRANCH_PREFIXES = {
    TaskType.BUG: "fix",
    TaskType.FEATURE: "feat",
    TaskType.STORY: "feat",
    TaskType.EPIC: "feat",
    TaskType.TASK: "task",
    TaskType.SUBTASK: "task",
}


class WorktreeError(RuntimeError):
    """Base class for worktree management errors."""


class WorktreeConflictError(WorktreeError):
    """Raised when the target branch is already checked out in a worktree."""

    def __init__(self, branch: str, existing_path: Path) -> None:
        super().__init__(f"Branch '{branch}' is already checked out at {existing_path}")
        self.branch = branch
        self.existing_path = Path(existing_path)


class BranchExistsError(WorktreeError):
    """Raised when a new branch is requested but the branch already exists."""


class WorktreeNotFoundError(WorktreeError):
    """Raised when a named worktree is not registered in the repository."""


class VCSCommandError(RuntimeError):
    """Raised when a git command fails or cannot be started."""

    def __init__(self, args: tuple[str, ...], returncode: int | None, stderr: str) -> None:
        detail = stderr.strip() or "no output"
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {detail}")
        self.command_args = args
        self.returncode = returncode
        self.stderr = stderr


def slugify(text: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """Turn free text into a branch-safe token."""

    slug = text.lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug[:max_length].rstrip("-")


def branch_name_for(task_type: TaskType | str, title: str) -> str:
    """Return the deterministic branch (and worktree) name for a task."""

    prefix = _BRANCH_PREFIXES.get(TaskType(task_type), "task")
    return f"{prefix}-{slugify(title) or 'untitled'}"


def parse_worktree_list(output: str, repo_path: Path) -> list[Worktree]:
    """Parse ``git worktree list --porcelain`` output."""

    worktrees: list[Worktree] = []
    for block in output.strip().split("\n\n"):
        fields: dict[str, str] = {}
        for line in block.splitlines():
            key, _, value = line.partition(" ")
            fields[key] = value.strip()
        if "worktree" not in fields or "bare" in fields:
            continue

        path = Path(fields["worktree"])
        branch_ref = fields.get("branch")
        branch = branch_ref.removeprefix("refs/heads/") if branch_ref else None
        status = WorktreeStatus.REMOVED if "prunable" in fields else WorktreeStatus.ACTIVE
        worktrees.append(
            Worktree(
                name=branch or path.name,
                path=path,
                branch=branch,
                repo_path=repo_path,
                head=fields.get("HEAD"),
                status=status,
            )
        )
    return worktrees


def _same_path(left: Path, right: Path) -> bool:
    return Path(left).resolve() == Path(right).resolve()


class WorktreeManager:
    """Create, list and remove task worktrees inside a project repository."""

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        *,
        git_executable: str = "git",
        timeout: float = 120.0,
    ) -> None:
        self._runner = runner or ProcessRunner()
        self._git_executable = git_executable
        self._timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, repo_path: Path) -> asyncio.Lock:
        key = str(Path(repo_path).resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _git(self, *args: str, cwd: Path, check: bool = True) -> ProcessResult:
        spec = ProcessSpec(command=self._git_executable, args=args, cwd=Path(cwd), pipe_stdin=False)
        try:
            result = await self._runner.run(spec, timeout=self._timeout)
        except ProcessRunnerError as exc:
            raise VCSCommandError(args, None, str(exc)) from exc
        if check and not result.ok:
            raise VCSCommandError(args, result.returncode, result.stderr)
        return result

    @staticmethod
    def default_worktree_base(repo_path: Path) -> Path:
        repo_path = Path(repo_path)
        return repo_path.parent / f"{repo_path.name}-worktrees"

    def worktree_path(self, repo_path: Path, name: str, worktree_base: Path | None = None) -> Path:
        base = Path(worktree_base) if worktree_base else self.default_worktree_base(repo_path)
        return base / name

    async def branch_exists(self, repo_path: Path, branch: str) -> bool:
        result = await self._git(
            "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=repo_path, check=False
        )
        return result.ok

    async def list_worktrees(self, repo_path: Path) -> list[Worktree]:
        result = await self._git("worktree", "list", "--porcelain", cwd=repo_path)
        return parse_worktree_list(result.stdout, Path(repo_path))

    async def create_feature_worktree(
        self,
        repo_path: Path,
        task_title: str,
        task_type: TaskType | str,
        base_branch: str = "main",
        *,
        worktree_base: Path | None = None,
        attach_existing: bool = False,
    ) -> Worktree:
        """Create the worktree for ``(task_type, task_title)``.

        Raises :class:`WorktreeConflictError` when the branch is already checked
        out somewhere, and :class:`BranchExistsError` when the branch exists and
        ``attach_existing`` is false.
        """

        repo_path = Path(repo_path)
        branch = branch_name_for(task_type, task_title)
        target = self.worktree_path(repo_path, branch, worktree_base)

        async with self._lock_for(repo_path):
            for existing in await self.list_worktrees(repo_path):
                if existing.branch == branch:
                    raise WorktreeConflictError(branch, existing.path)
            if target.exists():
                raise WorktreeError(f"Path {target} already exists and is not a registered worktree")

            exists = await self.branch_exists(repo_path, branch)
            if exists and not attach_existing:
                raise BranchExistsError(f"Branch '{branch}' already exists")

            target.parent.mkdir(parents=True, exist_ok=True)
            if exists:
                await self._git("worktree", "add", str(target), branch, cwd=repo_path)
            else:
                await self._git(
                    "worktree", "add", "-b", branch, str(target), base_branch, cwd=repo_path
                )

        logger.info(
            "Created worktree",
            extra={"branch": branch, "path": str(target), "attached": exists},
        )
        return Worktree(
            name=branch,
            path=target,
            branch=branch,
            repo_path=repo_path,
            base_branch=base_branch,
            status=WorktreeStatus.ACTIVE,
        )

    async def ensure_worktree(
        self,
        repo_path: Path,
        task_title: str,
        task_type: TaskType | str,
        base_branch: str = "main",
        *,
        worktree_base: Path | None = None,
    ) -> Worktree:
        """Return the task's managed worktree, creating it when missing.

        A conflict is only tolerated when the existing checkout is the managed
        worktree itself; a checkout anywhere else is re-raised.
        """

        try:
            return await self.create_feature_worktree(
                repo_path,
                task_title,
                task_type,
                base_branch,
                worktree_base=worktree_base,
                attach_existing=True,
            )
        except WorktreeConflictError as exc:
            expected = self.worktree_path(repo_path, exc.branch, worktree_base)
            if not _same_path(exc.existing_path, expected):
                raise
            logger.debug("Reusing existing worktree", extra={"branch": exc.branch, "path": str(expected)})
            return Worktree(
                name=exc.branch,
                path=expected,
                branch=exc.branch,
                repo_path=Path(repo_path),
                base_branch=base_branch,
                status=WorktreeStatus.ACTIVE,
            )

    async def remove_worktree(self, repo_path: Path, name: str, *, force: bool = False) -> Worktree:
        repo_path = Path(repo_path)
        async with self._lock_for(repo_path):
            match = next(
                (
                    worktree
                    for worktree in await self.list_worktrees(repo_path)
                    if worktree.name == name and not _same_path(worktree.path, repo_path)
                ),
                None,
            )
            if match is None:
                raise WorktreeNotFoundError(f"Worktree '{name}' not found in {repo_path}")

            args = ["worktree", "remove"]
            if force:
                args.append("--force")
            args.append(str(match.path))
            await self._git(*args, cwd=repo_path)

        match.status = WorktreeStatus.REMOVED
        logger.info("Removed worktree", extra={"worktree": name, "path": str(match.path)})
        return match

    async def repo_stats(self, worktree_path: Path, base_branch: str) -> RepoStats:
        """Count commits and changed files since ``base_branch``."""

        commits = await self._git("rev-list", "--count", f"{base_branch}..HEAD", cwd=worktree_path)
        diff = await self._git("diff", "--name-only", base_branch, cwd=worktree_path)
        try:
            commit_count = int(commits.stdout.strip() or 0)
        except ValueError as exc:
            raise VCSCommandError(("rev-list", "--count"), 0, commits.stdout) from exc
        files = [line for line in diff.stdout.splitlines() if line.strip()]
        return RepoStats(commits=commit_count, files_changed=len(files))


__all__ = [
    "BranchExistsError",
    "VCSCommandError",
    "WorktreeConflictError",
    "WorktreeError",
    "WorktreeManager",
    "WorktreeNotFoundError",
    "branch_name_for",
    "parse_worktree_list",
    "slugify",
]
