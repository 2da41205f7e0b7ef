from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
from pathlib import Path

import pytest

from taskpilot_mcp.models import RepoStats, TaskType, WorktreeStatus
from taskpilot_mcp.process import FakeProcessRunner, ProcessResult, ProcessSpec
from taskpilot_mcp.worktrees import (
    BranchExistsError,
    VCSCommandError,
    WorktreeConflictError,
    WorktreeManager,
    WorktreeNotFoundError,
    branch_name_for,
    parse_worktree_list,
    slugify,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Taskpilot Tests",
    "GIT_AUTHOR_EMAIL": "tests@example.com",
    "GIT_COMMITTER_NAME": "Taskpilot Tests",
    "GIT_COMMITTER_EMAIL": "tests@example.com",
}


def test_branch_name_examples() -> None:
    assert branch_name_for(TaskType.BUG, "Fix login bug!!") == "fix-fix-login-bug"
    assert branch_name_for(TaskType.FEATURE, "Add  OAuth -- login") == "feat-add-oauth-login"
    assert branch_name_for("STORY", "Checkout flow") == "feat-checkout-flow"
    assert branch_name_for(TaskType.SUBTASK, "Write docs") == "task-write-docs"
    assert branch_name_for(TaskType.TASK, "!!!") == "task-untitled"


def test_slug_truncation_strips_trailing_hyphen() -> None:
    title = "a" * 49 + " tail"
    slug = slugify(title)
    assert len(slug) <= 50
    assert not slug.endswith("-")
    assert slug == "a" * 49


def test_parse_worktree_list() -> None:
    output = (
        "worktree /repo\nHEAD abc\nbranch refs/heads/main\n\n"
        "worktree /repo-worktrees/feat-x\nHEAD def\nbranch refs/heads/feat-x\n\n"
        "worktree /repo-worktrees/stale\nHEAD 123\ndetached\nprunable gitdir file points to non-existent location\n\n"
        "worktree /bare.git\nbare\n"
    )

    worktrees = parse_worktree_list(output, Path("/repo"))

    assert [worktree.name for worktree in worktrees] == ["main", "feat-x", "stale"]
    assert worktrees[1].path == Path("/repo-worktrees/feat-x")
    assert worktrees[1].head == "def"
    assert worktrees[2].branch is None
    assert worktrees[2].status is WorktreeStatus.REMOVED


def test_git_failure_raises_vcs_error(tmp_path: Path) -> None:
    runner = FakeProcessRunner(
        results=[ProcessResult(args=("git",), returncode=128, stdout="", stderr="not a git repository")]
    )
    manager = WorktreeManager(runner)

    with pytest.raises(VCSCommandError) as excinfo:
        asyncio.run(manager.list_worktrees(tmp_path))

    assert excinfo.value.returncode == 128
    assert "not a git repository" in str(excinfo.value)


def test_repo_stats_parses_counts(tmp_path: Path) -> None:
    def responder(spec: ProcessSpec) -> ProcessResult:
        if spec.args[0] == "rev-list":
            return ProcessResult(args=spec.argv, returncode=0, stdout="4\n", stderr="")
        return ProcessResult(args=spec.argv, returncode=0, stdout="a.py\nb.py\n\n", stderr="")

    manager = WorktreeManager(FakeProcessRunner(responder=responder))

    stats = asyncio.run(manager.repo_stats(tmp_path, "main"))

    assert stats == RepoStats(commits=4, files_changed=2)


@pytest.fixture()
def git_repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for key, value in GIT_ENV.items():
        monkeypatch.setenv(key, value)
    repo = tmp_path / "project"
    repo.mkdir()
    subprocess.run(["git", "init", "-q", "-b", "main"], cwd=repo, check=True)
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    subprocess.run(["git", "add", "README.md"], cwd=repo, check=True)
    subprocess.run(["git", "commit", "-q", "-m", "initial"], cwd=repo, check=True, env={**os.environ, **GIT_ENV})
    return repo


@requires_git
def test_create_feature_worktree_and_conflicts(git_repo: Path) -> None:
    manager = WorktreeManager()

    async def scenario():
        created = await manager.create_feature_worktree(git_repo, "Fix login bug!!", TaskType.BUG)
        with pytest.raises(WorktreeConflictError) as conflict:
            await manager.create_feature_worktree(git_repo, "Fix login bug!!", TaskType.BUG)
        reused = await manager.ensure_worktree(git_repo, "Fix login bug!!", TaskType.BUG)
        listed = await manager.list_worktrees(git_repo)
        return created, conflict.value, reused, listed

    created, conflict, reused, listed = asyncio.run(scenario())

    assert created.name == "fix-fix-login-bug"
    assert created.branch == "fix-fix-login-bug"
    assert created.path == git_repo.parent / "project-worktrees" / "fix-fix-login-bug"
    assert created.path.is_dir()
    assert conflict.existing_path.resolve() == created.path.resolve()
    assert reused.path == created.path
    assert sum(1 for worktree in listed if worktree.branch == "fix-fix-login-bug") == 1


@requires_git
def test_existing_branch_requires_attach(git_repo: Path) -> None:
    subprocess.run(["git", "branch", "feat-reports"], cwd=git_repo, check=True)
    manager = WorktreeManager()

    with pytest.raises(BranchExistsError):
        asyncio.run(manager.create_feature_worktree(git_repo, "Reports", TaskType.FEATURE))

    attached = asyncio.run(
        manager.create_feature_worktree(git_repo, "Reports", TaskType.FEATURE, attach_existing=True)
    )
    assert attached.path.is_dir()


@requires_git
def test_remove_worktree_and_stats(git_repo: Path) -> None:
    manager = WorktreeManager()

    async def scenario():
        worktree = await manager.create_feature_worktree(git_repo, "Add search", TaskType.FEATURE)
        (worktree.path / "search.py").write_text("print('search')\n", encoding="utf-8")
        subprocess.run(["git", "add", "search.py"], cwd=worktree.path, check=True)
        subprocess.run(["git", "commit", "-q", "-m", "search"], cwd=worktree.path, check=True)
        stats = await manager.repo_stats(worktree.path, "main")
        removed = await manager.remove_worktree(git_repo, worktree.name)
        with pytest.raises(WorktreeNotFoundError):
            await manager.remove_worktree(git_repo, worktree.name)
        return worktree, stats, removed

    worktree, stats, removed = asyncio.run(scenario())

    assert stats == RepoStats(commits=1, files_changed=1)
    assert removed.status is WorktreeStatus.REMOVED
    assert not worktree.path.exists()
