from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
import yaml

from taskpilot_mcp.orchestrator import ExecutionOrchestrator
from taskpilot_mcp.process import FakeProcessRunner, ProcessResult, ProcessSpec
from taskpilot_mcp.profiles import ProfileLoader
from taskpilot_mcp.queue import WorktreeQueueService
from taskpilot_mcp.sessions import SessionManager
from taskpilot_mcp.tasks import ProjectCatalog, ProjectContext, YamlTaskStore
from taskpilot_mcp.worktrees import WorktreeManager


class FakeGit:
    """Answers the git commands the worktree manager issues."""

    def __init__(self) -> None:
        self.branches: set[str] = {"main"}
        self.worktrees: dict[str, Path] = {}
        self.commits = 0
        self.files: list[str] = []
        self.fail_stats = False

    def checkout_elsewhere(self, branch: str, path: Path) -> None:
        self.branches.add(branch)
        self.worktrees[branch] = path

    def _ok(self, spec: ProcessSpec, stdout: str = "") -> ProcessResult:
        return ProcessResult(args=spec.argv, returncode=0, stdout=stdout, stderr="")

    def __call__(self, spec: ProcessSpec) -> ProcessResult:
        args = list(spec.args)
        if args[:2] == ["worktree", "list"]:
            blocks = [f"worktree {spec.cwd}\nHEAD 000\nbranch refs/heads/main"]
            blocks += [
                f"worktree {path}\nHEAD 111\nbranch refs/heads/{branch}"
                for branch, path in self.worktrees.items()
            ]
            return self._ok(spec, "\n\n".join(blocks) + "\n")
        if args[:2] == ["worktree", "add"]:
            if args[2] == "-b":
                branch, path = args[3], Path(args[4])
            else:
                path, branch = Path(args[2]), args[3]
            self.branches.add(branch)
            self.worktrees[branch] = path
            path.mkdir(parents=True, exist_ok=True)
            return self._ok(spec)
        if args[0] == "rev-parse":
            branch = args[-1].removeprefix("refs/heads/")
            code = 0 if branch in self.branches else 1
            return ProcessResult(args=spec.argv, returncode=code, stdout="", stderr="")
        if args[0] in {"rev-list", "diff"} and self.fail_stats:
            return ProcessResult(args=spec.argv, returncode=128, stdout="", stderr="fatal: bad revision")
        if args[0] == "rev-list":
            return self._ok(spec, f"{self.commits}\n")
        if args[0] == "diff":
            return self._ok(spec, "\n".join(self.files))
        return self._ok(spec)


@dataclass
class Harness:
    orchestrator: ExecutionOrchestrator
    store: YamlTaskStore
    runner: FakeProcessRunner
    git: FakeGit
    queue: WorktreeQueueService
    sessions: SessionManager
    projects: ProjectCatalog
    state_dir: Path
    repo: Path


def write_tasks(tasks_dir: Path, project: str, tasks: list[dict[str, Any]]) -> None:
    tasks_dir.mkdir(parents=True, exist_ok=True)
    (tasks_dir / f"{project}.yaml").write_text(yaml.safe_dump(tasks, sort_keys=False), encoding="utf-8")


@pytest.fixture()
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture()
def build_harness(tmp_path: Path):
    """Return a factory wiring an orchestrator against fakes rooted in ``tmp_path``."""

    def factory(script=None, *, tasks: list[dict[str, Any]] | None = None, git: FakeGit | None = None, **kwargs):
        git = git or FakeGit()
        runner = FakeProcessRunner(script, responder=git)
        repo = tmp_path / "shop"
        repo.mkdir(exist_ok=True)
        tasks_dir = tmp_path / "tasks"
        if tasks is not None:
            write_tasks(tasks_dir, "shop", tasks)
        store = YamlTaskStore(tasks_dir)
        projects = ProjectCatalog(projects={"shop": ProjectContext(name="shop", repo_path=repo)})
        state_dir = tmp_path / "state"
        queue = WorktreeQueueService(state_dir)
        sessions = SessionManager(
            runner,
            command="agent",
            args=("-p",),
            terminate_grace=0.05,
            idle_timeout=kwargs.pop("idle_timeout", 60.0),
        )
        orchestrator = ExecutionOrchestrator(
            task_store=store,
            projects=projects,
            worktrees=WorktreeManager(runner),
            queue=queue,
            sessions=sessions,
            profiles=ProfileLoader([]),
            state_dir=state_dir,
            progress_poll_seconds=kwargs.pop("progress_poll_seconds", 60.0),
            **kwargs,
        )
        return Harness(orchestrator, store, runner, git, queue, sessions, projects, state_dir, repo)

    return factory
