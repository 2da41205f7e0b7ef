"""Execution orchestration: worktree, queue, agent session and task write-back.

One :class:`Execution` tracks a task from the start-work request until its
queue entry reaches a terminal status. The orchestrator is the only component
that reconciles queue entries with task records; the session layer only ever
reports output and exit codes through the session channel.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import weakref
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, TextIO
from uuid import uuid4

from .models import ExecutionOptions, ExecutionResult, Task, TaskStatus, Worktree, WorktreeStatus
from .process import ProcessRunnerError, flag_env
from .profiles import ProfileLoadError, ProfileLoader, compose_instruction
from .progress import estimate
from .queue import (
    DuplicateQueueEntryError,
    QueueEntry,
    QueueEntryNotFoundError,
    QueueState,
    QueueStatus,
    WorktreeQueueService,
)
from .sessions import (
    CloseMessage,
    ErrorMessage,
    OutputMessage,
    SessionChannel,
    SessionManager,
    SessionNotFoundError,
    SessionOptions,
)
from .tasks import ProjectContext, ProjectResolver, TaskNotFoundError, TaskStore, TaskStoreError
from .worktrees import VCSCommandError, WorktreeManager

logger = logging.getLogger(__name__)

ARTIFACTS_DIRNAME = ".taskpilot"
_SCREENSHOT_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp"}
_VIDEO_SUFFIXES = {".mp4", ".webm", ".mov", ".gif"}
_DOC_NAMES = ("README.md", "documentation.md", "summary.md")


class InvalidTaskStateError(RuntimeError):
    """Raised when a task cannot be started from its current state."""


class ExecutionNotFoundError(LookupError):
    """Raised when an execution id (or session id) is unknown."""


class ExecutionStatus(str, Enum):
    INITIALIZING = "INITIALIZING"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


FINISHED_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


@dataclass(slots=True)
class ExecutionRequest:
    task_id: str
    project_name: str
    options: ExecutionOptions = field(default_factory=ExecutionOptions)
    user_id: str | None = None


@dataclass(slots=True)
class Execution:
    """In-flight record for one task's trip through its worktree queue."""

    execution_id: str
    request: ExecutionRequest
    worktree: Worktree
    queue_name: str
    created_at: datetime
    status: ExecutionStatus = ExecutionStatus.INITIALIZING
    position: int | None = None
    session_id: str | None = None
    progress: int = 0
    log_path: Path | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: ExecutionResult | None = None
    cancel_requested: bool = False
    timed_out: bool = False
    spawn_error: ProcessRunnerError | None = field(default=None, repr=False)
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def task_id(self) -> str:
        return self.request.task_id

    @property
    def project_name(self) -> str:
        return self.request.project_name

    @property
    def user_id(self) -> str | None:
        return self.request.user_id

    @property
    def finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    async def wait(self) -> ExecutionResult:
        """Block until the execution reaches a terminal status."""

        await self._done.wait()
        assert self.result is not None
        return self.result

    def snapshot(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "task_id": self.task_id,
            "project": self.project_name,
            "user_id": self.user_id,
            "status": self.status.value,
            "queue_position": self.position,
            "session_id": self.session_id,
            "worktree": self.worktree.name,
            "worktree_path": str(self.worktree.path),
            "progress": self.progress,
            "log_path": str(self.log_path) if self.log_path else None,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "result": self.result.to_dict() if self.result else None,
        }


def queue_name_for(project: str, worktree_name: str) -> str:
    return f"{project}:{worktree_name}"


def artifacts_dir_for(worktree_path: Path, task_id: str) -> Path:
    return Path(worktree_path) / ARTIFACTS_DIRNAME / "artifacts" / task_id


def collect_artifacts(artifacts_dir: Path, options: ExecutionOptions) -> dict[str, Any]:
    """Locate the artifacts the agent was asked to produce."""

    found: dict[str, Any] = {"screenshots": [], "video_path": None, "documentation_path": None}
    if not artifacts_dir.is_dir():
        return found
    files = sorted(path for path in artifacts_dir.rglob("*") if path.is_file())
    if options.capture_screenshots:
        found["screenshots"] = [path for path in files if path.suffix.lower() in _SCREENSHOT_SUFFIXES]
    if options.capture_video:
        found["video_path"] = next((path for path in files if path.suffix.lower() in _VIDEO_SUFFIXES), None)
    if options.create_documentation:
        found["documentation_path"] = next(
            (artifacts_dir / name for name in _DOC_NAMES if (artifacts_dir / name).is_file()),
            next((path for path in files if path.suffix.lower() == ".md"), None),
        )
    return found


class ExecutionOrchestrator:
    """Drive tasks through worktree creation, queueing, supervision and reconcile."""

    def __init__(
        self,
        *,
        task_store: TaskStore,
        projects: ProjectResolver,
        worktrees: WorktreeManager,
        queue: WorktreeQueueService,
        sessions: SessionManager,
        profiles: ProfileLoader,
        state_dir: Path,
        completion_status: TaskStatus = TaskStatus.IN_REVIEW,
        max_attempts: int = 3,
        progress_poll_seconds: float = 15.0,
        task_timeout: float | None = None,
        retain_finished: int = 100,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._tasks = task_store
        self._projects = projects
        self._worktrees = worktrees
        self._queue = queue
        self._sessions = sessions
        self._profiles = profiles
        self._log_dir = Path(state_dir) / "logs"
        self._completion_status = TaskStatus(completion_status)
        self._max_attempts = max_attempts
        self._poll_seconds = progress_poll_seconds
        self._task_timeout = task_timeout
        self._retain_finished = retain_finished
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._executions: dict[str, Execution] = {}
        self._by_session: dict[str, str] = {}
        self._claimed: dict[tuple[str, str], str] = {}
        self._finished: OrderedDict[str, None] = OrderedDict()
        # An advance lock lives only while some caller holds or awaits it.
        self._advance_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._supervisors: dict[str, asyncio.Task[Any]] = {}
        self._started = False
        self._closing = False

    # -- lookups -----------------------------------------------------------

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def queue(self) -> WorktreeQueueService:
        return self._queue

    def get_execution(self, execution_id: str) -> Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            execution_id = self._by_session.get(execution_id, "")
            execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        return execution

    def list_executions(self, *, active_only: bool = True, user_id: str | None = None) -> list[Execution]:
        return [
            execution
            for execution in self._executions.values()
            if (not active_only or not execution.finished)
            and (user_id is None or execution.user_id == user_id)
        ]

    def _advance_lock(self, queue_name: str) -> asyncio.Lock:
        lock = self._advance_locks.get(queue_name)
        if lock is None:
            lock = asyncio.Lock()
            self._advance_locks[queue_name] = lock
        return lock

    def _register(self, execution: Execution) -> None:
        self._executions[execution.execution_id] = execution
        self._claimed[(execution.project_name, execution.task_id)] = execution.execution_id

    def _release(self, execution: Execution) -> None:
        key = (execution.project_name, execution.task_id)
        if self._claimed.get(key) == execution.execution_id:
            del self._claimed[key]

    # -- start work --------------------------------------------------------

    async def execute_task(self, request: ExecutionRequest) -> Execution:
        """Start work on one task and return as soon as it is queued or running.

        Errors that prevent the start (unknown project or task, a task not in
        PLANNED, a worktree conflict, a spawn failure) are raised here.
        Everything after the launch is reported through the execution record.
        """

        project = self._projects.get(request.project_name)
        task = await self._tasks.get_task(request.project_name, request.task_id)

        key = (request.project_name, request.task_id)
        if key in self._claimed:
            raise InvalidTaskStateError(f"Task {request.task_id} is already being executed")
        if task.status is not TaskStatus.PLANNED:
            raise InvalidTaskStateError(
                f"Task {request.task_id} is {task.status.value}; only PLANNED tasks can start"
            )
        # Claim before the first await that follows the state check.
        self._claimed[key] = ""

        try:
            worktree = await self._worktrees.ensure_worktree(
                project.repo_path,
                task.title,
                task.type,
                project.default_branch,
                worktree_base=project.worktree_base,
            )
            await self._tasks.update_task(
                request.project_name,
                request.task_id,
                worktree_name=worktree.name,
                worktree_path=str(worktree.path),
                worktree_status=WorktreeStatus.PENDING,
            )
        except BaseException:
            self._claimed.pop(key, None)
            raise

        execution = Execution(
            execution_id=uuid4().hex,
            request=request,
            worktree=worktree,
            queue_name=queue_name_for(request.project_name, worktree.name),
            created_at=self._clock(),
        )
        self._register(execution)

        try:
            execution.position = await self._queue.enqueue(
                execution.queue_name,
                request.task_id,
                user_id=request.user_id,
                options=request.options.model_dump(exclude_none=True),
            )
        except BaseException as exc:
            self._executions.pop(execution.execution_id, None)
            self._release(execution)
            if isinstance(exc, DuplicateQueueEntryError):
                raise InvalidTaskStateError(str(exc)) from exc
            raise
        execution.status = ExecutionStatus.QUEUED

        logger.info(
            "Task accepted",
            extra={
                "execution_id": execution.execution_id,
                "task_id": request.task_id,
                "project": request.project_name,
                "queue": execution.queue_name,
                "position": execution.position,
            },
        )

        await self._advance(execution.queue_name)
        if execution.spawn_error is not None:
            raise execution.spawn_error
        return execution

    async def _advance(self, queue_name: str) -> None:
        """Launch the head of ``queue_name`` if the worktree is free."""

        if self._closing:
            return
        async with self._advance_lock(queue_name):
            while not self._closing:
                entry = await self._queue.dequeue(queue_name)
                if entry is None:
                    break
                execution = self._execution_for_entry(queue_name, entry)
                if execution is None:
                    execution = await self._rebuild(queue_name, entry)
                if execution is None:
                    await self._queue.mark_terminal(
                        queue_name,
                        entry.task_id,
                        QueueStatus.CANCELLED,
                        error="task is no longer available",
                    )
                    continue
                if await self._launch(execution):
                    break
            await self._refresh_positions(queue_name)

    def _execution_for_entry(self, queue_name: str, entry: QueueEntry) -> Execution | None:
        return next(
            (
                execution
                for execution in self._executions.values()
                if execution.queue_name == queue_name
                and execution.task_id == entry.task_id
                and not execution.finished
            ),
            None,
        )

    async def _refresh_positions(self, queue_name: str) -> None:
        waiting = [
            execution
            for execution in self._executions.values()
            if execution.queue_name == queue_name and execution.status is ExecutionStatus.QUEUED
        ]
        for execution in waiting:
            execution.position = await self._queue.position(queue_name, execution.task_id)

    async def _launch(self, execution: Execution) -> bool:
        """Spawn the agent for a claimed entry. Returns False when the entry was settled instead."""

        if execution.cancel_requested:
            await self._queue.mark_terminal(
                execution.queue_name, execution.task_id, QueueStatus.CANCELLED, error="cancelled"
            )
            self._settle(execution, ExecutionStatus.CANCELLED, ExecutionResult(success=False, error="cancelled"))
            return False

        options = execution.request.options
        artifacts_dir = artifacts_dir_for(execution.worktree.path, execution.task_id)
        try:
            task = await self._tasks.get_task(execution.project_name, execution.task_id)
            profile = self._profiles.resolve(options.profile_id)
            instruction = compose_instruction(profile, task, options, artifacts_dir)
            artifacts_dir.mkdir(parents=True, exist_ok=True)
            session_id = await self._sessions.create_session(
                execution.user_id,
                SessionOptions(
                    working_dir=execution.worktree.path,
                    initial_input=instruction,
                    env=self._agent_env(execution, artifacts_dir),
                    close_stdin=True,
                ),
            )
        except (ProcessRunnerError, ProfileLoadError, TaskNotFoundError, TaskStoreError, OSError) as exc:
            logger.error(
                "Failed to launch agent",
                extra={"execution_id": execution.execution_id, "task_id": execution.task_id, "error": str(exc)},
            )
            if isinstance(exc, ProcessRunnerError):
                execution.spawn_error = exc
            await self._fail(execution, exit_code=None, error=f"launch failed: {exc}", advance=False)
            return False

        started_at = self._clock()
        # Written before supervision starts so a fast exit cannot be overwritten.
        await self._write_back(
            execution,
            status=TaskStatus.IN_PROGRESS,
            worktree_status=WorktreeStatus.ACTIVE,
            started_at=started_at,
        )

        execution.session_id = session_id
        execution.status = ExecutionStatus.RUNNING
        execution.position = 1
        execution.started_at = started_at
        self._by_session[session_id] = execution.execution_id
        channel = self._sessions.channel(session_id)
        self._supervisors[execution.execution_id] = asyncio.get_running_loop().create_task(
            self._supervise(execution, channel)
        )
        logger.info(
            "Agent launched",
            extra={
                "execution_id": execution.execution_id,
                "task_id": execution.task_id,
                "session_id": session_id,
                "worktree": execution.worktree.name,
            },
        )
        return True

    def _agent_env(self, execution: Execution, artifacts_dir: Path) -> dict[str, str]:
        options = execution.request.options
        return {
            "TASKPILOT_PROJECT": execution.project_name,
            "TASKPILOT_TASK_ID": execution.task_id,
            "TASKPILOT_ARTIFACTS_DIR": str(artifacts_dir),
            "TASKPILOT_DRY_RUN": flag_env(options.dry_run),
            "TASKPILOT_SKIP_TESTS": flag_env(options.skip_tests),
            "TASKPILOT_SKIP_DEMO": flag_env(options.skip_demo),
            "TASKPILOT_CAPTURE_SCREENSHOTS": flag_env(options.capture_screenshots),
            "TASKPILOT_CAPTURE_VIDEO": flag_env(options.capture_video),
            "TASKPILOT_CREATE_DOCUMENTATION": flag_env(options.create_documentation),
        }

    # -- supervision -------------------------------------------------------

    def _open_log(self, execution: Execution) -> TextIO:
        self._log_dir.mkdir(parents=True, exist_ok=True)
        stamp = execution.created_at.strftime("%Y%m%d%H%M%S")
        execution.log_path = self._log_dir / f"{execution.task_id}-{stamp}-{execution.execution_id[:8]}.log"
        return execution.log_path.open("a", encoding="utf-8")

    @staticmethod
    async def _drain(channel: SessionChannel, log: TextIO) -> int | None:
        async for message in channel.stream():
            if isinstance(message, OutputMessage):
                log.write(message.data)
            elif isinstance(message, ErrorMessage):
                log.write(f"[stderr] {message.data}")
            elif isinstance(message, CloseMessage):
                log.write(f"\n[exit] {message.exit_code}\n")
                log.flush()
                return message.exit_code
            log.flush()
        return None

    async def _supervise(self, execution: Execution, channel: SessionChannel) -> None:
        try:
            exit_code = await self._watch(execution, channel)
            await self._reconcile(execution, exit_code)
        except Exception as exc:
            logger.exception(
                "Supervision of agent failed",
                extra={"execution_id": execution.execution_id, "task_id": execution.task_id},
            )
            if execution.finished:
                return
            await self._sessions.terminate(execution.session_id or "")
            await self._fail(execution, exit_code=None, error=f"supervision failed: {exc}")

    async def _watch(self, execution: Execution, channel: SessionChannel) -> int | None:
        log = self._open_log(execution)
        poller = asyncio.get_running_loop().create_task(self._poll_loop(execution))
        drain = asyncio.get_running_loop().create_task(self._drain(channel, log))
        timeout = execution.request.options.timeout_seconds or self._task_timeout
        try:
            try:
                exit_code = await asyncio.wait_for(asyncio.shield(drain), timeout)
            except asyncio.TimeoutError:
                execution.timed_out = True
                logger.warning(
                    "Task exceeded its wall-clock limit; terminating agent",
                    extra={"execution_id": execution.execution_id, "timeout": timeout},
                )
                await self._sessions.terminate(execution.session_id or "")
                exit_code = await drain
        except asyncio.CancelledError:
            drain.cancel()
            raise
        finally:
            poller.cancel()
            log.close()
        return exit_code

    async def _poll_loop(self, execution: Execution) -> None:
        while True:
            await asyncio.sleep(self._poll_seconds)
            await self.refresh_progress(execution.execution_id)

    async def refresh_progress(self, execution_id: str) -> int:
        """Re-estimate progress for a running execution; never lowers the reported value."""

        execution = self.get_execution(execution_id)
        if execution.status is not ExecutionStatus.RUNNING:
            return execution.progress
        try:
            task = await self._tasks.get_task(execution.project_name, execution.task_id)
        except (TaskNotFoundError, TaskStoreError) as exc:
            logger.warning("Progress poll could not load task", extra={"execution_id": execution_id, "error": str(exc)})
            return execution.progress
        base = execution.worktree.base_branch or self._projects.get(execution.project_name).default_branch
        try:
            stats = await self._worktrees.repo_stats(execution.worktree.path, base)
        except VCSCommandError as exc:
            logger.warning(
                "Repository statistics unavailable; using elapsed time only",
                extra={"execution_id": execution_id, "error": str(exc)},
            )
            stats = None
        execution.progress = max(execution.progress, estimate(task, stats, now=self._clock()))
        return execution.progress

    # -- reconcile ---------------------------------------------------------

    async def _reconcile(self, execution: Execution, exit_code: int | None) -> None:
        if execution.cancel_requested:
            await self._cancel_running(execution, exit_code)
        elif execution.timed_out:
            timeout = execution.request.options.timeout_seconds or self._task_timeout
            await self._fail(execution, exit_code=exit_code, error=f"timed out after {timeout}s")
        elif exit_code == 0:
            await self._complete(execution)
        else:
            await self._fail(execution, exit_code=exit_code, error=f"agent exited with code {exit_code}")

    async def _mark_entry(self, execution: Execution, status: QueueStatus, **details: Any) -> None:
        try:
            await self._queue.mark_terminal(execution.queue_name, execution.task_id, status, **details)
        except QueueEntryNotFoundError as exc:
            logger.warning(
                "Queue entry already settled",
                extra={"execution_id": execution.execution_id, "error": str(exc)},
            )

    async def _write_back(self, execution: Execution, **changes: Any) -> Task | None:
        try:
            return await self._tasks.update_task(execution.project_name, execution.task_id, **changes)
        except (TaskNotFoundError, TaskStoreError) as exc:
            logger.error(
                "Task write-back failed",
                extra={"execution_id": execution.execution_id, "task_id": execution.task_id, "error": str(exc)},
            )
            return None

    async def _complete(self, execution: Execution) -> None:
        options = execution.request.options
        artifacts = collect_artifacts(artifacts_dir_for(execution.worktree.path, execution.task_id), options)
        result = ExecutionResult(success=True, log_path=execution.log_path, exit_code=0, **artifacts)
        await self._mark_entry(execution, QueueStatus.COMPLETED, exit_code=0)
        await self._write_back(execution, status=self._completion_status, last_error=None)
        execution.progress = 100
        self._settle(execution, ExecutionStatus.COMPLETED, result)
        await self._advance(execution.queue_name)

    async def _fail(
        self,
        execution: Execution,
        *,
        exit_code: int | None,
        error: str,
        advance: bool = True,
    ) -> None:
        await self._mark_entry(execution, QueueStatus.FAILED, exit_code=exit_code, error=error)
        await self._apply_retry_policy(execution.project_name, execution.task_id, error)
        result = ExecutionResult(success=False, log_path=execution.log_path, exit_code=exit_code, error=error)
        self._settle(execution, ExecutionStatus.FAILED, result)
        if advance:
            await self._advance(execution.queue_name)

    async def _apply_retry_policy(self, project: str, task_id: str, error: str) -> TaskStatus | None:
        """Count the failure and send the task back to PLANNED, or DEFERRED at the limit."""

        try:
            task = await self._tasks.get_task(project, task_id)
            attempts = task.attempts + 1
            status = TaskStatus.PLANNED if attempts < self._max_attempts else TaskStatus.DEFERRED
            await self._tasks.update_task(project, task_id, status=status, attempts=attempts, last_error=error)
        except (TaskNotFoundError, TaskStoreError) as exc:
            logger.error("Could not record task failure", extra={"task_id": task_id, "error": str(exc)})
            return None
        logger.info(
            "Task failed",
            extra={"task_id": task_id, "attempts": attempts, "next_status": status.value, "error": error},
        )
        return status

    async def _cancel_running(self, execution: Execution, exit_code: int | None) -> None:
        await self._mark_entry(execution, QueueStatus.CANCELLED, exit_code=exit_code, error="cancelled by operator")
        await self._write_back(execution, status=TaskStatus.PLANNED)
        result = ExecutionResult(success=False, log_path=execution.log_path, exit_code=exit_code, error="cancelled")
        self._settle(execution, ExecutionStatus.CANCELLED, result)
        await self._advance(execution.queue_name)

    def _settle(self, execution: Execution, status: ExecutionStatus, result: ExecutionResult) -> None:
        execution.status = status
        execution.result = result
        execution.finished_at = self._clock()
        execution.position = None
        self._release(execution)
        self._supervisors.pop(execution.execution_id, None)
        execution._done.set()
        self._retire(execution)
        logger.info(
            "Execution finished",
            extra={
                "execution_id": execution.execution_id,
                "task_id": execution.task_id,
                "status": status.value,
                "exit_code": result.exit_code,
            },
        )

    def _retire(self, execution: Execution) -> None:
        self._finished[execution.execution_id] = None
        while len(self._finished) > self._retain_finished:
            execution_id, _ = self._finished.popitem(last=False)
            evicted = self._executions.pop(execution_id, None)
            if evicted is not None and evicted.session_id:
                self._by_session.pop(evicted.session_id, None)

    # -- stop --------------------------------------------------------------

    async def stop_execution(self, execution_id: str) -> Execution:
        """Cancel a queued or running execution; repeating the call is harmless."""

        execution = self.get_execution(execution_id)
        if execution.finished:
            return execution
        execution.cancel_requested = True

        async with self._advance_lock(execution.queue_name):
            if execution.status is ExecutionStatus.QUEUED:
                try:
                    await self._queue.mark_terminal(
                        execution.queue_name,
                        execution.task_id,
                        QueueStatus.CANCELLED,
                        error="cancelled by operator",
                    )
                except QueueEntryNotFoundError:
                    pass
                self._settle(
                    execution, ExecutionStatus.CANCELLED, ExecutionResult(success=False, error="cancelled")
                )
                await self._refresh_positions(execution.queue_name)
                return execution

        if execution.status is ExecutionStatus.RUNNING and execution.session_id:
            with contextlib.suppress(SessionNotFoundError):
                await self._sessions.terminate(execution.session_id)
            supervisor = self._supervisors.get(execution.execution_id)
            if supervisor is not None:
                await asyncio.shield(supervisor)
        return execution

    # -- queue control -----------------------------------------------------

    async def set_queue_status(self, queue_name: str, status: QueueState | str) -> QueueState:
        """Pause, resume or close a worktree queue and return its previous state.

        Pausing leaves a running agent alone and holds the waiting entries.
        Resuming launches the head of the queue when the worktree is free.
        """

        status = QueueState(status)
        async with self._advance_lock(queue_name):
            previous = await self._queue.set_queue_status(queue_name, status)
        if status is QueueState.ACTIVE and previous is not QueueState.ACTIVE:
            await self._advance(queue_name)
        return previous

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Recover persisted queues left behind by a previous process."""

        if self._started:
            return
        self._started = True
        for queue_name in self._queue.list_queues():
            entries = await self._queue.load_queue(queue_name)
            project, _, _ = queue_name.partition(":")
            for entry in entries:
                if entry.status is QueueStatus.RUNNING:
                    error = "interrupted by service restart"
                    await self._queue.mark_terminal(queue_name, entry.task_id, QueueStatus.FAILED, error=error)
                    await self._apply_retry_policy(project, entry.task_id, error)
            for entry in entries:
                if entry.status is QueueStatus.QUEUED and self._execution_for_entry(queue_name, entry) is None:
                    if await self._rebuild(queue_name, entry) is None:
                        await self._queue.mark_terminal(
                            queue_name, entry.task_id, QueueStatus.CANCELLED, error="task is no longer available"
                        )
            await self._advance(queue_name)
        logger.info("Orchestrator started", extra={"executions": len(self._executions)})

    async def _rebuild(self, queue_name: str, entry: QueueEntry) -> Execution | None:
        project_name, _, worktree_name = queue_name.partition(":")
        try:
            project: ProjectContext = self._projects.get(project_name)
            await self._tasks.get_task(project_name, entry.task_id)
        except (LookupError, TaskStoreError) as exc:
            logger.warning(
                "Dropping queued entry that cannot be restored",
                extra={"queue": queue_name, "task_id": entry.task_id, "error": str(exc)},
            )
            return None
        worktree = Worktree(
            name=worktree_name,
            path=self._worktrees.worktree_path(project.repo_path, worktree_name, project.worktree_base),
            branch=worktree_name,
            repo_path=project.repo_path,
            base_branch=project.default_branch,
        )
        execution = Execution(
            execution_id=uuid4().hex,
            request=ExecutionRequest(
                task_id=entry.task_id,
                project_name=project_name,
                options=ExecutionOptions.model_validate(entry.options),
                user_id=entry.user_id,
            ),
            worktree=worktree,
            queue_name=queue_name,
            created_at=entry.enqueued_at,
            status=ExecutionStatus.QUEUED,
        )
        self._register(execution)
        return execution

    async def close(self) -> None:
        """Stop supervising without reconciling; running entries are recovered on next start."""

        self._closing = True
        supervisors = list(self._supervisors.values())
        for supervisor in supervisors:
            supervisor.cancel()
        for supervisor in supervisors:
            with contextlib.suppress(asyncio.CancelledError):
                await supervisor
        await self._sessions.close()
        for execution in self._executions.values():
            if not execution.finished and not execution._done.is_set():
                execution.result = ExecutionResult(success=False, error="orchestrator closed")
                execution._done.set()


__all__ = [
    "Execution",
    "ExecutionNotFoundError",
    "ExecutionOrchestrator",
    "ExecutionRequest",
    "ExecutionStatus",
    "InvalidTaskStateError",
    "artifacts_dir_for",
    "collect_artifacts",
    "queue_name_for",
]
