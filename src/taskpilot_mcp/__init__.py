"""Taskpilot MCP: autonomous task execution in isolated git worktrees."""

__version__ = "0.1.0"

from .orchestrator import ExecutionNotFoundError, InvalidTaskStateError
from .process import ProcessSpawnError, ProcessTimeoutError
from .queue import (
    DuplicateQueueEntryError,
    QueueConflictError,
    QueueCorruptionError,
    QueueEntryNotFoundError,
    QueueNotFoundError,
)
from .sessions import SessionNotFoundError
from .tasks import ProjectNotFoundError, TaskNotFoundError
from .worktrees import (
    BranchExistsError,
    VCSCommandError,
    WorktreeConflictError,
    WorktreeNotFoundError,
)

__all__ = [
    "BranchExistsError",
    "DuplicateQueueEntryError",
    "ExecutionNotFoundError",
    "InvalidTaskStateError",
    "ProcessSpawnError",
    "ProcessTimeoutError",
    "ProjectNotFoundError",
    "QueueConflictError",
    "QueueCorruptionError",
    "QueueEntryNotFoundError",
    "QueueNotFoundError",
    "SessionNotFoundError",
    "TaskNotFoundError",
    "VCSCommandError",
    "WorktreeConflictError",
    "WorktreeNotFoundError",
    "__version__",
]
