"""Domain models shared by the orchestration services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskType(str, Enum):
    TASK = "TASK"
    BUG = "BUG"
    FEATURE = "FEATURE"
    SUBTASK = "SUBTASK"
    STORY = "STORY"
    EPIC = "EPIC"


class TaskStatus(str, Enum):
    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    IN_REVIEW = "IN_REVIEW"
    DONE = "DONE"
    DEFERRED = "DEFERRED"
    BLOCKED = "BLOCKED"


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"
    CRITICAL = "CRITICAL"


class EffortBucket(str, Enum):
    XS = "XS"
    S = "S"
    M = "M"
    L = "L"
    XL = "XL"
    XXL = "XXL"


class WorktreeStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REMOVED = "REMOVED"


class Task(BaseModel):
    """Task record as exposed by the Task Store."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., description="Stable task identifier.")
    project_id: str | None = Field(default=None, description="Owning project identifier.")
    title: str = Field(..., description="Short task title; drives the worktree name.")
    description: str = Field(default="", description="Free-form requirement text.")
    type: TaskType = Field(default=TaskType.TASK)
    status: TaskStatus = Field(default=TaskStatus.PLANNED)
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    estimated_effort: EffortBucket | None = Field(default=None)
    worktree_name: str | None = None
    worktree_path: str | None = None
    worktree_status: WorktreeStatus | None = None
    attempts: int = Field(default=0, ge=0, description="Failed execution attempts so far.")
    last_error: str | None = None
    started_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("id", "title", mode="before")
    @classmethod
    def _require_text(cls, value: Any) -> str:
        normalized = "" if value is None else str(value).strip()
        if not normalized:
            raise ValueError("Task id and title must not be empty")
        return normalized

    @field_validator("type", "status", "priority", "estimated_effort", mode="before")
    @classmethod
    def _upper_enums(cls, value: Any):
        if isinstance(value, str):
            return value.strip().upper()
        return value


@dataclass(slots=True)
class Worktree:
    """A checked-out git worktree for one feature/task branch."""

    name: str
    path: Path
    branch: str | None
    repo_path: Path
    base_branch: str | None = None
    head: str | None = None
    status: WorktreeStatus = WorktreeStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.path),
            "branch": self.branch,
            "repo_path": str(self.repo_path),
            "base_branch": self.base_branch,
            "head": self.head,
            "status": self.status.value,
        }


@dataclass(slots=True)
class RepoStats:
    """Repository activity of a worktree relative to its base branch."""

    commits: int = 0
    files_changed: int = 0


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one queue entry's execution, handed back to the Task Store."""

    success: bool
    log_path: Path | None = None
    screenshots: list[Path] = field(default_factory=list)
    video_path: Path | None = None
    documentation_path: Path | None = None
    exit_code: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "log_path": str(self.log_path) if self.log_path else None,
            "screenshots": [str(path) for path in self.screenshots],
            "video_path": str(self.video_path) if self.video_path else None,
            "documentation_path": str(self.documentation_path) if self.documentation_path else None,
            "exit_code": self.exit_code,
            "error": self.error,
        }


class ExecutionOptions(BaseModel):
    """Options accepted by the start-work request."""

    model_config = ConfigDict(extra="ignore")

    capture_screenshots: bool = False
    capture_video: bool = False
    create_documentation: bool = False
    dry_run: bool = False
    skip_tests: bool = False
    skip_demo: bool = False
    profile_id: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)


__all__ = [
    "EffortBucket",
    "ExecutionOptions",
    "ExecutionResult",
    "RepoStats",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "TaskType",
    "Worktree",
    "WorktreeStatus",
]
