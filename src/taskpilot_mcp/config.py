"""Configuration management for Taskpilot MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os
import shlex

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .models import TaskStatus


class TaskpilotSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    agent_command: str = Field(default="claude", validation_alias="TASKPILOT_AGENT_COMMAND")
    agent_args: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("-p", "--dangerously-skip-permissions"), validation_alias="TASKPILOT_AGENT_ARGS"
    )
    state_dir: Path = Field(default=Path("./state"), validation_alias="TASKPILOT_STATE_DIR")
    tasks_dir: Path = Field(default=Path("./tasks"), validation_alias="TASKPILOT_TASKS_DIR")
    projects_file: Path = Field(
        default=Path("./projects.yaml"), validation_alias="TASKPILOT_PROJECTS_FILE"
    )
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="TASKPILOT_PROFILE_PATHS"
    )
    default_profile: str = Field(default="developer", validation_alias="TASKPILOT_DEFAULT_PROFILE")
    idle_timeout_seconds: float = Field(
        default=1800.0, validation_alias="TASKPILOT_IDLE_TIMEOUT_SECONDS"
    )
    task_timeout_seconds: float | None = Field(
        default=None, validation_alias="TASKPILOT_TASK_TIMEOUT_SECONDS"
    )
    progress_poll_seconds: float = Field(
        default=15.0, validation_alias="TASKPILOT_PROGRESS_POLL_SECONDS"
    )
    completion_status: TaskStatus = Field(
        default=TaskStatus.IN_REVIEW, validation_alias="TASKPILOT_COMPLETION_STATUS"
    )
    max_attempts: int = Field(default=3, validation_alias="TASKPILOT_MAX_ATTEMPTS")
    log_level: str = Field(default="INFO", validation_alias="TASKPILOT_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "TASKPILOT_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("agent_args", mode="before")
    @classmethod
    def _parse_agent_args(cls, value):
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(shlex.split(value))
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        raise TypeError("TASKPILOT_AGENT_ARGS must be a string or a list of arguments")

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError(
            "TASKPILOT_PROFILE_PATHS must be a list of paths or a path-separated string"
        )

    @field_validator("task_timeout_seconds", mode="before")
    @classmethod
    def _blank_timeout(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("idle_timeout_seconds", "progress_poll_seconds", "task_timeout_seconds")
    @classmethod
    def _validate_positive(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("Timeouts and poll intervals must be > 0")
        return value

    @field_validator("completion_status", mode="before")
    @classmethod
    def _normalize_completion_status(cls, value):
        if isinstance(value, str):
            value = value.strip().upper()
        if value not in {TaskStatus.IN_REVIEW, TaskStatus.DONE, "IN_REVIEW", "DONE"}:
            raise ValueError("TASKPILOT_COMPLETION_STATUS must be IN_REVIEW or DONE")
        return value

    @field_validator("max_attempts")
    @classmethod
    def _validate_max_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("TASKPILOT_MAX_ATTEMPTS must be >= 1")
        return value


@lru_cache(maxsize=1)
def get_settings() -> TaskpilotSettings:
    """Return cached settings instance."""

    settings = TaskpilotSettings()
    settings.state_dir = settings.state_dir.expanduser().resolve()
    settings.tasks_dir = settings.tasks_dir.expanduser().resolve()
    settings.projects_file = settings.projects_file.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    return settings


__all__ = ["TaskpilotSettings", "get_settings"]
