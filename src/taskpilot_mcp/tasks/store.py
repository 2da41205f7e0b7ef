"""Task Store boundary and the YAML-file adapter used by default."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

import yaml
from pydantic import ValidationError

from ..models import Task

logger = logging.getLogger(__name__)


class TaskNotFoundError(LookupError):
    """Raised when a task id is unknown to the Task Store."""


class TaskStoreError(RuntimeError):
    """Raised when a task file cannot be read or written."""


class TaskStore(Protocol):
    """Persistence collaborator owning task records."""

    async def get_task(self, project: str, task_id: str) -> Task:
        ...

    async def update_task(self, project: str, task_id: str, **changes: Any) -> Task:
        ...


class YamlTaskStore:
    """Tasks kept as a YAML list per project in ``<tasks_dir>/<project>.yaml``."""

    def __init__(self, tasks_dir: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._root = Path(tasks_dir)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: dict[str, asyncio.Lock] = {}

    def task_file(self, project: str) -> Path:
        return self._root / f"{project}.yaml"

    def _lock(self, project: str) -> asyncio.Lock:
        lock = self._locks.get(project)
        if lock is None:
            lock = self._locks[project] = asyncio.Lock()
        return lock

    def _read(self, project: str) -> list[dict[str, Any]]:
        path = self.task_file(project)
        if not path.exists():
            return []
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise TaskStoreError(f"Failed to read tasks from {path}: {exc}") from exc
        if document is None:
            return []
        if isinstance(document, dict):
            document = document.get("tasks") or []
        if not isinstance(document, list):
            raise TaskStoreError(f"{path} must contain a list of tasks")
        return [dict(item) for item in document if isinstance(item, dict)]

    def _write(self, project: str, records: list[dict[str, Any]]) -> None:
        path = self.task_file(project)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(records, handle, sort_keys=False, allow_unicode=True)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def _find(records: list[dict[str, Any]], task_id: str) -> int:
        for index, record in enumerate(records):
            if str(record.get("id")) == task_id:
                return index
        return -1

    def _to_task(self, project: str, record: dict[str, Any]) -> Task:
        payload = dict(record)
        payload.setdefault("project_id", project)
        try:
            return Task.model_validate(payload)
        except ValidationError as exc:
            raise TaskStoreError(f"Task {record.get('id')} in project '{project}' is invalid: {exc}") from exc

    async def get_task(self, project: str, task_id: str) -> Task:
        async with self._lock(project):
            records = await asyncio.to_thread(self._read, project)
        index = self._find(records, task_id)
        if index < 0:
            raise TaskNotFoundError(f"Task {task_id} not found in project '{project}'")
        return self._to_task(project, records[index])

    async def update_task(self, project: str, task_id: str, **changes: Any) -> Task:
        """Apply ``changes`` to one task record and persist the file."""

        async with self._lock(project):
            records = await asyncio.to_thread(self._read, project)
            index = self._find(records, task_id)
            if index < 0:
                raise TaskNotFoundError(f"Task {task_id} not found in project '{project}'")
            merged = {**records[index], **changes, "updated_at": self._clock()}
            task = self._to_task(project, merged)
            records[index] = task.model_dump(mode="json", exclude_none=True)
            await asyncio.to_thread(self._write, project, records)

        logger.debug(
            "Updated task",
            extra={"project": project, "task_id": task_id, "fields": sorted(changes)},
        )
        return task

    async def list_tasks(self, project: str) -> list[Task]:
        async with self._lock(project):
            records = await asyncio.to_thread(self._read, project)
        return [self._to_task(project, record) for record in records]


__all__ = ["TaskNotFoundError", "TaskStore", "TaskStoreError", "YamlTaskStore"]
