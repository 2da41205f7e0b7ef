"""Persisted per-worktree FIFO queues.

Each worktree owns one JSON file under ``<state_dir>/queues``. Every
read-modify-write for a worktree runs under that worktree's lock and ends in an
atomic write-replace, so concurrent enqueue/dequeue/mark calls serialize.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable
from urllib.parse import quote, unquote

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class QueueStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ACTIVE_STATUSES = frozenset({QueueStatus.QUEUED, QueueStatus.RUNNING})
TERMINAL_STATUSES = frozenset({QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED})


class QueueState(str, Enum):
    """Whether a worktree queue may hand out its next entry."""

    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"


class QueueError(RuntimeError):
    """Base class for queue errors."""


class QueueCorruptionError(QueueError):
    """Raised internally when a persisted queue cannot be parsed."""


class DuplicateQueueEntryError(QueueError):
    """Raised when a task is already queued or running in the worktree."""


class QueueConflictError(QueueError):
    """Raised when another entry in the worktree is already running."""


class QueueEntryNotFoundError(QueueError, LookupError):
    """Raised when no matching entry exists for the requested transition."""


class QueueNotFoundError(QueueError, LookupError):
    """Raised when a worktree has no persisted queue."""


class QueueEntry(BaseModel):
    """One task waiting for, holding, or having held a worktree."""

    task_id: str
    worktree_name: str
    sequence: int = Field(..., ge=1, description="Monotonic enqueue order within the worktree.")
    enqueued_at: datetime
    status: QueueStatus = QueueStatus.QUEUED
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None
    error: str | None = None
    user_id: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class WorktreeQueue(BaseModel):
    """Persisted document for one worktree's queue."""

    worktree_name: str
    status: QueueState = QueueState.ACTIVE
    next_sequence: int = Field(default=1, ge=1)
    entries: list[QueueEntry] = Field(default_factory=list)
    created_at: datetime | None = None
    last_activity: datetime | None = None


@dataclass(slots=True)
class QueueStats:
    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.running + self.completed + self.failed + self.cancelled

    def to_dict(self) -> dict[str, int]:
        payload = asdict(self)
        payload["total"] = self.total
        return payload


class WorktreeQueueService:
    """Single-writer access to every worktree's persisted queue."""

    def __init__(
        self,
        state_dir: Path,
        *,
        history_limit: int = 200,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._root = Path(state_dir) / "queues"
        self._history_limit = history_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cache: dict[str, WorktreeQueue] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    def queue_file(self, worktree_name: str) -> Path:
        return self._root / f"{quote(worktree_name, safe='')}.json"

    def _lock(self, worktree_name: str) -> asyncio.Lock:
        lock = self._locks.get(worktree_name)
        if lock is None:
            lock = self._locks[worktree_name] = asyncio.Lock()
        return lock

    def _new_queue(self, worktree_name: str) -> WorktreeQueue:
        now = self._clock()
        return WorktreeQueue(worktree_name=worktree_name, created_at=now, last_activity=now)

    def _read(self, worktree_name: str) -> WorktreeQueue:
        path = self.queue_file(worktree_name)
        if not path.exists():
            return self._new_queue(worktree_name)
        try:
            queue = WorktreeQueue.model_validate_json(path.read_text(encoding="utf-8"))
            if queue.worktree_name != worktree_name:
                raise QueueCorruptionError(
                    f"Queue file names worktree '{queue.worktree_name}', expected '{worktree_name}'"
                )
        except (OSError, ValueError, QueueCorruptionError) as exc:
            logger.warning(
                "Queue state is malformed; reinitializing empty queue",
                extra={"worktree": worktree_name, "path": str(path), "error": str(exc)},
            )
            self._quarantine(path)
            return self._new_queue(worktree_name)
        return queue

    def _quarantine(self, path: Path) -> None:
        stamp = self._clock().strftime("%Y%m%d%H%M%S")
        try:
            path.replace(path.with_name(f"{path.name}.corrupt-{stamp}"))
        except OSError as exc:
            logger.warning("Could not move corrupt queue file aside", extra={"path": str(path), "error": str(exc)})

    @staticmethod
    def _write_atomic(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _exists(self, worktree_name: str) -> bool:
        return worktree_name in self._cache or self.queue_file(worktree_name).exists()

    async def _load(self, worktree_name: str) -> WorktreeQueue:
        """Return the cached queue; a worktree without a file gets an uncached empty one."""

        queue = self._cache.get(worktree_name)
        if queue is None:
            queue = await asyncio.to_thread(self._read, worktree_name)
            if self.queue_file(worktree_name).exists():
                self._cache[worktree_name] = queue
        return queue

    async def _edit(self, worktree_name: str) -> WorktreeQueue:
        # Mutations apply to a copy that only replaces the cache once written.
        return (await self._load(worktree_name)).model_copy(deep=True)

    async def _save(self, queue: WorktreeQueue) -> None:
        queue.last_activity = self._clock()
        self._trim_history(queue)
        payload = queue.model_dump_json(indent=2)
        await asyncio.to_thread(self._write_atomic, self.queue_file(queue.worktree_name), payload)
        self._cache[queue.worktree_name] = queue

    def _trim_history(self, queue: WorktreeQueue) -> None:
        terminal = [entry for entry in queue.entries if not entry.is_active]
        overflow = len(terminal) - self._history_limit
        if overflow <= 0:
            return
        dropped = {entry.sequence for entry in sorted(terminal, key=lambda e: e.sequence)[:overflow]}
        queue.entries = [entry for entry in queue.entries if entry.sequence not in dropped]

    @staticmethod
    def _ordered(queue: WorktreeQueue) -> list[QueueEntry]:
        return sorted(queue.entries, key=lambda entry: entry.sequence)

    @classmethod
    def _position(cls, queue: WorktreeQueue, task_id: str) -> int | None:
        active = [entry for entry in cls._ordered(queue) if entry.is_active]
        for index, entry in enumerate(active, start=1):
            if entry.task_id == task_id:
                return index
        return None

    @staticmethod
    def _active_entry(queue: WorktreeQueue, task_id: str) -> QueueEntry | None:
        return next(
            (entry for entry in queue.entries if entry.task_id == task_id and entry.is_active),
            None,
        )

    async def enqueue(
        self,
        worktree_name: str,
        task_id: str,
        *,
        user_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> int:
        """Append ``task_id`` to the worktree queue and return its 1-based position."""

        async with self._lock(worktree_name):
            queue = await self._edit(worktree_name)
            if self._active_entry(queue, task_id) is not None:
                raise DuplicateQueueEntryError(
                    f"Task {task_id} is already queued in worktree '{worktree_name}'"
                )
            if queue.status is QueueState.COMPLETED:
                logger.info("Reopening completed queue", extra={"worktree": worktree_name})
                queue.status = QueueState.ACTIVE
            entry = QueueEntry(
                task_id=task_id,
                worktree_name=worktree_name,
                sequence=queue.next_sequence,
                enqueued_at=self._clock(),
                user_id=user_id,
                options=dict(options or {}),
            )
            queue.next_sequence += 1
            queue.entries.append(entry)
            await self._save(queue)
            position = self._position(queue, task_id)

        logger.info(
            "Enqueued task",
            extra={"worktree": worktree_name, "task_id": task_id, "sequence": entry.sequence, "position": position},
        )
        return position or 0

    async def load_queue(self, worktree_name: str) -> list[QueueEntry]:
        async with self._lock(worktree_name):
            queue = await self._load(worktree_name)
            return [entry.model_copy() for entry in self._ordered(queue)]

    async def get_stats(self, worktree_name: str) -> QueueStats:
        stats = QueueStats()
        for entry in await self.load_queue(worktree_name):
            field_name = entry.status.value.lower()
            setattr(stats, field_name, getattr(stats, field_name) + 1)
        return stats

    async def position(self, worktree_name: str, task_id: str) -> int | None:
        async with self._lock(worktree_name):
            return self._position(await self._load(worktree_name), task_id)

    def _claim(self, queue: WorktreeQueue, entry: QueueEntry) -> None:
        running = next((e for e in queue.entries if e.status is QueueStatus.RUNNING), None)
        if running is not None:
            raise QueueConflictError(
                f"Task {running.task_id} is already running in worktree '{queue.worktree_name}'"
            )
        entry.status = QueueStatus.RUNNING
        entry.started_at = self._clock()

    async def mark_running(self, worktree_name: str, task_id: str) -> QueueEntry:
        async with self._lock(worktree_name):
            queue = await self._edit(worktree_name)
            entry = self._active_entry(queue, task_id)
            if entry is None or entry.status is not QueueStatus.QUEUED:
                raise QueueEntryNotFoundError(
                    f"No queued entry for task {task_id} in worktree '{worktree_name}'"
                )
            self._claim(queue, entry)
            await self._save(queue)
            return entry.model_copy()

    async def dequeue(self, worktree_name: str) -> QueueEntry | None:
        """Claim the oldest queued entry, or return None if none can run now."""

        async with self._lock(worktree_name):
            queue = await self._edit(worktree_name)
            if queue.status is not QueueState.ACTIVE:
                return None
            if any(entry.status is QueueStatus.RUNNING for entry in queue.entries):
                return None
            entry = next(
                (e for e in self._ordered(queue) if e.status is QueueStatus.QUEUED),
                None,
            )
            if entry is None:
                return None
            self._claim(queue, entry)
            await self._save(queue)

        logger.info(
            "Dequeued task",
            extra={"worktree": worktree_name, "task_id": entry.task_id, "sequence": entry.sequence},
        )
        return entry.model_copy()

    async def mark_terminal(
        self,
        worktree_name: str,
        task_id: str,
        status: QueueStatus | str,
        *,
        exit_code: int | None = None,
        error: str | None = None,
    ) -> QueueEntry:
        status = QueueStatus(status)
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is not a terminal queue status")

        async with self._lock(worktree_name):
            queue = await self._edit(worktree_name)
            entry = self._active_entry(queue, task_id)
            if entry is None:
                raise QueueEntryNotFoundError(
                    f"No active entry for task {task_id} in worktree '{worktree_name}'"
                )
            entry.status = status
            entry.finished_at = self._clock()
            entry.exit_code = exit_code
            entry.error = error
            await self._save(queue)

        logger.info(
            "Queue entry finished",
            extra={"worktree": worktree_name, "task_id": task_id, "status": status.value},
        )
        return entry.model_copy()

    async def get_queue_status(self, worktree_name: str) -> QueueState:
        async with self._lock(worktree_name):
            return (await self._load(worktree_name)).status

    async def set_queue_status(self, worktree_name: str, status: QueueState | str) -> QueueState:
        """Pause, resume or close an existing queue and return its previous state.

        Only ACTIVE queues hand out entries; entries keep queueing while a
        queue is PAUSED or COMPLETED. A new enqueue reopens a COMPLETED queue.
        """

        status = QueueState(status)
        async with self._lock(worktree_name):
            if not self._exists(worktree_name):
                raise QueueNotFoundError(f"No queue exists for worktree '{worktree_name}'")
            queue = await self._edit(worktree_name)
            previous = queue.status
            if previous is not status:
                queue.status = status
                await self._save(queue)

        logger.info(
            "Queue status changed",
            extra={"worktree": worktree_name, "previous": previous.value, "status": status.value},
        )
        return previous

    async def list_active_queues(self) -> list[str]:
        """Return the worktree names whose queue is ACTIVE."""

        active = []
        for name in self.list_queues():
            if await self.get_queue_status(name) is QueueState.ACTIVE:
                active.append(name)
        return active

    def list_queues(self) -> list[str]:
        """Return every worktree name with a persisted queue."""

        names = set(self._cache)
        if self._root.exists():
            names.update(unquote(path.stem) for path in self._root.glob("*.json"))
        return sorted(names)


__all__ = [
    "ACTIVE_STATUSES",
    "DuplicateQueueEntryError",
    "QueueConflictError",
    "QueueCorruptionError",
    "QueueEntry",
    "QueueEntryNotFoundError",
    "QueueError",
    "QueueNotFoundError",
    "QueueState",
    "QueueStats",
    "QueueStatus",
    "TERMINAL_STATUSES",
    "WorktreeQueue",
    "WorktreeQueueService",
]
