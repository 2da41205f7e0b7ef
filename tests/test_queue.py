from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from taskpilot_mcp.queue import (
    DuplicateQueueEntryError,
    QueueConflictError,
    QueueEntryNotFoundError,
    QueueNotFoundError,
    QueueState,
    QueueStatus,
    WorktreeQueueService,
)

QUEUE = "shop:feat-login"


def test_stats_follow_enqueue_and_running(tmp_path: Path) -> None:
    service = WorktreeQueueService(tmp_path)

    async def scenario():
        positions = [await service.enqueue(QUEUE, task_id) for task_id in ("A", "B", "C")]
        before = await service.get_stats(QUEUE)
        await service.mark_running(QUEUE, "A")
        after = await service.get_stats(QUEUE)
        return positions, before, after

    positions, before, after = asyncio.run(scenario())

    assert positions == [1, 2, 3]
    assert (before.queued, before.running) == (3, 0)
    assert (after.queued, after.running) == (2, 1)


def test_dequeue_is_fifo_and_single_running(tmp_path: Path) -> None:
    service = WorktreeQueueService(tmp_path)

    async def scenario():
        for task_id in ("A", "B", "C"):
            await service.enqueue(QUEUE, task_id)
        first = await service.dequeue(QUEUE)
        blocked = await service.dequeue(QUEUE)
        with pytest.raises(QueueConflictError):
            await service.mark_running(QUEUE, "B")
        await service.mark_terminal(QUEUE, "A", QueueStatus.FAILED, exit_code=2, error="boom")
        second = await service.dequeue(QUEUE)
        await service.mark_terminal(QUEUE, "B", QueueStatus.COMPLETED, exit_code=0)
        third = await service.dequeue(QUEUE)
        await service.mark_terminal(QUEUE, "C", QueueStatus.CANCELLED)
        empty = await service.dequeue(QUEUE)
        return first, blocked, second, third, empty, await service.get_stats(QUEUE)

    first, blocked, second, third, empty, stats = asyncio.run(scenario())

    assert first.task_id == "A" and first.status is QueueStatus.RUNNING
    assert blocked is None
    assert second.task_id == "B"
    assert third.task_id == "C"
    assert empty is None
    assert stats.to_dict() == {
        "queued": 0,
        "running": 0,
        "completed": 1,
        "failed": 1,
        "cancelled": 1,
        "total": 3,
    }


def test_duplicate_active_entry_rejected(tmp_path: Path) -> None:
    service = WorktreeQueueService(tmp_path)

    async def scenario():
        await service.enqueue(QUEUE, "A")
        with pytest.raises(DuplicateQueueEntryError):
            await service.enqueue(QUEUE, "A")
        await service.dequeue(QUEUE)
        await service.mark_terminal(QUEUE, "A", QueueStatus.FAILED)
        return await service.enqueue(QUEUE, "A")

    assert asyncio.run(scenario()) == 1


def test_mark_terminal_requires_active_entry(tmp_path: Path) -> None:
    service = WorktreeQueueService(tmp_path)

    with pytest.raises(QueueEntryNotFoundError):
        asyncio.run(service.mark_terminal(QUEUE, "missing", QueueStatus.COMPLETED))
    with pytest.raises(ValueError):
        asyncio.run(service.mark_terminal(QUEUE, "missing", QueueStatus.QUEUED))


def test_concurrent_enqueue_assigns_unique_sequences(tmp_path: Path) -> None:
    service = WorktreeQueueService(tmp_path)

    async def scenario():
        await asyncio.gather(*(service.enqueue(QUEUE, f"task-{index}") for index in range(10)))
        return await service.load_queue(QUEUE)

    entries = asyncio.run(scenario())

    assert [entry.sequence for entry in entries] == list(range(1, 11))
    assert len({entry.task_id for entry in entries}) == 10


def test_queue_survives_restart(tmp_path: Path) -> None:
    asyncio.run(WorktreeQueueService(tmp_path).enqueue(QUEUE, "A", user_id="u1", options={"dry_run": True}))

    reloaded = WorktreeQueueService(tmp_path)
    entries = asyncio.run(reloaded.load_queue(QUEUE))

    assert reloaded.list_queues() == [QUEUE]
    assert entries[0].task_id == "A"
    assert entries[0].user_id == "u1"
    assert entries[0].options == {"dry_run": True}


def test_corrupt_queue_file_is_reset(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    service = WorktreeQueueService(tmp_path)
    path = service.queue_file(QUEUE)
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")
    caplog.set_level("WARNING", logger="taskpilot_mcp.queue")

    entries = asyncio.run(service.load_queue(QUEUE))
    position = asyncio.run(service.enqueue(QUEUE, "A"))

    assert entries == []
    assert position == 1
    assert any("malformed" in record.message for record in caplog.records)
    assert list(path.parent.glob("*.corrupt-*"))
    assert json.loads(path.read_text(encoding="utf-8"))["entries"][0]["task_id"] == "A"


def test_history_is_bounded(tmp_path: Path) -> None:
    service = WorktreeQueueService(tmp_path, history_limit=2)

    async def scenario():
        for index in range(4):
            task_id = f"task-{index}"
            await service.enqueue(QUEUE, task_id)
            await service.dequeue(QUEUE)
            await service.mark_terminal(QUEUE, task_id, QueueStatus.COMPLETED)
        return await service.load_queue(QUEUE)

    entries = asyncio.run(scenario())

    assert [entry.task_id for entry in entries] == ["task-2", "task-3"]


def test_paused_queue_keeps_accepting_but_hands_out_nothing(tmp_path: Path) -> None:
    service = WorktreeQueueService(tmp_path)

    async def scenario():
        await service.enqueue(QUEUE, "A")
        await service.enqueue("shop:feat-cart", "X")
        previous = await service.set_queue_status(QUEUE, "PAUSED")
        held = await service.dequeue(QUEUE)
        position = await service.enqueue(QUEUE, "B")
        active = await service.list_active_queues()
        return previous, held, position, active

    previous, held, position, active = asyncio.run(scenario())

    assert previous is QueueState.ACTIVE
    assert held is None
    assert position == 2
    assert active == ["shop:feat-cart"]

    reloaded = WorktreeQueueService(tmp_path)

    async def resume():
        paused = await reloaded.get_queue_status(QUEUE)
        await reloaded.set_queue_status(QUEUE, QueueState.ACTIVE)
        return paused, await reloaded.dequeue(QUEUE)

    paused, head = asyncio.run(resume())

    assert paused is QueueState.PAUSED
    assert head.task_id == "A"


def test_enqueue_reopens_completed_queue(tmp_path: Path) -> None:
    service = WorktreeQueueService(tmp_path)

    async def scenario():
        await service.enqueue(QUEUE, "A")
        await service.set_queue_status(QUEUE, QueueState.COMPLETED)
        closed = await service.dequeue(QUEUE)
        await service.enqueue(QUEUE, "B")
        return closed, await service.get_queue_status(QUEUE), await service.dequeue(QUEUE)

    closed, status, head = asyncio.run(scenario())

    assert closed is None
    assert status is QueueState.ACTIVE
    assert head.task_id == "A"


def test_read_only_lookups_do_not_create_queues(tmp_path: Path) -> None:
    service = WorktreeQueueService(tmp_path)

    async def scenario():
        stats = await service.get_stats("shop:typo")
        entries = await service.load_queue("shop:typo")
        position = await service.position("shop:typo", "A")
        status = await service.get_queue_status("shop:typo")
        with pytest.raises(QueueNotFoundError):
            await service.set_queue_status("shop:typo", QueueState.PAUSED)
        return stats, entries, position, status

    stats, entries, position, status = asyncio.run(scenario())

    assert stats.total == 0
    assert entries == []
    assert position is None
    assert status is QueueState.ACTIVE
    assert service.list_queues() == []
    assert not service.queue_file("shop:typo").exists()


def test_failed_write_leaves_queue_unchanged(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service = WorktreeQueueService(tmp_path)
    write = service._write_atomic
    failures = [OSError("disk full")]

    def flaky_write(path: Path, payload: str) -> None:
        if failures:
            raise failures.pop()
        write(path, payload)

    monkeypatch.setattr(service, "_write_atomic", flaky_write)

    async def scenario():
        with pytest.raises(OSError, match="disk full"):
            await service.enqueue(QUEUE, "A")
        after_failure = (await service.load_queue(QUEUE), service.list_queues())
        return after_failure, await service.enqueue(QUEUE, "A")

    (entries, names), position = asyncio.run(scenario())

    assert entries == []
    assert names == []
    assert position == 1
