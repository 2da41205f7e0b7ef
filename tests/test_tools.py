from __future__ import annotations

import asyncio
import signal

import pytest

from taskpilot_mcp.process import FakeProcessHandle, ProcessRunnerError
from taskpilot_mcp.queue import QueueNotFoundError
from taskpilot_mcp.registry import AgentRegistry
from taskpilot_mcp.sessions import SessionNotFoundError, SessionOptions
from taskpilot_mcp.tools import register_tools
from taskpilot_mcp.worktrees import WorktreeManager


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


async def _hold(handle: FakeProcessHandle) -> None:
    handle.emit_stdout("reading the codebase\n")
    handle.emit_stderr("warning: slow disk\n")
    await asyncio.Event().wait()


async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate() and loop.time() < deadline:
        await asyncio.sleep(0.01)


def _tasks() -> list[dict]:
    return [
        {"id": "T-1", "title": "Search box", "type": "FEATURE", "status": "PLANNED"},
        {"id": "T-2", "title": "Search box", "type": "FEATURE", "status": "PLANNED"},
    ]


def _register(harness):
    server = StubServer()
    handles = register_tools(
        server,  # type: ignore[arg-type]
        registry=AgentRegistry(harness.orchestrator),
        orchestrator=harness.orchestrator,
        worktrees=WorktreeManager(harness.runner),
        projects=harness.projects,
    )
    return server, handles


def test_tools_are_registered_by_name(build_harness) -> None:
    server, _ = _register(build_harness())

    assert set(server._tools) == {
        "start_work",
        "agent_status",
        "active_sessions",
        "stop_agent",
        "session_output",
        "send_input",
        "interrupt_agent",
        "queue_status",
        "set_queue_status",
        "list_worktrees",
    }


def test_start_work_acknowledges_running_and_queued(build_harness) -> None:
    harness = build_harness(_hold, tasks=_tasks())
    _, handles = _register(harness)

    async def scenario():
        first = await handles.start_work.fn(project_name="shop", task_id="T-1", user_id="alice")  # type: ignore[attr-defined]
        second = await handles.start_work.fn(project_name="shop", task_id="T-2", skip_tests=True)  # type: ignore[attr-defined]
        active = await handles.active_sessions.fn()  # type: ignore[attr-defined]
        status = await handles.agent_status.fn(agent_id=second["agent_id"])  # type: ignore[attr-defined]
        queues = await handles.queue_status.fn(project_name="shop")  # type: ignore[attr-defined]
        await harness.orchestrator.close()
        return first, second, active, status, queues

    first, second, active, status, queues = asyncio.run(scenario())

    assert first["status"] == "RUNNING"
    assert first["agent_id"] == first["session_id"]
    assert first["worktree"] == "feat-search-box"
    assert "Agent started" in first["message"]
    assert second["status"] == "QUEUED"
    assert second["session_id"] is None
    assert second["agent_id"] == second["execution_id"]
    assert second["queue_position"] == 2
    assert "position 2" in second["message"]
    assert active["count"] == 2
    assert status["status"] == "QUEUED"

    [queue] = queues["queues"]
    assert queue["worktree"] == "feat-search-box"
    assert queue["stats"]["running"] == 1
    assert queue["stats"]["queued"] == 1
    assert [entry["task_id"] for entry in queue["entries"]] == ["T-1", "T-2"]
    assert all("options" not in entry for entry in queue["entries"])


def test_session_output_and_interrupt(build_harness) -> None:
    harness = build_harness(_hold, tasks=_tasks())
    _, handles = _register(harness)

    async def scenario():
        started = await handles.start_work.fn(project_name="shop", task_id="T-1", user_id="alice")  # type: ignore[attr-defined]
        session_id = started["session_id"]
        channel = harness.sessions.channel(session_id)
        await _until(lambda: len(channel.history()) >= 2)

        output = handles.session_output.fn(session_id=session_id, user_id="alice")  # type: ignore[attr-defined]
        tail = handles.session_output.fn(session_id=session_id, since=output["next_since"])  # type: ignore[attr-defined]
        with pytest.raises(SessionNotFoundError):
            handles.session_output.fn(session_id=session_id, user_id="bob")  # type: ignore[attr-defined]

        accepted = await handles.interrupt_agent.fn(session_id=session_id)  # type: ignore[attr-defined]
        handle = harness.runner.handles[0]
        await _until(lambda: signal.SIGINT in handle.signals)
        signals = list(handle.signals)

        stopped = await handles.stop_agent.fn(agent_id=session_id, user_id="alice")  # type: ignore[attr-defined]
        closed = handles.session_output.fn(session_id=session_id, since=output["next_since"])  # type: ignore[attr-defined]
        return output, tail, accepted, signals, stopped, closed

    output, tail, accepted, signals, stopped, closed = asyncio.run(scenario())

    kinds = {message["type"]: message for message in output["messages"]}
    assert kinds["output"]["data"] == "reading the codebase\n"
    assert kinds["error"]["data"] == "warning: slow disk\n"
    assert output["closed"] is False
    assert tail["messages"] == []
    assert accepted["accepted"] is True
    assert signals == [signal.SIGINT]
    assert stopped["status"] == "CANCELLED"
    assert closed["closed"] is True
    assert closed["exit_code"] == -signal.SIGTERM


def test_send_input_rejects_unknown_session(build_harness) -> None:
    _, handles = _register(build_harness())

    with pytest.raises(SessionNotFoundError):
        asyncio.run(handles.send_input.fn(session_id="missing", data="y\n"))  # type: ignore[attr-defined]


def test_send_input_reports_closed_stdin_of_orchestrated_agent(build_harness) -> None:
    harness = build_harness(_hold, tasks=_tasks())
    _, handles = _register(harness)

    async def scenario():
        started = await handles.start_work.fn(project_name="shop", task_id="T-1")  # type: ignore[attr-defined]
        with pytest.raises(ProcessRunnerError, match="closed"):
            await handles.send_input.fn(session_id=started["session_id"], data="yes\n")  # type: ignore[attr-defined]
        inputs = list(harness.runner.handles[0].inputs)
        await harness.orchestrator.close()
        return inputs

    inputs = asyncio.run(scenario())

    assert len(inputs) == 1
    assert b"Search box" in inputs[0]


def test_send_input_reaches_open_session(build_harness) -> None:
    harness = build_harness(_hold)
    _, handles = _register(harness)

    async def scenario():
        session_id = await harness.sessions.create_session("alice", SessionOptions(working_dir=harness.repo))
        reply = await handles.send_input.fn(session_id=session_id, data="yes\n", user_id="alice")  # type: ignore[attr-defined]
        with pytest.raises(SessionNotFoundError):
            await handles.send_input.fn(session_id=session_id, data="no\n", user_id="bob")  # type: ignore[attr-defined]
        inputs = list(harness.runner.handles[0].inputs)
        await harness.sessions.close()
        return reply, inputs

    reply, inputs = asyncio.run(scenario())

    assert reply["accepted"] is True
    assert inputs == [b"yes\n"]


def test_pausing_a_queue_holds_waiting_work(build_harness) -> None:
    harness = build_harness(_hold, tasks=_tasks())
    _, handles = _register(harness)

    async def scenario():
        first = await handles.start_work.fn(project_name="shop", task_id="T-1")  # type: ignore[attr-defined]
        await handles.start_work.fn(project_name="shop", task_id="T-2")  # type: ignore[attr-defined]
        paused = await handles.set_queue_status.fn(  # type: ignore[attr-defined]
            project_name="shop", worktree_name="feat-search-box", status="paused"
        )
        await handles.stop_agent.fn(agent_id=first["agent_id"])  # type: ignore[attr-defined]
        held = await handles.queue_status.fn(project_name="shop")  # type: ignore[attr-defined]
        active_only = await handles.queue_status.fn(project_name="shop", active_only=True)  # type: ignore[attr-defined]
        started_while_paused = len(harness.runner.started)

        resumed = await handles.set_queue_status.fn(  # type: ignore[attr-defined]
            project_name="shop", worktree_name="feat-search-box", status="ACTIVE"
        )
        started_after_resume = len(harness.runner.started)
        with pytest.raises(QueueNotFoundError):
            await handles.set_queue_status.fn(  # type: ignore[attr-defined]
                project_name="shop", worktree_name="feat-serch-box", status="PAUSED"
            )
        await harness.orchestrator.close()
        return paused, held, active_only, started_while_paused, resumed, started_after_resume

    paused, held, active_only, started_while_paused, resumed, started_after_resume = asyncio.run(scenario())

    assert (paused["previous_status"], paused["status"]) == ("ACTIVE", "PAUSED")
    [queue] = held["queues"]
    assert queue["status"] == "PAUSED"
    assert queue["stats"]["queued"] == 1
    assert queue["stats"]["running"] == 0
    assert active_only["queues"] == []
    assert started_while_paused == 1
    assert (resumed["previous_status"], resumed["status"]) == ("PAUSED", "ACTIVE")
    assert resumed["stats"]["running"] == 1
    assert started_after_resume == 2


def test_list_worktrees_reports_repository_checkouts(build_harness) -> None:
    harness = build_harness(tasks=_tasks())
    harness.git.checkout_elsewhere("feat-other", harness.repo.parent / "elsewhere")
    _, handles = _register(harness)

    result = asyncio.run(handles.list_worktrees.fn(project_name="shop"))  # type: ignore[attr-defined]

    assert result["project"] == "shop"
    assert [item["branch"] for item in result["worktrees"]] == ["main", "feat-other"]
    assert result["worktrees"][0]["path"] == str(harness.repo)
