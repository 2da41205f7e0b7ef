"""Tool registration for Taskpilot MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..models import ExecutionOptions
from ..orchestrator import ExecutionOrchestrator
from ..queue import QueueState, WorktreeQueueService
from ..registry import AgentRegistry
from ..sessions import AgentSession, SessionNotFoundError, message_to_dict
from ..tasks import ProjectResolver
from ..worktrees import WorktreeManager


@dataclass(slots=True)
class ToolHandles:
    start_work: Any
    agent_status: Any
    active_sessions: Any
    stop_agent: Any
    session_output: Any
    send_input: Any
    interrupt_agent: Any
    queue_status: Any
    set_queue_status: Any
    list_worktrees: Any


def register_tools(
    server: FastMCP,
    *,
    registry: AgentRegistry,
    orchestrator: ExecutionOrchestrator,
    worktrees: WorktreeManager,
    projects: ProjectResolver,
) -> ToolHandles:
    """Register Taskpilot's MCP tools on the server."""

    queue: WorktreeQueueService = orchestrator.queue
    sessions = orchestrator.sessions

    def _session_for(session_id: str, user_id: str | None) -> AgentSession:
        session = sessions.get_session(session_id, include_closed=True)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    async def _start_work(
        project_name: str,
        task_id: str,
        capture_screenshots: bool = False,
        capture_video: bool = False,
        create_documentation: bool = False,
        dry_run: bool = False,
        skip_tests: bool = False,
        skip_demo: bool = False,
        profile_id: str | None = None,
        timeout_seconds: float | None = None,
        user_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start autonomous work on a PLANNED task and acknowledge immediately."""

        options = ExecutionOptions(
            capture_screenshots=capture_screenshots,
            capture_video=capture_video,
            create_documentation=create_documentation,
            dry_run=dry_run,
            skip_tests=skip_tests,
            skip_demo=skip_demo,
            profile_id=profile_id,
            timeout_seconds=timeout_seconds,
        )
        execution = await registry.start(project_name, task_id, options, user_id)

        if execution.session_id:
            message = f"Agent started in worktree {execution.worktree.name}"
        else:
            message = f"Queued at position {execution.position} for worktree {execution.worktree.name}"

        _emit_log(
            context,
            "info",
            "Start work acknowledged",
            extra={
                "task_id": task_id,
                "project": project_name,
                "status": execution.status.value,
                "agent_id": registry.agent_id(execution),
            },
        )
        return {
            "agent_id": registry.agent_id(execution),
            "execution_id": execution.execution_id,
            "session_id": execution.session_id,
            "status": execution.status.value,
            "queue_position": execution.position,
            "worktree": execution.worktree.name,
            "worktree_path": str(execution.worktree.path),
            "message": message,
        }

    async def _agent_status(
        agent_id: str,
        user_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return the status snapshot of an agent, refreshing its progress estimate."""

        await orchestrator.start()
        return await registry.get_agent_status(agent_id, user_id)

    async def _active_sessions(
        user_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        await orchestrator.start()
        agents = registry.get_active_sessions(user_id)
        return {"count": len(agents), "agents": agents}

    async def _stop_agent(
        agent_id: str,
        user_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Stop a queued or running agent; the task returns to PLANNED."""

        await orchestrator.start()
        snapshot = await registry.stop_agent(agent_id, user_id)
        _emit_log(
            context,
            "warning",
            "Agent stop requested",
            extra={"agent_id": agent_id, "status": snapshot["status"]},
        )
        return snapshot

    def _session_output(
        session_id: str,
        since: int = 0,
        limit: int = 200,
        user_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Replay buffered session messages with a sequence number above ``since``."""

        channel = _session_for(session_id, user_id).channel
        history = channel.history(since)[:limit]
        return {
            "session_id": session_id,
            "messages": [{"seq": seq, **message_to_dict(message)} for seq, message in history],
            "next_since": history[-1][0] if history else since,
            "closed": channel.closed,
            "exit_code": channel.exit_code,
        }

    async def _send_input(
        session_id: str,
        data: str,
        user_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Write text to the agent's standard input.

        Raises when the session has ended or its standard input is closed.
        Orchestrated agents receive their instruction on stdin and have it
        closed afterwards, so they only accept interrupts.
        """

        _session_for(session_id, user_id)
        await sessions.send_input(session_id, data)
        _emit_log(context, "debug", "Forwarded input", extra={"session_id": session_id, "bytes": len(data)})
        return {"session_id": session_id, "accepted": True}

    async def _interrupt_agent(
        session_id: str,
        user_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Send an interrupt (SIGINT) to the agent without ending the session."""

        _session_for(session_id, user_id)
        await sessions.interrupt(session_id)
        _emit_log(context, "info", "Forwarded interrupt", extra={"session_id": session_id})
        return {"session_id": session_id, "accepted": True}

    async def _queue_status(
        project_name: str,
        worktree_name: str | None = None,
        active_only: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Report queue statistics for one worktree or every worktree of a project.

        ``active_only`` skips PAUSED and COMPLETED queues.
        """

        await orchestrator.start()
        prefix = f"{project_name}:"
        if worktree_name:
            names = [prefix + worktree_name]
        elif active_only:
            names = [name for name in await queue.list_active_queues() if name.startswith(prefix)]
        else:
            names = [name for name in queue.list_queues() if name.startswith(prefix)]

        queues = []
        for name in names:
            entries = await queue.load_queue(name)
            stats = await queue.get_stats(name)
            queues.append(
                {
                    "queue": name,
                    "worktree": name[len(prefix):],
                    "status": (await queue.get_queue_status(name)).value,
                    "stats": stats.to_dict(),
                    "entries": [
                        entry.model_dump(mode="json", exclude={"options"})
                        for entry in entries
                        if entry.is_active
                    ],
                }
            )
        return {"project": project_name, "queues": queues}

    async def _set_queue_status(
        project_name: str,
        worktree_name: str,
        status: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Pause (PAUSED), resume (ACTIVE) or close (COMPLETED) a worktree queue."""

        await orchestrator.start()
        name = f"{project_name}:{worktree_name}"
        previous = await orchestrator.set_queue_status(name, QueueState(status.upper()))
        current = await queue.get_queue_status(name)
        _emit_log(
            context,
            "info",
            "Queue status changed",
            extra={"queue": name, "previous": previous.value, "status": current.value},
        )
        return {
            "queue": name,
            "worktree": worktree_name,
            "previous_status": previous.value,
            "status": current.value,
            "stats": (await queue.get_stats(name)).to_dict(),
        }

    async def _list_worktrees(
        project_name: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        project = projects.get(project_name)
        items = await worktrees.list_worktrees(project.repo_path)
        return {"project": project_name, "worktrees": [item.to_dict() for item in items]}

    tool_start = server.tool(
        name="start_work",
        description=(
            "Start an autonomous agent on a PLANNED task. Creates or reuses the task's git "
            "worktree, queues behind other work on that worktree, and returns immediately "
            "with status QUEUED or RUNNING."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "The agent runs unattended with write access to the task worktree",
            }
        },
    )(_start_work)

    tool_status = server.tool(
        name="agent_status",
        description="Fetch status, progress estimate and result for an agent by agent, session or execution id.",
    )(_agent_status)

    tool_active = server.tool(
        name="active_sessions",
        description="List queued and running agents, optionally for one user.",
    )(_active_sessions)

    tool_stop = server.tool(
        name="stop_agent",
        description="Stop a queued or running agent and return its task to PLANNED.",
    )(_stop_agent)

    tool_output = server.tool(
        name="session_output",
        description="Replay buffered output, error and close messages of an agent session.",
    )(_session_output)

    tool_input = server.tool(
        name="send_input",
        description="Send text to a running agent session's standard input.",
    )(_send_input)

    tool_interrupt = server.tool(
        name="interrupt_agent",
        description="Interrupt a running agent session without terminating it.",
    )(_interrupt_agent)

    tool_queue = server.tool(
        name="queue_status",
        description="Show per-worktree queue statistics and waiting entries for a project.",
    )(_queue_status)

    tool_queue_state = server.tool(
        name="set_queue_status",
        description=(
            "Pause or resume a worktree queue. A PAUSED queue keeps accepting work but "
            "starts nothing new; setting it ACTIVE again starts the next waiting task."
        ),
    )(_set_queue_status)

    tool_worktrees = server.tool(
        name="list_worktrees",
        description="List git worktrees of a configured project repository.",
    )(_list_worktrees)

    return ToolHandles(
        start_work=tool_start,
        agent_status=tool_status,
        active_sessions=tool_active,
        stop_agent=tool_stop,
        session_output=tool_output,
        send_input=tool_input,
        interrupt_agent=tool_interrupt,
        queue_status=tool_queue,
        set_queue_status=tool_queue_state,
        list_worktrees=tool_worktrees,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when one is attached to the request."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
