"""FastMCP server bootstrap for Taskpilot."""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import TaskpilotSettings, get_settings
from .orchestrator import ExecutionOrchestrator
from .process import ProcessRunner
from .profiles import ProfileLoadError, ProfileLoader
from .queue import WorktreeQueueService
from .registry import AgentRegistry
from .sessions import SessionManager
from .tasks import ProjectCatalog, ProjectResolver, TaskStore, YamlTaskStore
from .tools import register_tools
from .worktrees import WorktreeManager


def configure_logging(level: str) -> None:
    """Configure root logging for the Taskpilot server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[TaskpilotSettings] = None,
    runner: ProcessRunner | None = None,
    task_store: TaskStore | None = None,
    projects: ProjectResolver | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server and wire the orchestration services."""

    settings = settings or get_settings()
    runner = runner or ProcessRunner()

    profile_loader = ProfileLoader(settings.profile_paths, default_profile=settings.default_profile)
    task_store = task_store or YamlTaskStore(settings.tasks_dir)
    projects = projects or ProjectCatalog(settings.projects_file)

    worktrees = WorktreeManager(runner)
    queue = WorktreeQueueService(settings.state_dir)
    sessions = SessionManager(
        runner,
        command=settings.agent_command,
        args=settings.agent_args,
        idle_timeout=settings.idle_timeout_seconds,
    )
    orchestrator = ExecutionOrchestrator(
        task_store=task_store,
        projects=projects,
        worktrees=worktrees,
        queue=queue,
        sessions=sessions,
        profiles=profile_loader,
        state_dir=settings.state_dir,
        completion_status=settings.completion_status,
        max_attempts=settings.max_attempts,
        progress_poll_seconds=settings.progress_poll_seconds,
        task_timeout=settings.task_timeout_seconds,
    )
    registry = AgentRegistry(orchestrator)

    server = FastMCP(
        name="Taskpilot MCP",
        version=__version__,
        instructions=(
            "Taskpilot runs autonomous coding agents against planned tasks. Each task gets "
            "its own git worktree; work on the same worktree is queued. Use start_work to "
            "begin, agent_status and session_output to observe, and stop_agent to cancel."
        ),
    )

    handles = register_tools(
        server,
        registry=registry,
        orchestrator=orchestrator,
        worktrees=worktrees,
        projects=projects,
    )

    @server.resource(
        "resource://taskpilot/status",
        name="taskpilot_status",
        title="Taskpilot MCP Status",
        description="Current executions, agent sessions and worktree queues.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    async def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        try:
            profile_ids = sorted(profile_loader.load_all())
            profile_error: str | None = None
        except ProfileLoadError as exc:
            profile_ids = []
            profile_error = str(exc)

        executions = orchestrator.list_executions(active_only=True)
        status_counts: dict[str, int] = {}
        for execution in executions:
            status_counts[execution.status.value] = status_counts.get(execution.status.value, 0) + 1

        queues = []
        for name in queue.list_queues():
            stats = await queue.get_stats(name)
            status = await queue.get_queue_status(name)
            queues.append({"queue": name, "status": status.value, **stats.to_dict()})

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "agent": {"command": settings.agent_command, "args": list(settings.agent_args)},
            "profiles": {"count": len(profile_ids), "ids": profile_ids, "error": profile_error},
            "executions": {
                "active": len(executions),
                "status_counts": status_counts,
                "recent": [execution.snapshot() for execution in executions[-5:]],
            },
            "sessions": [session.snapshot() for session in sessions.list_sessions()],
            "queues": queues,
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "profile_loader", profile_loader)
    setattr(server, "orchestrator", orchestrator)
    setattr(server, "registry", registry)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Taskpilot MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Taskpilot MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "agent_command": settings.agent_command,
            "state_dir": str(settings.state_dir),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
