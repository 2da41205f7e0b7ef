"""Taskpilot MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json

from taskpilot_mcp.config import TaskpilotSettings
from taskpilot_mcp.queue import WorktreeQueueService
from taskpilot_mcp.tasks import ProjectCatalog, ProjectNotFoundError
from taskpilot_mcp.worktrees import VCSCommandError, WorktreeManager


def load_settings() -> TaskpilotSettings:
    return TaskpilotSettings()


def load_queue_service(settings: TaskpilotSettings) -> WorktreeQueueService:
    return WorktreeQueueService(settings.state_dir)


async def _queue_summaries(service: WorktreeQueueService) -> list[dict]:
    summaries = []
    for name in service.list_queues():
        stats = await service.get_stats(name)
        summaries.append({"queue": name, **stats.to_dict()})
    return summaries


def cmd_queues(args: argparse.Namespace) -> None:
    service = load_queue_service(load_settings())
    summaries = asyncio.run(_queue_summaries(service))
    if args.json:
        print(json.dumps(summaries, indent=2))
        return
    if not summaries:
        print("No queues recorded")
    for summary in summaries:
        print(
            f"{summary['queue']}: queued={summary['queued']} running={summary['running']} "
            f"completed={summary['completed']} failed={summary['failed']} "
            f"cancelled={summary['cancelled']}"
        )


def cmd_queue(args: argparse.Namespace) -> None:
    service = load_queue_service(load_settings())
    entries = asyncio.run(service.load_queue(args.name))
    print(json.dumps([entry.model_dump(mode="json") for entry in entries], indent=2))


def cmd_worktrees(args: argparse.Namespace) -> None:
    settings = load_settings()
    try:
        project = ProjectCatalog(settings.projects_file).get(args.project)
    except ProjectNotFoundError as exc:
        print(str(exc))
        raise SystemExit(1)
    try:
        worktrees = asyncio.run(WorktreeManager().list_worktrees(project.repo_path))
    except VCSCommandError as exc:
        print(f"git unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps([worktree.to_dict() for worktree in worktrees], indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Taskpilot MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_queues = sub.add_parser("queues", help="Summarize every persisted worktree queue")
    p_queues.add_argument("--json", action="store_true", help="Output JSON")
    p_queues.set_defaults(func=cmd_queues)

    p_queue = sub.add_parser("queue", help="Show the entries of one queue")
    p_queue.add_argument("name", help="Queue name, formatted as <project>:<worktree>")
    p_queue.set_defaults(func=cmd_queue)

    p_worktrees = sub.add_parser("worktrees", help="List git worktrees of a configured project")
    p_worktrees.add_argument("project")
    p_worktrees.set_defaults(func=cmd_worktrees)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
