"""Caller-facing directory of orchestrated agents, scoped per user."""

from __future__ import annotations

import logging
from typing import Any

from .models import ExecutionOptions
from .orchestrator import (
    Execution,
    ExecutionNotFoundError,
    ExecutionOrchestrator,
    ExecutionRequest,
)
from .sessions import SessionNotFoundError

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Thin lookup layer over the orchestrator's executions.

    Agents are addressed by their session id once launched. An agent still
    waiting in its worktree queue has no session yet and is addressed by its
    execution id; every lookup accepts either.
    """

    def __init__(self, orchestrator: ExecutionOrchestrator) -> None:
        self._orchestrator = orchestrator

    @staticmethod
    def agent_id(execution: Execution) -> str:
        return execution.session_id or execution.execution_id

    def _lookup(self, agent_id: str, user_id: str | None) -> Execution:
        try:
            execution = self._orchestrator.get_execution(agent_id)
        except ExecutionNotFoundError as exc:
            raise SessionNotFoundError(f"Agent session {agent_id} not found") from exc
        if user_id is not None and execution.user_id != user_id:
            raise SessionNotFoundError(f"Agent session {agent_id} not found")
        return execution

    def _snapshot(self, execution: Execution) -> dict[str, Any]:
        payload = execution.snapshot()
        payload["agent_id"] = self.agent_id(execution)
        session = (
            self._orchestrator.sessions.get_session(execution.session_id, include_closed=True)
            if execution.session_id
            else None
        )
        payload["session"] = session.snapshot() if session is not None else None
        return payload

    async def start_agent(
        self,
        project_name: str,
        task_id: str,
        options: ExecutionOptions | None = None,
        user_id: str | None = None,
    ) -> str:
        execution = await self.start(project_name, task_id, options, user_id)
        return self.agent_id(execution)

    async def start(
        self,
        project_name: str,
        task_id: str,
        options: ExecutionOptions | None = None,
        user_id: str | None = None,
    ) -> Execution:
        """Start work and return the execution record behind the agent id."""

        await self._orchestrator.start()
        execution = await self._orchestrator.execute_task(
            ExecutionRequest(
                task_id=task_id,
                project_name=project_name,
                options=options or ExecutionOptions(),
                user_id=user_id,
            )
        )
        logger.info(
            "Agent registered",
            extra={"agent_id": self.agent_id(execution), "task_id": task_id, "user_id": user_id},
        )
        return execution

    async def get_agent_status(self, agent_id: str, user_id: str | None = None) -> dict[str, Any]:
        execution = self._lookup(agent_id, user_id)
        if not execution.finished:
            await self._orchestrator.refresh_progress(execution.execution_id)
        return self._snapshot(execution)

    def get_active_sessions(self, user_id: str | None = None) -> list[dict[str, Any]]:
        return [
            self._snapshot(execution)
            for execution in self._orchestrator.list_executions(active_only=True, user_id=user_id)
        ]

    async def stop_agent(self, agent_id: str, user_id: str | None = None) -> dict[str, Any]:
        execution = self._lookup(agent_id, user_id)
        await self._orchestrator.stop_execution(execution.execution_id)
        return self._snapshot(execution)


__all__ = ["AgentRegistry"]
