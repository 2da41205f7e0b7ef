"""Supervision of agent processes, one process per session."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import signal
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Sequence
from uuid import uuid4

from ..process import ProcessHandle, ProcessRunner, ProcessRunnerError, ProcessSpec
from .messages import (
    CloseMessage,
    ErrorMessage,
    InputMessage,
    OutputMessage,
    SessionChannel,
)

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 30 * 60.0
_READ_CHUNK = 4096


class SessionState(str, Enum):
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    CLOSED = "CLOSED"
    TERMINATED = "TERMINATED"
    RECLAIMED = "RECLAIMED"


class SessionError(RuntimeError):
    """Base class for session errors."""


class SessionNotFoundError(SessionError, LookupError):
    """Raised when a session id is not in the session table."""


@dataclass(slots=True)
class SessionOptions:
    working_dir: Path
    initial_input: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    close_stdin: bool = False


@dataclass(slots=True)
class AgentSession:
    session_id: str
    user_id: str | None
    working_dir: Path
    created_at: datetime
    channel: SessionChannel
    handle: ProcessHandle = field(repr=False)
    state: SessionState = SessionState.CREATED
    last_activity: float = 0.0
    last_activity_at: datetime | None = None
    exit_code: int | None = None
    idle_task: asyncio.Task[Any] | None = field(default=None, repr=False)
    inbound_task: asyncio.Task[Any] | None = field(default=None, repr=False)
    tasks: list[asyncio.Task[Any]] = field(default_factory=list, repr=False)

    @property
    def alive(self) -> bool:
        return self.state in (SessionState.CREATED, SessionState.RUNNING)

    def snapshot(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "working_dir": str(self.working_dir),
            "state": self.state.value,
            "pid": self.handle.pid,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
            "exit_code": self.exit_code,
        }


class SessionManager:
    """Owns the session table and every agent process handle.

    The table is guarded by one lock; removal happens exactly once whichever of
    process exit, explicit termination or idle reclamation gets there first.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        command: str,
        args: Sequence[str] = (),
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        terminate_grace: float = 5.0,
        drain_timeout: float = 5.0,
        history_limit: int = 1000,
        retain_closed: int = 100,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._runner = runner
        self._command = command
        self._args = tuple(args)
        self._idle_timeout = idle_timeout
        self._terminate_grace = terminate_grace
        self._drain_timeout = drain_timeout
        self._history_limit = history_limit
        self._retain_closed = retain_closed
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sessions: dict[str, AgentSession] = {}
        # Recently ended sessions, kept so their output can still be replayed.
        self._retired: OrderedDict[str, AgentSession] = OrderedDict()
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def idle_timeout(self) -> float:
        return self._idle_timeout

    def _spawn(self, coro, session: AgentSession) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        session.tasks.append(task)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _touch(self, session: AgentSession) -> None:
        session.last_activity = asyncio.get_running_loop().time()
        session.last_activity_at = self._clock()

    async def create_session(self, user_id: str | None, options: SessionOptions) -> str:
        """Spawn one agent process in ``options.working_dir`` and return its session id."""

        session_id = uuid4().hex
        env = dict(options.env)
        env.update({"TASKPILOT_SESSION_ID": session_id, "TASKPILOT_USER_ID": user_id or ""})
        spec = ProcessSpec(
            command=self._command,
            args=self._args,
            cwd=Path(options.working_dir),
            env=env,
            pipe_stdin=True,
        )
        handle = await self._runner.start(spec)

        session = AgentSession(
            session_id=session_id,
            user_id=user_id,
            working_dir=Path(options.working_dir),
            created_at=self._clock(),
            channel=SessionChannel(session_id, history_limit=self._history_limit),
            handle=handle,
        )
        self._touch(session)
        async with self._lock:
            self._sessions[session_id] = session
        session.state = SessionState.RUNNING

        pumps = [
            self._spawn(self._pump(session, handle.stdout, OutputMessage), session),
            self._spawn(self._pump(session, handle.stderr, ErrorMessage), session),
        ]
        self._spawn(self._watch_exit(session, pumps), session)
        session.inbound_task = self._spawn(self._pump_inbound(session), session)
        session.idle_task = self._spawn(self._watch_idle(session), session)

        logger.info(
            "Started agent session",
            extra={
                "session_id": session_id,
                "user_id": user_id,
                "pid": handle.pid,
                "working_dir": str(options.working_dir),
            },
        )

        try:
            if options.initial_input:
                await handle.write(options.initial_input.encode("utf-8"))
                self._touch(session)
            if options.close_stdin:
                await handle.close_stdin()
        except ProcessRunnerError as exc:
            logger.warning(
                "Could not deliver initial input",
                extra={"session_id": session_id, "error": str(exc)},
            )
        return session_id

    async def _pump(self, session: AgentSession, stream: asyncio.StreamReader | None, kind) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                self._touch(session)
                session.channel.publish(kind(text))
            if not chunk:
                return

    async def _watch_exit(self, session: AgentSession, pumps: list[asyncio.Task[Any]]) -> None:
        exit_code = await session.handle.wait()
        _, pending = await asyncio.wait(pumps, timeout=self._drain_timeout)
        for task in pending:
            task.cancel()

        session.exit_code = exit_code
        if session.alive:
            session.state = SessionState.CLOSED
        session.channel.publish(CloseMessage(exit_code=exit_code))
        removed = await self._remove(session.session_id)

        if session.inbound_task is not None:
            session.inbound_task.cancel()
        if session.idle_task is not None:
            session.idle_task.cancel()

        logger.info(
            "Agent session closed",
            extra={
                "session_id": session.session_id,
                "exit_code": exit_code,
                "state": session.state.value,
                "removed_on_exit": removed,
            },
        )

    async def _watch_idle(self, session: AgentSession) -> None:
        loop = asyncio.get_running_loop()
        while session.alive:
            remaining = session.last_activity + self._idle_timeout - loop.time()
            if remaining <= 0:
                logger.info(
                    "Reclaiming idle agent session",
                    extra={"session_id": session.session_id, "idle_timeout": self._idle_timeout},
                )
                await self._stop(session.session_id, SessionState.RECLAIMED)
                return
            await asyncio.sleep(remaining)

    async def _pump_inbound(self, session: AgentSession) -> None:
        while True:
            message = await session.channel.receive()
            try:
                if isinstance(message, InputMessage):
                    await self.send_input(session.session_id, message.data)
                else:
                    await self.interrupt(session.session_id)
            except (SessionNotFoundError, ProcessRunnerError) as exc:
                logger.warning(
                    "Dropped inbound message",
                    extra={"session_id": session.session_id, "type": message.type.value, "error": str(exc)},
                )

    def _retire(self, session: AgentSession) -> None:
        self._retired[session.session_id] = session
        while len(self._retired) > self._retain_closed:
            self._retired.popitem(last=False)

    async def _remove(self, session_id: str) -> bool:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                self._retire(session)
        return session is not None

    async def _stop(self, session_id: str, final_state: SessionState) -> bool:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                self._retire(session)
        if session is None:
            return False

        session.state = final_state
        if asyncio.current_task() is session.idle_task:
            session.idle_task = None

        handle = session.handle
        handle.terminate()
        try:
            await asyncio.wait_for(handle.wait(), self._terminate_grace)
        except asyncio.TimeoutError:
            logger.warning("Agent ignored SIGTERM; killing", extra={"session_id": session_id})
            handle.kill()
            await handle.wait()

        logger.info(
            "Agent session stopped",
            extra={"session_id": session_id, "state": final_state.value},
        )
        return True

    def _get(self, session_id: str) -> AgentSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    async def send_input(self, session_id: str, data: str) -> None:
        session = self._get(session_id)
        await session.handle.write(data.encode("utf-8"))
        self._touch(session)

    async def interrupt(self, session_id: str) -> None:
        session = self._get(session_id)
        session.handle.send_signal(signal.SIGINT)
        self._touch(session)
        logger.info("Interrupted agent session", extra={"session_id": session_id})

    async def terminate(self, session_id: str) -> None:
        """Stop the session's process and drop it from the table; safe to repeat."""

        await self._stop(session_id, SessionState.TERMINATED)

    def get_session(self, session_id: str, *, include_closed: bool = False) -> AgentSession | None:
        session = self._sessions.get(session_id)
        if session is None and include_closed:
            session = self._retired.get(session_id)
        return session

    def channel(self, session_id: str) -> SessionChannel:
        """Return the channel of a live or recently ended session."""

        session = self.get_session(session_id, include_closed=True)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session.channel

    def list_sessions(self, user_id: str | None = None) -> list[AgentSession]:
        return [
            session
            for session in self._sessions.values()
            if user_id is None or session.user_id == user_id
        ]

    async def close(self) -> None:
        """Terminate every session and wait for background work to settle."""

        for session_id in list(self._sessions):
            await self.terminate(session_id)
        if self._background:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    asyncio.gather(*self._background, return_exceptions=True),
                    self._drain_timeout,
                )


__all__ = [
    "AgentSession",
    "DEFAULT_IDLE_TIMEOUT",
    "SessionError",
    "SessionManager",
    "SessionNotFoundError",
    "SessionOptions",
    "SessionState",
]
