"""Async process runner used for agent sessions and git commands."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import os
import shutil
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

from .utils import sanitize_environment


class ProcessRunnerError(RuntimeError):
    """Base class for process runner errors."""


class ProcessSpawnError(ProcessRunnerError):
    """Raised when an executable cannot be located or started."""


class ProcessTimeoutError(ProcessRunnerError):
    """Raised when a process does not finish within its allotted time."""


@dataclass(slots=True, frozen=True)
class ProcessSpec:
    """Everything needed to launch one external process.

    ``env`` holds additions on top of the sanitized parent environment.
    ``pipe_stdin`` selects whether the caller may write to the process; when
    false the child reads from ``/dev/null``.
    """

    command: str
    args: tuple[str, ...] = ()
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    pipe_stdin: bool = True

    @property
    def argv(self) -> tuple[str, ...]:
        return (self.command, *self.args)


@dataclass(slots=True)
class ProcessResult:
    """Holds the outcome of a process that ran to completion."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessHandle(Protocol):
    """Minimal view of a running process that the session layer relies on."""

    pid: int | None
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    @property
    def returncode(self) -> int | None:
        ...

    async def write(self, data: bytes) -> None:
        ...

    async def close_stdin(self) -> None:
        ...

    def send_signal(self, sig: int) -> None:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...

    async def wait(self) -> int:
        ...

    async def communicate(self, data: bytes | None = None) -> tuple[bytes, bytes]:
        ...


class AsyncioProcessHandle:
    """ProcessHandle backed by :mod:`asyncio.subprocess`."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self.pid: int | None = process.pid
        self.stdout = process.stdout
        self.stderr = process.stderr

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def write(self, data: bytes) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            raise ProcessRunnerError("Process standard input is not available")
        stdin.write(data)
        try:
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ProcessRunnerError("Process standard input is closed") from exc

    async def close_stdin(self) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            return
        stdin.close()
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            await stdin.wait_closed()

    def send_signal(self, sig: int) -> None:
        if self._process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            self._process.send_signal(sig)

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)

    async def wait(self) -> int:
        return await self._process.wait()

    async def communicate(self, data: bytes | None = None) -> tuple[bytes, bytes]:
        return await self._process.communicate(data)


def resolve_executable(command: str) -> str:
    """Return an absolute path for ``command`` or raise :class:`ProcessSpawnError`."""

    if os.sep in command:
        candidate = Path(command)
        if candidate.exists() and candidate.is_file():
            return str(candidate)
        raise ProcessSpawnError(f"Executable not found at {candidate}")

    binary = shutil.which(command)
    if binary is None:
        raise ProcessSpawnError(f"Executable '{command}' not found on PATH")
    return binary


class ProcessRunner:
    """Launch external processes asynchronously."""

    async def start(self, spec: ProcessSpec) -> ProcessHandle:
        executable = resolve_executable(spec.command)
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *spec.args,
                stdin=asyncio.subprocess.PIPE if spec.pipe_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(spec.cwd) if spec.cwd is not None else None,
                env=sanitize_environment(spec.env),
            )
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to start '{spec.command}': {exc}") from exc
        return AsyncioProcessHandle(process)

    async def run(
        self,
        spec: ProcessSpec,
        *,
        input: bytes | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        """Run ``spec`` to completion and collect its output."""

        handle = await self.start(spec)
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(handle.communicate(input), timeout)
        except asyncio.TimeoutError as exc:
            handle.kill()
            await handle.wait()
            raise ProcessTimeoutError(
                f"'{' '.join(spec.argv)}' did not finish within {timeout}s"
            ) from exc
        return ProcessResult(
            args=spec.argv,
            returncode=handle.returncode if handle.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )


class FakeProcessHandle:
    """Test double for a running process.

    Output is pushed with :meth:`emit_stdout` / :meth:`emit_stderr` and the
    process ends with :meth:`exit`. SIGTERM and SIGKILL end the process unless
    ``ignore_terminate`` is set, in which case only SIGKILL does.
    """

    def __init__(self, spec: ProcessSpec, *, pid: int = 4242, ignore_terminate: bool = False) -> None:
        self.spec = spec
        self.pid: int | None = pid
        self.stdout: asyncio.StreamReader | None = asyncio.StreamReader()
        self.stderr: asyncio.StreamReader | None = asyncio.StreamReader()
        self.inputs: list[bytes] = []
        self.signals: list[int] = []
        self.stdin_closed = False
        self.ignore_terminate = ignore_terminate
        self._returncode: int | None = None
        self._exited = asyncio.Event()

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def emit_stdout(self, data: str | bytes) -> None:
        self.stdout.feed_data(data.encode() if isinstance(data, str) else data)

    def emit_stderr(self, data: str | bytes) -> None:
        self.stderr.feed_data(data.encode() if isinstance(data, str) else data)

    def exit(self, code: int = 0) -> None:
        if self._returncode is not None:
            return
        self._returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def write(self, data: bytes) -> None:
        if self.stdin_closed or self._returncode is not None:
            raise ProcessRunnerError("Process standard input is closed")
        self.inputs.append(data)

    async def close_stdin(self) -> None:
        self.stdin_closed = True

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        if sig == signal.SIGKILL or (sig == signal.SIGTERM and not self.ignore_terminate):
            self.exit(-sig)

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)

    async def wait(self) -> int:
        await self._exited.wait()
        return self._returncode  # type: ignore[return-value]

    async def communicate(self, data: bytes | None = None) -> tuple[bytes, bytes]:
        if data:
            self.inputs.append(data)
        await self.wait()
        return await self.stdout.read(), await self.stderr.read()


FakeScript = Callable[[FakeProcessHandle], Awaitable[None] | None]


class FakeProcessRunner(ProcessRunner):
    """Test double that records specs instead of spawning processes.

    ``script`` drives every started handle (a coroutine function is scheduled
    as a background task). ``results`` are returned in order by :meth:`run`;
    ``responder`` computes a result per spec when provided.
    """

    def __init__(
        self,
        script: FakeScript | None = None,
        *,
        results: Iterable[ProcessResult] | None = None,
        responder: Callable[[ProcessSpec], ProcessResult] | None = None,
        spawn_error: Exception | None = None,
        ignore_terminate: bool = False,
    ) -> None:
        self._script = script
        self._results = list(results or [])
        self._responder = responder
        self.spawn_error = spawn_error
        self.ignore_terminate = ignore_terminate
        self.started: list[ProcessSpec] = []
        self.handles: list[FakeProcessHandle] = []
        self.runs: list[ProcessSpec] = []
        self._script_tasks: set[asyncio.Task[Any]] = set()

    async def start(self, spec: ProcessSpec) -> FakeProcessHandle:  # type: ignore[override]
        if self.spawn_error is not None:
            raise self.spawn_error
        handle = FakeProcessHandle(
            spec, pid=1000 + len(self.handles), ignore_terminate=self.ignore_terminate
        )
        self.started.append(spec)
        self.handles.append(handle)
        if self._script is not None:
            outcome = self._script(handle)
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._script_tasks.add(task)
                task.add_done_callback(self._script_tasks.discard)
        return handle

    async def run(  # type: ignore[override]
        self,
        spec: ProcessSpec,
        *,
        input: bytes | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        self.runs.append(spec)
        if self._responder is not None:
            return self._responder(spec)
        if self._results:
            return self._results.pop(0)
        return ProcessResult(args=spec.argv, returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return [spec.argv for spec in self.runs]

