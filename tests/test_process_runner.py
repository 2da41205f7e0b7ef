from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import pytest

from taskpilot_mcp.process import (
    FakeProcessRunner,
    ProcessResult,
    ProcessRunner,
    ProcessSpawnError,
    ProcessSpec,
    ProcessTimeoutError,
    flag_env,
    sanitize_environment,
)


def _script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "agent.sh"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


def test_runner_collects_output(tmp_path: Path) -> None:
    script = _script(tmp_path, 'echo "hello $TASKPILOT_TASK_ID"\necho oops >&2\nexit 3\n')
    spec = ProcessSpec(command=str(script), env={"TASKPILOT_TASK_ID": "t-1"}, pipe_stdin=False)

    result = asyncio.run(ProcessRunner().run(spec))

    assert result.returncode == 3
    assert not result.ok
    assert result.stdout.strip() == "hello t-1"
    assert result.stderr.strip() == "oops"


def test_runner_runs_in_working_directory(tmp_path: Path) -> None:
    script = _script(tmp_path, "pwd\n")
    workdir = tmp_path / "work"
    workdir.mkdir()

    result = asyncio.run(ProcessRunner().run(ProcessSpec(command=str(script), cwd=workdir)))

    assert Path(result.stdout.strip()).resolve() == workdir.resolve()


def test_runner_streams_stdin(tmp_path: Path) -> None:
    script = _script(tmp_path, "cat\n")

    async def scenario() -> tuple[int, bytes]:
        handle = await ProcessRunner().start(ProcessSpec(command=str(script)))
        await handle.write(b"instruction\n")
        await handle.close_stdin()
        output = await handle.stdout.read()
        return await handle.wait(), output

    code, output = asyncio.run(scenario())

    assert code == 0
    assert output == b"instruction\n"


def test_runner_times_out(tmp_path: Path) -> None:
    script = _script(tmp_path, "sleep 5\n")

    with pytest.raises(ProcessTimeoutError):
        asyncio.run(ProcessRunner().run(ProcessSpec(command=str(script)), timeout=0.2))


def test_missing_executable_raises_spawn_error(tmp_path: Path) -> None:
    with pytest.raises(ProcessSpawnError):
        asyncio.run(ProcessRunner().start(ProcessSpec(command=str(tmp_path / "missing"))))
    with pytest.raises(ProcessSpawnError):
        asyncio.run(ProcessRunner().start(ProcessSpec(command="definitely-not-a-real-binary-xyz")))


def test_fake_runner_records_runs_and_results() -> None:
    fake = FakeProcessRunner(
        results=[ProcessResult(args=("git",), returncode=1, stdout="", stderr="boom")]
    )
    spec = ProcessSpec(command="git", args=("status",))

    first = asyncio.run(fake.run(spec))
    second = asyncio.run(fake.run(spec))

    assert first.stderr == "boom"
    assert second.ok
    assert fake.invocations == [("git", "status"), ("git", "status")]


def test_fake_handle_signals() -> None:
    async def scenario():
        fake = FakeProcessRunner(ignore_terminate=True)
        handle = await fake.start(ProcessSpec(command="agent"))
        handle.terminate()
        assert handle.returncode is None
        handle.kill()
        return await handle.wait(), handle.signals

    code, signals = asyncio.run(scenario())

    assert code == -signal.SIGKILL
    assert signals == [signal.SIGTERM, signal.SIGKILL]


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    env = sanitize_environment({"TASKPILOT_DRY_RUN": flag_env(True)})
    assert "PYTHONPATH" not in env
    assert env["TASKPILOT_DRY_RUN"] == "1"
    assert flag_env(False) == "0"
