"""External process execution utilities."""

from .runner import (
    AsyncioProcessHandle,
    FakeProcessHandle,
    FakeProcessRunner,
    ProcessHandle,
    ProcessResult,
    ProcessRunner,
    ProcessRunnerError,
    ProcessSpawnError,
    ProcessSpec,
    ProcessTimeoutError,
)
from .utils import flag_env, sanitize_environment

__all__ = [
    "AsyncioProcessHandle",
    "FakeProcessHandle",
    "FakeProcessRunner",
    "ProcessHandle",
    "ProcessResult",
    "ProcessRunner",
    "ProcessRunnerError",
    "ProcessSpawnError",
    "ProcessSpec",
    "ProcessTimeoutError",
    "flag_env",
    "sanitize_environment",
]
