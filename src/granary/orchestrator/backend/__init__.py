"""Runner backend implementations."""

from granary.orchestrator.backend.base import RunnerBackend, RunnerRequest, RunnerResult
from granary.orchestrator.backend.process import (
    SubprocessRunner,
    pause_process,
    pid_alive,
    resume_process,
    terminate_pid,
)

__all__ = [
    "RunnerBackend",
    "RunnerRequest",
    "RunnerResult",
    "SubprocessRunner",
    "pause_process",
    "pid_alive",
    "resume_process",
    "terminate_pid",
]
