"""Runner backend interface for run execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class RunnerRequest:
    """Inputs required to execute one run attempt."""

    run_id: str
    attempt: int
    command: str
    args: list[str]
    log_path: Path
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    cancel_requested: Callable[[], bool] | None = None
    on_spawn: Callable[[int], None] | None = None
    graceful_shutdown_seconds: float = 10.0


@dataclass(slots=True)
class RunnerResult:
    """Execution outcome of one attempt."""

    exit_code: int
    cancelled: bool
    log_path: Path


class RunnerBackend(Protocol):
    """Protocol implemented by runner backends."""

    def run(self, request: RunnerRequest) -> RunnerResult:
        """Run one attempt and return its outcome."""
