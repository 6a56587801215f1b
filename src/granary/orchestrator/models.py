"""Domain models for workers and runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path


class WorkerStatus(str, Enum):
    """Worker lifecycle states."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class RunStatus(str, Enum):
    """Run retry state machine."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_WORKER_STATUSES = frozenset({WorkerStatus.STOPPED, WorkerStatus.ERROR})
LIVE_WORKER_STATUSES = frozenset({WorkerStatus.RUNNING, WorkerStatus.STOPPING})
TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED})
ACTIVE_RUN_STATUSES = frozenset({RunStatus.RUNNING, RunStatus.PAUSED})

INSTANCE_MISSING = "instance_missing"
WORKER_EXITED = "process_exited"


@dataclass(slots=True)
class WorkerCreate:
    """Input payload for registering a worker."""

    command: str
    event_type: str
    instance_path: Path
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    filters: list[str] = field(default_factory=list)
    runner_name: str | None = None
    concurrency: int = 1
    max_attempts: int = 3
    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 300.0
    last_event_id: int = 0
    detached: bool = False


@dataclass(slots=True)
class WorkerView:
    worker_id: str
    runner_name: str | None
    command: str
    args: list[str]
    env: dict[str, str]
    event_type: str
    filters: list[str]
    concurrency: int
    max_attempts: int
    retry_base_seconds: float
    retry_max_seconds: float
    instance_path: Path
    status: WorkerStatus
    error_message: str | None
    stop_runs: bool
    detached: bool
    pid: int | None
    last_event_id: int
    created_at: datetime
    updated_at: datetime
    stopped_at: datetime | None


@dataclass(slots=True)
class RunCreate:
    worker_id: str
    event_id: int
    event_type: str
    entity_id: str
    command: str
    args: list[str]
    max_attempts: int = 3


@dataclass(slots=True)
class RunView:
    """Readable run view for CLI and supervisor logic."""

    run_id: str
    worker_id: str
    event_id: int
    event_type: str
    entity_id: str
    command: str
    args: list[str]
    status: RunStatus
    exit_code: int | None
    error_message: str | None
    attempt: int
    max_attempts: int
    next_retry_at: datetime | None
    pid: int | None
    log_path: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
