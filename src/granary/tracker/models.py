"""Domain models for projects, tasks, leases and events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    DRAFT = "draft"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"


class Priority(str, Enum):
    """Task priority; lower number is more urgent."""

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"

    @property
    def rank(self) -> int:
        return int(self.value[1:])


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class SessionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class EventType(str, Enum):
    """Lifecycle transitions recorded in the event log."""

    INITIATIVE_CREATED = "initiative.created"
    PROJECT_CREATED = "project.created"
    PROJECT_UPDATED = "project.updated"
    PROJECT_COMPLETED = "project.completed"
    PROJECT_UNBLOCKED = "project.unblocked"
    TASK_CREATED = "task.created"
    TASK_UPDATED = "task.updated"
    TASK_READY = "task.ready"
    TASK_CLAIMED = "task.claimed"
    TASK_RELEASED = "task.released"
    TASK_STARTED = "task.started"
    TASK_DONE = "task.done"
    TASK_BLOCKED = "task.blocked"
    TASK_UNBLOCKED = "task.unblocked"
    TASK_LEASE_EXPIRED = "task.lease_expired"
    DEPENDENCY_ADDED = "dependency.added"
    DEPENDENCY_REMOVED = "dependency.removed"
    CHECKPOINT_CREATED = "checkpoint.created"
    CHECKPOINT_RESTORED = "checkpoint.restored"


class EntityType(str, Enum):
    INITIATIVE = "initiative"
    PROJECT = "project"
    TASK = "task"
    CHECKPOINT = "checkpoint"


def parse_priority(value: str | Priority) -> Priority:
    """Accept ``P0``..``P3`` case-insensitively, or a bare digit."""

    if isinstance(value, Priority):
        return value
    normalized = value.strip().upper()
    if normalized.isdigit():
        normalized = f"P{normalized}"
    return Priority(normalized)


@dataclass(slots=True)
class LeaseView:
    """Claim embedded on a task."""

    owner: str
    claimed_at: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass(slots=True)
class InitiativeView:
    initiative_id: str
    slug: str
    name: str
    description: str | None
    owner: str | None
    status: str
    tags: list[str]
    project_ids: list[str]
    created_at: datetime
    updated_at: datetime
    version: int


@dataclass(slots=True)
class ProjectView:
    project_id: str
    slug: str
    name: str
    description: str | None
    owner: str | None
    status: ProjectStatus
    tags: list[str]
    dependency_ids: list[str]
    created_at: datetime
    updated_at: datetime
    version: int


@dataclass(slots=True)
class TaskView:
    """Readable task view for the CLI, the scheduler and event payloads."""

    task_id: str
    project_id: str
    task_number: int
    title: str
    description: str | None
    status: TaskStatus
    priority: Priority
    blocked_reason: str | None
    lease: LeaseView | None
    dependency_ids: list[str]
    created_at: datetime
    updated_at: datetime
    version: int

    def active_lease(self, now: datetime) -> LeaseView | None:
        if self.lease is None or not self.lease.is_active(now):
            return None
        return self.lease


@dataclass(slots=True)
class ProjectCreate:
    name: str
    slug: str | None = None
    description: str | None = None
    owner: str | None = None
    tags: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskCreate:
    project_id: str
    title: str
    description: str | None = None
    priority: Priority = Priority.P2
    draft: bool = False
    dependency_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SessionView:
    session_id: str
    name: str | None
    owner: str | None
    mode: str | None
    status: SessionStatus
    focus_task_id: str | None
    project_ids: list[str]
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None
    version: int


@dataclass(slots=True)
class CheckpointView:
    checkpoint_id: str
    name: str
    created_at: datetime
    row_counts: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class EventView:
    """Immutable entry of the event log."""

    event_id: int
    event_type: str
    entity_type: str
    entity_id: str
    seq: int
    payload: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class BlockedTask:
    task_id: str
    title: str
    reason: str


@dataclass(slots=True)
class ScopeSummary:
    """Aggregate view of the tasks in a scheduler scope."""

    scope_label: str
    total: int
    by_status: dict[str, int]
    by_priority: dict[str, int]
    blocked: list[BlockedTask]
    next_actions: list[TaskView]


@dataclass(slots=True)
class InitiativeStatus:
    initiative_id: str
    name: str
    unblocked_project_ids: list[str]
    blocked_project_ids: list[str]
    completed_project_ids: list[str]


@dataclass(slots=True)
class SearchHit:
    entity_type: str
    entity_id: str
    title: str
