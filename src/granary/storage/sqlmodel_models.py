"""SQLModel ORM tables for the workspace and global stores."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class Initiative(SQLModel, table=True):
    __tablename__ = "initiatives"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    slug: str = Field(index=True)
    name: str
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    owner: str | None = None
    status: str = Field(default="active", index=True)
    tags: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    version: int = 1


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    slug: str = Field(index=True)
    name: str
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    owner: str | None = None
    status: str = Field(default="active", index=True)
    tags: str | None = None
    next_task_number: int = 1
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    version: int = 1


class ProjectDependency(SQLModel, table=True):
    __tablename__ = "project_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "project_id != depends_on_project_id",
            name="ck_project_dependencies_no_self",
        ),
    )

    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.id", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        ),
    )
    depends_on_project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.id", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        ),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class InitiativeProject(SQLModel, table=True):
    __tablename__ = "initiative_projects"  # type: ignore[bad-override]

    initiative_id: str = Field(
        sa_column=Column(
            ForeignKey("initiatives.id", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        ),
    )
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.id", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        ),
    )
    added_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_number: int
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: str = Field(default="todo", index=True)
    priority: str = Field(default="P2", index=True)
    blocked_reason: str | None = None
    claim_owner: str | None = None
    claim_claimed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    claim_lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    version: int = 1


class TaskDependency(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint(
            "task_id != depends_on_task_id",
            name="ck_task_dependencies_no_self",
        ),
    )

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.id", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        ),
    )
    depends_on_task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.id", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        ),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkSession(SQLModel, table=True):
    __tablename__ = "sessions"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    name: str | None = None
    owner: str | None = None
    mode: str | None = None
    status: str = Field(default="open", index=True)
    focus_task_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    closed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    version: int = 1


class SessionProject(SQLModel, table=True):
    __tablename__ = "session_projects"  # type: ignore[bad-override]

    session_id: str = Field(
        sa_column=Column(
            ForeignKey("sessions.id", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        ),
    )
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.id", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        ),
    )
    added_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Checkpoint(SQLModel, table=True):
    __tablename__ = "checkpoints"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    name: str = Field(sa_column=Column(Text, nullable=False, unique=True))
    snapshot_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Event(SQLModel, table=True):
    __tablename__ = "events"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "entity_type",
            "entity_id",
            "seq",
            name="uq_events_entity_seq",
        ),
        Index("ix_events_entity", "entity_type", "entity_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    event_type: str = Field(index=True)
    entity_type: str
    entity_id: str
    seq: int
    payload_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Worker(SQLModel, table=True):
    __tablename__ = "workers"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    runner_name: str | None = None
    command: str
    args_json: str = Field(sa_column=Column(Text, nullable=False))
    env_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    event_type: str
    filters_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    concurrency: int = 1
    max_attempts: int = 3
    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 300.0
    instance_path: str
    status: str = Field(default="starting", index=True)
    error_message: str | None = None
    stop_runs: bool = False
    detached: bool = False
    pid: int | None = None
    last_event_id: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    stopped_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class Run(SQLModel, table=True):
    __tablename__ = "runs"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    worker_id: str = Field(
        sa_column=Column(
            ForeignKey("workers.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_id: int
    event_type: str
    entity_id: str
    command: str
    args_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(default="pending", index=True)
    exit_code: int | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    attempt: int = 0
    max_attempts: int = 3
    next_retry_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    pid: int | None = None
    log_path: str | None = None
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


SNAPSHOT_TABLES: tuple[type[SQLModel], ...] = (
    Initiative,
    Project,
    ProjectDependency,
    InitiativeProject,
    Task,
    TaskDependency,
    WorkSession,
    SessionProject,
)
"""Tables captured by a checkpoint, in insert order (parents first)."""
