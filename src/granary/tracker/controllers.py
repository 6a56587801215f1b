"""Controllers for tracker CLI commands."""

from __future__ import annotations

import getpass
import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from granary.config import Settings
from granary.tracker.checkpoints import CheckpointManager
from granary.tracker.errors import ValidationError
from granary.tracker.leases import LeaseManager
from granary.tracker.models import (
    EventView,
    Priority,
    ProjectCreate,
    ProjectStatus,
    ProjectView,
    SessionStatus,
    SessionView,
    TaskCreate,
    TaskStatus,
    TaskView,
    parse_priority,
)
from granary.tracker.repository import GranaryRepository, task_payload
from granary.tracker.scheduler import Scheduler, Scope


@dataclass(slots=True)
class StoreCommand:
    """CLI input for commands that only need the store."""

    db_path: Path | None


@dataclass(slots=True)
class RefCommand:
    """CLI input addressing one entity by id or slug."""

    db_path: Path | None
    ref: str | None


@dataclass(slots=True)
class LinkCommand:
    """CLI input linking or unlinking two entities."""

    db_path: Path | None
    ref: str | None
    other_ref: str
    expected_version: int | None = None


@dataclass(slots=True)
class InitiativeCreateCommand:
    db_path: Path | None
    name: str
    slug: str | None
    description: str | None
    owner: str | None
    tags: tuple[str, ...]


@dataclass(slots=True)
class ProjectCreateCommand:
    db_path: Path | None
    name: str
    slug: str | None
    description: str | None
    owner: str | None
    tags: tuple[str, ...]


@dataclass(slots=True)
class ProjectUpdateCommand:
    db_path: Path | None
    ref: str
    name: str | None
    description: str | None
    owner: str | None
    status: str | None
    tags: tuple[str, ...] | None
    expected_version: int | None


@dataclass(slots=True)
class ProjectListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    project_ref: str
    title: str
    description: str | None
    priority: str
    draft: bool
    dependency_ids: tuple[str, ...]


@dataclass(slots=True)
class TaskShowCommand:
    db_path: Path | None
    task_id: str
    output_format: str = "text"


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    project_ref: str | None
    initiative_ref: str | None
    session_id: str | None
    statuses: tuple[str, ...]


@dataclass(slots=True)
class TaskUpdateCommand:
    db_path: Path | None
    task_id: str
    title: str | None
    description: str | None
    priority: str | None
    expected_version: int | None


@dataclass(slots=True)
class TaskTransitionCommand:
    """CLI input for lifecycle and lease operations on one task."""

    db_path: Path | None
    task_id: str
    owner: str | None = None
    expected_version: int | None = None
    ttl_seconds: int | None = None
    reason: str | None = None
    output: str | None = None


@dataclass(slots=True)
class ScopeCommand:
    """CLI input for scheduler queries; no explicit scope falls back to the session."""

    db_path: Path | None
    project_ref: str | None = None
    initiative_ref: str | None = None
    session_id: str | None = None
    show_all: bool = False
    output_format: str = "text"
    limit: int = 5


@dataclass(slots=True)
class SessionCreateCommand:
    db_path: Path | None
    name: str | None
    owner: str | None
    mode: str | None
    projects: tuple[str, ...] = ()


@dataclass(slots=True)
class SessionListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class SessionFocusCommand:
    db_path: Path | None
    session_id: str | None
    task_id: str | None


@dataclass(slots=True)
class CheckpointCommand:
    db_path: Path | None
    name: str
    overwrite: bool = False


@dataclass(slots=True)
class SearchCommand:
    db_path: Path | None
    query: str
    limit: int


@dataclass(slots=True)
class EventsCommand:
    db_path: Path | None
    after_id: int
    entity_id: str | None
    event_type: str | None
    limit: int
    output_format: str = "text"


@dataclass(slots=True)
class SweepCommand:
    db_path: Path | None


@dataclass(slots=True)
class TaskDepsCommand:
    db_path: Path | None
    task_id: str
    add: tuple[str, ...] = ()
    remove: tuple[str, ...] = ()
    expected_version: int | None = None


class TrackerCliController:
    """Coordinates initiative, project, task, session and checkpoint commands."""

    def init_store(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            latest = repository.latest_event_id()
        return [f"Workspace store ready: {settings.db_path} (events: {latest})"]

    # Initiatives

    def create_initiative(self, command: InitiativeCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            initiative = repository.create_initiative(
                name=command.name,
                slug=command.slug,
                description=command.description,
                owner=command.owner,
                tags=command.tags,
            )
        return [f"Initiative created: {initiative.initiative_id} ({initiative.name})"]

    def list_initiatives(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            initiatives = repository.list_initiatives()
        lines = [f"Initiatives: {len(initiatives)}"]
        for initiative in initiatives:
            lines.append(
                f"  {initiative.initiative_id} {initiative.name} "
                f"projects={len(initiative.project_ids)}",
            )
        return lines

    def show_initiative(self, command: RefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            initiative = repository.get_initiative(command.ref)
            status = repository.initiative_status(command.ref)
        return [
            f"Initiative: {initiative.initiative_id}",
            f"Name: {initiative.name}",
            f"Description: {initiative.description or '-'}",
            f"Owner: {initiative.owner or '-'}",
            f"Tags: {', '.join(initiative.tags) or '-'}",
            f"Projects: {', '.join(initiative.project_ids) or '-'}",
            f"Unblocked: {', '.join(status.unblocked_project_ids) or '-'}",
            f"Blocked: {', '.join(status.blocked_project_ids) or '-'}",
            f"Completed: {', '.join(status.completed_project_ids) or '-'}",
        ]

    def delete_initiative(self, command: RefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.delete_initiative(command.ref)
        return [f"Initiative deleted: {command.ref}"]

    def add_initiative_project(self, command: LinkCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            initiative = repository.add_project_to_initiative(command.ref, command.other_ref)
        return [
            f"Initiative {initiative.initiative_id} projects: {', '.join(initiative.project_ids)}",
        ]

    def remove_initiative_project(self, command: LinkCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            initiative = repository.remove_project_from_initiative(command.ref, command.other_ref)
        return [
            f"Initiative {initiative.initiative_id} projects: "
            f"{', '.join(initiative.project_ids) or '-'}",
        ]

    # Projects

    def create_project(self, command: ProjectCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            project = repository.create_project(
                ProjectCreate(
                    name=command.name,
                    slug=command.slug,
                    description=command.description,
                    owner=command.owner,
                    tags=list(command.tags),
                ),
            )
        return [f"Project created: {project.project_id} ({project.name})"]

    def list_projects(self, command: ProjectListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = ProjectStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            projects = repository.list_projects(status=status)
            unblocked = {
                project.project_id: repository.is_project_unblocked(project.project_id)
                for project in projects
            }
        lines = [f"Projects: {len(projects)}"]
        for project in projects:
            gate = "unblocked" if unblocked[project.project_id] else "blocked"
            lines.append(
                f"  {project.project_id} [{project.status.value}] {gate} {project.name}",
            )
        return lines

    def show_project(self, command: RefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            project = repository.get_project(command.ref)
            tasks = repository.list_tasks(project_ids=[project.project_id])
            unblocked = repository.is_project_unblocked(project.project_id)
            dependents = repository.list_project_dependents(project.project_id)
        return [
            *_project_lines(project),
            f"Unblocked: {'yes' if unblocked else 'no'}",
            f"Dependents: {', '.join(dependents) or '-'}",
            f"Tasks: {len(tasks)}",
            *(f"  {_task_line(task)}" for task in tasks),
        ]

    def update_project(self, command: ProjectUpdateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            project = repository.update_project(
                command.ref,
                name=command.name,
                description=command.description,
                owner=command.owner,
                status=ProjectStatus(command.status) if command.status else None,
                tags=command.tags,
                expected_version=command.expected_version,
            )
        return [f"Project updated: {project.project_id} version={project.version}"]

    def delete_project(self, command: RefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.delete_project(command.ref)
        return [f"Project deleted: {command.ref}"]

    def add_project_dependency(self, command: LinkCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            project = repository.add_project_dependency(
                command.ref,
                command.other_ref,
                expected_version=command.expected_version,
            )
        return [f"Project {project.project_id} depends on: {', '.join(project.dependency_ids)}"]

    def remove_project_dependency(self, command: LinkCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            project = repository.remove_project_dependency(
                command.ref,
                command.other_ref,
                expected_version=command.expected_version,
            )
        return [
            f"Project {project.project_id} depends on: {', '.join(project.dependency_ids) or '-'}",
        ]

    # Tasks

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            project = repository.get_project(command.project_ref)
            task = repository.create_task(
                TaskCreate(
                    project_id=project.project_id,
                    title=command.title,
                    description=command.description,
                    priority=_priority(command.priority),
                    draft=command.draft,
                    dependency_ids=list(command.dependency_ids),
                ),
            )
        return [f"Task created: {_task_line(task)}"]

    def show_task(self, command: TaskShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.get_task(command.task_id)
            unblocked = repository.is_task_unblocked(task.task_id)
            dependents = repository.list_task_dependents(task.task_id)
            now = repository.clock()
        if command.output_format == "json":
            payload = {**task_payload(task), "unblocked": unblocked, "dependents": dependents}
            return [json.dumps(payload, indent=2, ensure_ascii=False)]
        lease = task.active_lease(now)
        return [
            f"Task: {task.task_id}",
            f"Project: {task.project_id}",
            f"Title: {task.title}",
            f"Description: {task.description or '-'}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority.value}",
            f"Blocked reason: {task.blocked_reason or '-'}",
            (
                f"Lease: {lease.owner} until {lease.expires_at.isoformat()}"
                if lease is not None
                else "Lease: -"
            ),
            f"Dependencies: {', '.join(task.dependency_ids) or '-'}",
            f"Dependents: {', '.join(dependents) or '-'}",
            f"Unblocked: {'yes' if unblocked else 'no'}",
            f"Version: {task.version}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        statuses = [TaskStatus(value) for value in command.statuses] or None
        scope = _scope(
            ScopeCommand(
                db_path=command.db_path,
                project_ref=command.project_ref,
                initiative_ref=command.initiative_ref,
                session_id=command.session_id,
            ),
            settings=settings,
        )
        with _repository(settings) as repository:
            project_ids = Scheduler(repository).project_ids(scope)
            tasks = repository.list_tasks(project_ids=project_ids, statuses=statuses)
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def update_task(self, command: TaskUpdateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.update_task(
                command.task_id,
                title=command.title,
                description=command.description,
                priority=_priority(command.priority) if command.priority else None,
                expected_version=command.expected_version,
            )
        return [f"Task updated: {_task_line(task)}"]

    def ready_task(self, command: TaskTransitionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.ready_task(command.task_id, expected_version=command.expected_version)
        return [f"Task ready: {_task_line(task)}"]

    def claim_task(self, command: TaskTransitionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        owner = _owner(command.owner, settings)
        with _repository(settings) as repository:
            task = _leases(repository, settings).claim(
                command.task_id,
                owner=owner,
                ttl_seconds=command.ttl_seconds,
                expected_version=command.expected_version,
            )
        return _lease_lines("Task claimed", task)

    def heartbeat_task(self, command: TaskTransitionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        owner = _owner(command.owner, settings)
        with _repository(settings) as repository:
            task = _leases(repository, settings).heartbeat(
                command.task_id,
                owner=owner,
                ttl_seconds=command.ttl_seconds,
                expected_version=command.expected_version,
            )
        return _lease_lines("Lease extended", task)

    def release_task(self, command: TaskTransitionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        owner = _owner(command.owner, settings)
        with _repository(settings) as repository:
            task = _leases(repository, settings).release(
                command.task_id,
                owner=owner,
                expected_version=command.expected_version,
            )
        return [f"Task released: {_task_line(task)}"]

    def start_task(self, command: TaskTransitionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        owner = _owner(command.owner, settings)
        with _repository(settings) as repository:
            task = repository.start_task(
                command.task_id,
                owner=owner,
                ttl_seconds=command.ttl_seconds or settings.lease.ttl_seconds,
                expected_version=command.expected_version,
            )
        return _lease_lines("Task started", task)

    def done_task(self, command: TaskTransitionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        owner = _owner(command.owner, settings)
        with _repository(settings) as repository:
            task = repository.done_task(
                command.task_id,
                owner=owner,
                output=command.output,
                expected_version=command.expected_version,
            )
            dependents = repository.list_task_dependents(task.task_id)
            unblocked = [dep for dep in dependents if repository.is_task_unblocked(dep)]
        lines = [f"Task done: {_task_line(task)}"]
        if unblocked:
            lines.append(f"Unblocked: {', '.join(unblocked)}")
        return lines

    def block_task(self, command: TaskTransitionCommand) -> list[str]:
        if not command.reason:
            raise ValidationError("A reason is required to block a task")
        settings = Settings.from_env(db_path=command.db_path)
        owner = _owner(command.owner, settings)
        with _repository(settings) as repository:
            task = repository.block_task(
                command.task_id,
                reason=command.reason,
                owner=owner,
                expected_version=command.expected_version,
            )
        return [f"Task blocked: {_task_line(task)}"]

    def unblock_task(self, command: TaskTransitionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.unblock_task(
                command.task_id,
                expected_version=command.expected_version,
            )
        return [f"Task unblocked: {_task_line(task)}"]

    def reopen_task(self, command: TaskTransitionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.reopen_task(
                command.task_id,
                expected_version=command.expected_version,
            )
        return [f"Task reopened: {_task_line(task)}"]

    def task_deps(self, command: TaskDepsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            expected = command.expected_version
            for depends_on in command.add:
                task = repository.add_task_dependency(
                    command.task_id,
                    depends_on,
                    expected_version=expected,
                )
                expected = None if expected is None else task.version
            for depends_on in command.remove:
                task = repository.remove_task_dependency(
                    command.task_id,
                    depends_on,
                    expected_version=expected,
                )
                expected = None if expected is None else task.version
            task = repository.get_task(command.task_id)
            statuses = repository.task_statuses(task.dependency_ids)
            unblocked = repository.is_task_unblocked(task.task_id)
        lines = [f"Dependencies of {task.task_id}: {len(task.dependency_ids)}"]
        for dep in task.dependency_ids:
            status = statuses.get(dep)
            lines.append(f"  {dep} [{status.value if status else 'missing'}]")
        lines.append(f"Unblocked: {'yes' if unblocked else 'no'}")
        return lines

    def sweep_leases(self, command: SweepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            swept = _leases(repository, settings).sweep_expired_leases()
        lines = [f"Expired leases cleared: {len(swept)}"]
        lines.extend(f"  {_task_line(task)}" for task in swept)
        return lines

    # Scheduler

    def next_task(self, command: ScopeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        scope = _scope(command, settings=settings)
        with _repository(settings) as repository:
            scheduler = Scheduler(repository)
            tasks = scheduler.next_all(scope)
        if not command.show_all:
            tasks = tasks[:1]
        if command.output_format == "json":
            payload = [task_payload(task) for task in tasks]
            return [json.dumps(payload, indent=2, ensure_ascii=False)]
        if not tasks:
            return [f"No actionable tasks in scope {scope.label}"]
        return [_task_line(task) for task in tasks]

    def summary(self, command: ScopeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        scope = _scope(command, settings=settings)
        with _repository(settings) as repository:
            summary = Scheduler(repository).summary(scope, next_limit=command.limit)
        lines = [
            f"Scope: {summary.scope_label}",
            f"Tasks: {summary.total}",
            f"By status: {_counts(summary.by_status)}",
            f"By priority: {_counts(summary.by_priority)}",
            f"Blocked: {len(summary.blocked)}",
        ]
        lines.extend(f"  {item.task_id} {item.title}: {item.reason}" for item in summary.blocked)
        lines.append(f"Next actions: {len(summary.next_actions)}")
        lines.extend(f"  {_task_line(task)}" for task in summary.next_actions)
        return lines

    # Sessions

    def create_session(self, command: SessionCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            session = repository.create_session(
                name=command.name,
                owner=command.owner,
                mode=command.mode,
            )
            for project_ref in command.projects:
                session = repository.attach_project(session.session_id, project_ref)
        return [
            f"Session created: {session.session_id}",
            f"export GRANARY_SESSION={session.session_id}",
        ]

    def show_session(self, command: RefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            session = repository.get_session(_session_id(command.ref, settings))
        return _session_lines(session)

    def list_sessions(self, command: SessionListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = SessionStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            sessions = repository.list_sessions(status=status)
        lines = [f"Sessions: {len(sessions)}"]
        for session in sessions:
            lines.append(
                f"  {session.session_id} [{session.status.value}] {session.name or '-'} "
                f"projects={len(session.project_ids)}",
            )
        return lines

    def close_session(self, command: RefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            session = repository.close_session(_session_id(command.ref, settings))
        return [f"Session closed: {session.session_id}"]

    def attach_session_project(self, command: LinkCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            session = repository.attach_project(
                _session_id(command.ref, settings),
                command.other_ref,
            )
        return [f"Session {session.session_id} projects: {', '.join(session.project_ids)}"]

    def detach_session_project(self, command: LinkCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            session = repository.detach_project(
                _session_id(command.ref, settings),
                command.other_ref,
            )
        return [
            f"Session {session.session_id} projects: {', '.join(session.project_ids) or '-'}",
        ]

    def focus_session(self, command: SessionFocusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            session = repository.focus_task(
                _session_id(command.session_id, settings),
                command.task_id,
            )
        return [f"Session {session.session_id} focus: {session.focus_task_id or '-'}"]

    # Checkpoints

    def create_checkpoint(self, command: CheckpointCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            checkpoint = CheckpointManager(repository).create(
                command.name,
                overwrite=command.overwrite,
            )
        return [f"Checkpoint created: {checkpoint.name} ({_row_counts(checkpoint.row_counts)})"]

    def restore_checkpoint(self, command: CheckpointCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            checkpoint = CheckpointManager(repository).restore(command.name)
        return [f"Checkpoint restored: {checkpoint.name} ({_row_counts(checkpoint.row_counts)})"]

    def list_checkpoints(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            checkpoints = CheckpointManager(repository).list()
        lines = [f"Checkpoints: {len(checkpoints)}"]
        for checkpoint in checkpoints:
            lines.append(
                f"  {checkpoint.name} {checkpoint.created_at.isoformat()} "
                f"({_row_counts(checkpoint.row_counts)})",
            )
        return lines

    def prune_checkpoint(self, command: CheckpointCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            CheckpointManager(repository).prune(command.name)
        return [f"Checkpoint deleted: {command.name}"]

    # Search and events

    def search(self, command: SearchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            hits = repository.search(command.query, limit=command.limit)
        lines = [f"Matches: {len(hits)}"]
        lines.extend(f"  {hit.entity_type} {hit.entity_id} {hit.title}" for hit in hits)
        return lines

    def list_events(self, command: EventsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            events = repository.list_events(
                after_id=command.after_id,
                entity_id=command.entity_id,
                event_type=command.event_type,
                limit=command.limit,
            )
        if command.output_format == "json":
            return [json.dumps(_event_dict(event), ensure_ascii=False) for event in events]
        return [
            f"{event.event_id} {event.created_at.isoformat()} {event.event_type} "
            f"{event.entity_id} seq={event.seq}"
            for event in events
        ]


def _priority(value: str) -> Priority:
    try:
        return parse_priority(value)
    except ValueError as error:
        raise ValidationError(f"Invalid priority {value!r}; expected P0..P3") from error


def _owner(owner: str | None, settings: Settings) -> str:
    return owner or settings.session_id or getpass.getuser()


def _session_id(value: str | None, settings: Settings) -> str:
    session_id = value or settings.session_id
    if not session_id:
        raise ValidationError("No session given and GRANARY_SESSION is not set")
    return session_id


def _scope(command: ScopeCommand, *, settings: Settings) -> Scope:
    explicit = [
        scope
        for scope in (
            Scope.project(command.project_ref) if command.project_ref else None,
            Scope.initiative(command.initiative_ref) if command.initiative_ref else None,
            Scope.session(command.session_id) if command.session_id else None,
        )
        if scope is not None
    ]
    if len(explicit) > 1:
        raise ValidationError("Use only one of --project, --initiative and --session")
    if explicit:
        return explicit[0]
    if settings.session_id:
        return Scope.session(settings.session_id)
    return Scope()


def _leases(repository: GranaryRepository, settings: Settings) -> LeaseManager:
    return LeaseManager(repository, default_ttl_seconds=settings.lease.ttl_seconds)


def _task_line(task: TaskView) -> str:
    return f"{task.task_id} [{task.status.value}] {task.priority.value} {task.title}"


def _lease_lines(prefix: str, task: TaskView) -> list[str]:
    lines = [f"{prefix}: {_task_line(task)}"]
    if task.lease is not None:
        lines.append(
            f"Lease: owner={task.lease.owner} expires_at={task.lease.expires_at.isoformat()} "
            f"version={task.version}",
        )
    return lines


def _project_lines(project: ProjectView) -> list[str]:
    return [
        f"Project: {project.project_id}",
        f"Name: {project.name}",
        f"Description: {project.description or '-'}",
        f"Owner: {project.owner or '-'}",
        f"Status: {project.status.value}",
        f"Tags: {', '.join(project.tags) or '-'}",
        f"Depends on: {', '.join(project.dependency_ids) or '-'}",
        f"Version: {project.version}",
    ]


def _session_lines(session: SessionView) -> list[str]:
    return [
        f"Session: {session.session_id}",
        f"Name: {session.name or '-'}",
        f"Owner: {session.owner or '-'}",
        f"Mode: {session.mode or '-'}",
        f"Status: {session.status.value}",
        f"Focus: {session.focus_task_id or '-'}",
        f"Projects: {', '.join(session.project_ids) or '-'}",
    ]


def _counts(counts: dict[str, int], *, empty: str = "-") -> str:
    return " ".join(f"{key}={value}" for key, value in sorted(counts.items())) or empty


def _row_counts(counts: dict[str, int]) -> str:
    return _counts(counts, empty="empty")


def _event_dict(event: EventView) -> dict[str, object]:
    return {
        "id": event.event_id,
        "type": event.event_type,
        "entity_type": event.entity_type,
        "entity_id": event.entity_id,
        "seq": event.seq,
        "created_at": event.created_at.isoformat(),
        "payload": event.payload,
    }


@contextmanager
def _repository(settings: Settings) -> Iterator[GranaryRepository]:
    repository = GranaryRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
