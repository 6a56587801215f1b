"""SQLModel-backed entity store for initiatives, projects, tasks and events.

Every mutation opens a short transaction whose first statement is a write
(a conditional ``UPDATE ... WHERE version = :expected`` or an ``INSERT``), so
SQLite's write lock is held before any dependent read inside the same
transaction. A conditional update that matches no row is translated into
``NotFoundError`` or ``VersionConflict``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, delete, select

from granary.storage.alembic_runner import upgrade_head
from granary.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_dict,
    load_json_list,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from granary.storage.sqlmodel_models import (
    Event,
    Initiative,
    InitiativeProject,
    Project,
    ProjectDependency,
    SessionProject,
    Task,
    TaskDependency,
    WorkSession,
)
from granary.tracker.errors import (
    AlreadyExistsError,
    ConflictError,
    DependencyBlockedError,
    NotFoundError,
    SelfDependencyError,
    ValidationError,
    VersionConflict,
)
from granary.tracker.graph import DependencyGraph
from granary.tracker.models import (
    EntityType,
    EventType,
    EventView,
    InitiativeStatus,
    InitiativeView,
    LeaseView,
    Priority,
    ProjectCreate,
    ProjectStatus,
    ProjectView,
    SearchHit,
    SessionStatus,
    SessionView,
    TaskCreate,
    TaskStatus,
    TaskView,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
_MAX_ID_ATTEMPTS = 8


class GranaryRepository:
    """Entity store facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        clock: Clock = utc_now,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # Initiatives

    def create_initiative(
        self,
        *,
        name: str,
        slug: str | None = None,
        description: str | None = None,
        owner: str | None = None,
        tags: Iterable[str] = (),
    ) -> InitiativeView:
        now = self.clock()
        resolved_slug = slugify(slug or name)
        with Session(self.engine) as session:
            initiative_id = self._free_id(session, Initiative, resolved_slug)
            row = Initiative(
                id=initiative_id,
                slug=resolved_slug,
                name=name,
                description=description,
                owner=owner,
                tags=dump_json(sorted(set(tags))),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            view = _to_initiative_view(row, project_ids=[])
            record_event(
                session,
                event_type=EventType.INITIATIVE_CREATED,
                entity_type=EntityType.INITIATIVE,
                entity_id=initiative_id,
                payload=initiative_payload(view),
                now=now,
            )
            session.commit()
        logger.info("Created initiative %s", initiative_id)
        return view

    def get_initiative(self, initiative_ref: str) -> InitiativeView:
        with Session(self.engine) as session:
            row = _resolve_by_id_or_slug(session, Initiative, initiative_ref)
            return _to_initiative_view(
                row,
                project_ids=_initiative_project_ids(session, row.id),
            )

    def list_initiatives(self) -> list[InitiativeView]:
        with Session(self.engine) as session:
            rows = session.exec(select(Initiative).order_by(col(Initiative.created_at))).all()
            return [
                _to_initiative_view(row, project_ids=_initiative_project_ids(session, row.id))
                for row in rows
            ]

    def delete_initiative(self, initiative_ref: str) -> None:
        """Delete an initiative; member projects are kept."""

        initiative = self.get_initiative(initiative_ref)
        with Session(self.engine) as session:
            result = session.exec(
                delete(Initiative).where(col(Initiative.id) == initiative.initiative_id),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(f"Initiative not found: {initiative_ref}")
            session.commit()

    def add_project_to_initiative(self, initiative_ref: str, project_ref: str) -> InitiativeView:
        initiative = self.get_initiative(initiative_ref)
        project = self.get_project(project_ref)
        now = self.clock()
        with Session(self.engine) as session:
            _bump_version(
                session,
                Initiative,
                entity_id=initiative.initiative_id,
                expected_version=initiative.version,
                now=now,
            )
            if session.get(InitiativeProject, (initiative.initiative_id, project.project_id)):
                session.rollback()
                return initiative
            session.add(
                InitiativeProject(
                    initiative_id=initiative.initiative_id,
                    project_id=project.project_id,
                    added_at=to_db_datetime(now),
                ),
            )
            session.commit()
        return self.get_initiative(initiative.initiative_id)

    def remove_project_from_initiative(
        self,
        initiative_ref: str,
        project_ref: str,
    ) -> InitiativeView:
        initiative = self.get_initiative(initiative_ref)
        project = self.get_project(project_ref)
        now = self.clock()
        with Session(self.engine) as session:
            _bump_version(
                session,
                Initiative,
                entity_id=initiative.initiative_id,
                expected_version=initiative.version,
                now=now,
            )
            session.exec(
                delete(InitiativeProject).where(
                    col(InitiativeProject.initiative_id) == initiative.initiative_id,
                    col(InitiativeProject.project_id) == project.project_id,
                ),
            )
            session.commit()
        return self.get_initiative(initiative.initiative_id)

    def initiative_status(self, initiative_ref: str) -> InitiativeStatus:
        """Split member projects into completed, unblocked and blocked."""

        initiative = self.get_initiative(initiative_ref)
        completed: list[str] = []
        unblocked: list[str] = []
        blocked: list[str] = []
        with Session(self.engine) as session:
            for project_id in initiative.project_ids:
                if _project_has_tasks(session, project_id) and _project_is_complete(
                    session,
                    project_id,
                ):
                    completed.append(project_id)
                elif _project_is_unblocked(session, project_id):
                    unblocked.append(project_id)
                else:
                    blocked.append(project_id)
        return InitiativeStatus(
            initiative_id=initiative.initiative_id,
            name=initiative.name,
            unblocked_project_ids=unblocked,
            blocked_project_ids=blocked,
            completed_project_ids=completed,
        )

    # Projects

    def create_project(self, payload: ProjectCreate) -> ProjectView:
        """Create an active project with id ``<slug>-<hex4>``."""

        now = self.clock()
        slug = slugify(payload.slug or payload.name)
        with Session(self.engine) as session:
            project_id = self._free_id(session, Project, slug)
            row = Project(
                id=project_id,
                slug=slug,
                name=payload.name,
                description=payload.description,
                owner=payload.owner,
                status=ProjectStatus.ACTIVE.value,
                tags=dump_json(sorted(set(payload.tags))),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            view = _to_project_view(row, dependency_ids=[])
            record_event(
                session,
                event_type=EventType.PROJECT_CREATED,
                entity_type=EntityType.PROJECT,
                entity_id=project_id,
                payload=project_payload(view),
                now=now,
            )
            session.commit()
        logger.info("Created project %s", project_id)
        return view

    def get_project(self, project_ref: str) -> ProjectView:
        with Session(self.engine) as session:
            row = _resolve_by_id_or_slug(session, Project, project_ref)
            return _to_project_view(row, dependency_ids=_project_dependency_ids(session, row.id))

    def list_projects(self, *, status: ProjectStatus | None = None) -> list[ProjectView]:
        with Session(self.engine) as session:
            statement = select(Project).order_by(col(Project.created_at), col(Project.id))
            if status is not None:
                statement = statement.where(Project.status == status.value)
            rows = session.exec(statement).all()
            return [
                _to_project_view(row, dependency_ids=_project_dependency_ids(session, row.id))
                for row in rows
            ]

    def update_project(  # noqa: PLR0913
        self,
        project_ref: str,
        *,
        name: str | None = None,
        description: str | None = None,
        owner: str | None = None,
        status: ProjectStatus | None = None,
        tags: Iterable[str] | None = None,
        expected_version: int | None = None,
    ) -> ProjectView:
        current = self.get_project(project_ref)
        values: dict[str, Any] = {}
        if name is not None:
            values["name"] = name
        if description is not None:
            values["description"] = description
        if owner is not None:
            values["owner"] = owner
        if status is not None:
            values["status"] = status.value
        if tags is not None:
            values["tags"] = dump_json(sorted(set(tags)))
        if not values:
            raise ValidationError("Nothing to update")

        now = self.clock()
        with Session(self.engine) as session:
            _bump_version(
                session,
                Project,
                entity_id=current.project_id,
                expected_version=_expected(expected_version, current.version),
                now=now,
                values=values,
            )
            view = self._project_view_in(session, current.project_id)
            record_event(
                session,
                event_type=EventType.PROJECT_UPDATED,
                entity_type=EntityType.PROJECT,
                entity_id=current.project_id,
                payload=project_payload(view),
                now=now,
            )
            session.commit()
        return view

    def delete_project(self, project_ref: str) -> None:
        """Delete a project and, by cascade, its tasks and edges."""

        project = self.get_project(project_ref)
        with Session(self.engine) as session:
            result = session.exec(delete(Project).where(col(Project.id) == project.project_id))
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(f"Project not found: {project_ref}")
            session.commit()
        logger.info("Deleted project %s", project.project_id)

    def add_project_dependency(
        self,
        project_ref: str,
        depends_on_ref: str,
        *,
        expected_version: int | None = None,
    ) -> ProjectView:
        """Make ``project`` depend on ``depends_on``; rejects self edges and cycles."""

        subject = self.get_project(project_ref)
        target = self.get_project(depends_on_ref)
        if subject.project_id == target.project_id:
            raise SelfDependencyError(f"Project {subject.project_id} cannot depend on itself")
        if target.project_id in subject.dependency_ids:
            return subject

        now = self.clock()
        with Session(self.engine) as session:
            _bump_version(
                session,
                Project,
                entity_id=subject.project_id,
                expected_version=_expected(expected_version, subject.version),
                now=now,
            )
            graph = project_graph(session)
            try:
                graph.check_edge(subject.project_id, target.project_id)
            except ValidationError:
                session.rollback()
                raise
            session.add(
                ProjectDependency(
                    project_id=subject.project_id,
                    depends_on_project_id=target.project_id,
                    created_at=to_db_datetime(now),
                ),
            )
            view = self._project_view_in(session, subject.project_id)
            record_event(
                session,
                event_type=EventType.DEPENDENCY_ADDED,
                entity_type=EntityType.PROJECT,
                entity_id=subject.project_id,
                payload={**project_payload(view), "depends_on": target.project_id},
                now=now,
            )
            session.commit()
        return view

    def remove_project_dependency(
        self,
        project_ref: str,
        depends_on_ref: str,
        *,
        expected_version: int | None = None,
    ) -> ProjectView:
        subject = self.get_project(project_ref)
        target = self.get_project(depends_on_ref)
        if target.project_id not in subject.dependency_ids:
            return subject

        now = self.clock()
        with Session(self.engine) as session:
            _bump_version(
                session,
                Project,
                entity_id=subject.project_id,
                expected_version=_expected(expected_version, subject.version),
                now=now,
            )
            was_unblocked = _project_is_unblocked(session, subject.project_id)
            session.exec(
                delete(ProjectDependency).where(
                    col(ProjectDependency.project_id) == subject.project_id,
                    col(ProjectDependency.depends_on_project_id) == target.project_id,
                ),
            )
            view = self._project_view_in(session, subject.project_id)
            record_event(
                session,
                event_type=EventType.DEPENDENCY_REMOVED,
                entity_type=EntityType.PROJECT,
                entity_id=subject.project_id,
                payload={**project_payload(view), "depends_on": target.project_id},
                now=now,
            )
            if not was_unblocked and _project_is_unblocked(session, subject.project_id):
                record_event(
                    session,
                    event_type=EventType.PROJECT_UNBLOCKED,
                    entity_type=EntityType.PROJECT,
                    entity_id=subject.project_id,
                    payload=project_payload(view),
                    now=now,
                )
            session.commit()
        return view

    def list_project_dependents(self, project_ref: str) -> list[str]:
        project = self.get_project(project_ref)
        with Session(self.engine) as session:
            return sorted(project_graph(session).dependents(project.project_id))

    def is_project_unblocked(self, project_ref: str) -> bool:
        """True iff every dependency project has all of its tasks done."""

        project = self.get_project(project_ref)
        with Session(self.engine) as session:
            return _project_is_unblocked(session, project.project_id)

    def is_project_complete(self, project_ref: str) -> bool:
        project = self.get_project(project_ref)
        with Session(self.engine) as session:
            return _project_is_complete(session, project.project_id)

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a task numbered after its project's counter."""

        if not payload.title.strip():
            raise ValidationError("Task title must not be empty")
        project = self.get_project(payload.project_id)
        for dependency_id in payload.dependency_ids:
            self.get_task(dependency_id)

        now = self.clock()
        status = TaskStatus.DRAFT if payload.draft else TaskStatus.TODO
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Project)
                .where(col(Project.id) == project.project_id)
                .values(next_task_number=Project.next_task_number + 1),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(f"Project not found: {payload.project_id}")
            next_number = session.exec(
                select(Project.next_task_number).where(Project.id == project.project_id),
            ).one()
            task_number = next_number - 1
            task_id = f"{project.project_id}-task-{task_number}"
            session.add(
                Task(
                    id=task_id,
                    project_id=project.project_id,
                    task_number=task_number,
                    title=payload.title,
                    description=payload.description,
                    status=status.value,
                    priority=payload.priority.value,
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.flush()
            for dependency_id in dict.fromkeys(payload.dependency_ids):
                session.add(
                    TaskDependency(
                        task_id=task_id,
                        depends_on_task_id=dependency_id,
                        created_at=to_db_datetime(now),
                    ),
                )
            view = task_view_in(session, task_id)
            record_event(
                session,
                event_type=EventType.TASK_CREATED,
                entity_type=EntityType.TASK,
                entity_id=task_id,
                payload=task_payload(view),
                now=now,
            )
            session.commit()
        logger.info("Created task %s (%s)", task_id, status.value)
        return view

    def get_task(self, task_id: str) -> TaskView:
        with Session(self.engine) as session:
            return task_view_in(session, task_id)

    def list_tasks(
        self,
        *,
        project_ids: Iterable[str] | None = None,
        statuses: Iterable[TaskStatus] | None = None,
    ) -> list[TaskView]:
        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at), col(Task.id))
            if project_ids is not None:
                statement = statement.where(col(Task.project_id).in_(list(project_ids)))
            if statuses is not None:
                statement = statement.where(
                    col(Task.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(statement).all()
            dependency_map = _task_dependency_map(session, [row.id for row in rows])
            return [_to_task_view(row, dependency_map.get(row.id, [])) for row in rows]

    def task_statuses(self, task_ids: Iterable[str]) -> dict[str, TaskStatus]:
        ids = list(task_ids)
        if not ids:
            return {}
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task.id, Task.status).where(col(Task.id).in_(ids)),
            ).all()
        return {task_id: TaskStatus(status) for task_id, status in rows}

    def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        priority: Priority | None = None,
        expected_version: int | None = None,
    ) -> TaskView:
        current = self.get_task(task_id)
        values: dict[str, Any] = {}
        if title is not None:
            if not title.strip():
                raise ValidationError("Task title must not be empty")
            values["title"] = title
        if description is not None:
            values["description"] = description
        if priority is not None:
            values["priority"] = priority.value
        if not values:
            raise ValidationError("Nothing to update")
        return self._transition(
            current,
            expected_version=expected_version,
            values=values,
            event_type=EventType.TASK_UPDATED,
        )

    def ready_task(self, task_id: str, *, expected_version: int | None = None) -> TaskView:
        """Promote a draft task to ``todo``."""

        current = self.get_task(task_id)
        if current.status is not TaskStatus.DRAFT:
            raise ValidationError(
                f"Task {task_id} is {current.status.value}; only draft tasks can be made ready",
            )
        return self._transition(
            current,
            expected_version=expected_version,
            values={"status": TaskStatus.TODO.value},
            event_type=EventType.TASK_READY,
        )

    def start_task(
        self,
        task_id: str,
        *,
        owner: str,
        ttl_seconds: int,
        expected_version: int | None = None,
    ) -> TaskView:
        """Move a task to ``in_progress``, claiming it for ``owner`` when unleased."""

        current = self.get_task(task_id)
        if current.status in {TaskStatus.DRAFT, TaskStatus.DONE}:
            raise ValidationError(f"Task {task_id} is {current.status.value} and cannot start")
        if current.status is TaskStatus.BLOCKED:
            raise ValidationError(
                f"Task {task_id} is blocked: {current.blocked_reason or 'no reason given'}",
            )
        now = self.clock()
        lease = current.active_lease(now)
        if lease is not None and lease.owner != owner:
            raise ConflictError(
                f"Task {task_id} is claimed by {lease.owner} until {lease.expires_at.isoformat()}",
            )
        values: dict[str, Any] = {
            "status": TaskStatus.IN_PROGRESS.value,
            "claim_owner": owner,
            "claim_lease_expires_at": to_db_datetime(now + timedelta(seconds=ttl_seconds)),
        }
        if lease is None:
            values["claim_claimed_at"] = to_db_datetime(now)

        with Session(self.engine) as session:
            update_task_row(
                session,
                task_id=task_id,
                expected_version=_expected(expected_version, current.version),
                now=now,
                values=values,
            )
            pending = _pending_dependencies(session, task_id)
            if pending:
                session.rollback()
                raise DependencyBlockedError(
                    f"Task {task_id} is blocked by unfinished dependencies: {', '.join(pending)}",
                )
            view = task_view_in(session, task_id)
            record_event(
                session,
                event_type=EventType.TASK_STARTED,
                entity_type=EntityType.TASK,
                entity_id=task_id,
                payload=task_payload(view),
                now=now,
            )
            session.commit()
        return view

    def done_task(
        self,
        task_id: str,
        *,
        owner: str | None = None,
        output: str | None = None,
        expected_version: int | None = None,
    ) -> TaskView:
        """Complete a task, release its lease and announce what it unblocked."""

        current = self.get_task(task_id)
        if current.status in {TaskStatus.DRAFT, TaskStatus.DONE}:
            raise ValidationError(
                f"Task {task_id} is {current.status.value} and cannot be completed",
            )
        now = self.clock()
        _check_holder(current, owner, expected_version, now=now)

        with Session(self.engine) as session:
            update_task_row(
                session,
                task_id=task_id,
                expected_version=_expected(expected_version, current.version),
                now=now,
                values={
                    "status": TaskStatus.DONE.value,
                    "blocked_reason": None,
                    **_CLEARED_LEASE,
                },
            )
            view = task_view_in(session, task_id)
            payload = task_payload(view)
            if output is not None:
                payload["output"] = output
            record_event(
                session,
                event_type=EventType.TASK_DONE,
                entity_type=EntityType.TASK,
                entity_id=task_id,
                payload=payload,
                now=now,
            )
            self._announce_downstream(session, view, now=now)
            session.commit()
        logger.info("Task %s done", task_id)
        return view

    def reopen_task(self, task_id: str, *, expected_version: int | None = None) -> TaskView:
        """Move a done task back to ``todo``."""

        current = self.get_task(task_id)
        if current.status is not TaskStatus.DONE:
            raise ValidationError(f"Task {task_id} is {current.status.value}, not done")
        return self._transition(
            current,
            expected_version=expected_version,
            values={"status": TaskStatus.TODO.value},
            event_type=EventType.TASK_UPDATED,
        )

    def block_task(
        self,
        task_id: str,
        *,
        reason: str,
        owner: str | None = None,
        expected_version: int | None = None,
    ) -> TaskView:
        current = self.get_task(task_id)
        if current.status in {TaskStatus.DRAFT, TaskStatus.DONE}:
            raise ValidationError(f"Task {task_id} is {current.status.value} and cannot be blocked")
        _check_holder(current, owner, expected_version, now=self.clock())
        return self._transition(
            current,
            expected_version=expected_version,
            values={"status": TaskStatus.BLOCKED.value, "blocked_reason": reason, **_CLEARED_LEASE},
            event_type=EventType.TASK_BLOCKED,
        )

    def unblock_task(self, task_id: str, *, expected_version: int | None = None) -> TaskView:
        current = self.get_task(task_id)
        if current.status is not TaskStatus.BLOCKED:
            raise ValidationError(f"Task {task_id} is {current.status.value}, not blocked")
        return self._transition(
            current,
            expected_version=expected_version,
            values={"status": TaskStatus.TODO.value, "blocked_reason": None},
            event_type=EventType.TASK_UNBLOCKED,
        )

    def add_task_dependency(
        self,
        task_id: str,
        depends_on_id: str,
        *,
        expected_version: int | None = None,
    ) -> TaskView:
        """Make ``task_id`` depend on ``depends_on_id``; rejects self edges and cycles."""

        if task_id == depends_on_id:
            raise SelfDependencyError(f"Task {task_id} cannot depend on itself")
        current = self.get_task(task_id)
        self.get_task(depends_on_id)
        if depends_on_id in current.dependency_ids:
            return current

        now = self.clock()
        with Session(self.engine) as session:
            update_task_row(
                session,
                task_id=task_id,
                expected_version=_expected(expected_version, current.version),
                now=now,
            )
            graph = task_graph(session)
            try:
                graph.check_edge(task_id, depends_on_id)
            except ValidationError:
                session.rollback()
                raise
            session.add(
                TaskDependency(
                    task_id=task_id,
                    depends_on_task_id=depends_on_id,
                    created_at=to_db_datetime(now),
                ),
            )
            view = task_view_in(session, task_id)
            record_event(
                session,
                event_type=EventType.DEPENDENCY_ADDED,
                entity_type=EntityType.TASK,
                entity_id=task_id,
                payload={**task_payload(view), "depends_on": depends_on_id},
                now=now,
            )
            session.commit()
        return view

    def remove_task_dependency(
        self,
        task_id: str,
        depends_on_id: str,
        *,
        expected_version: int | None = None,
    ) -> TaskView:
        current = self.get_task(task_id)
        if depends_on_id not in current.dependency_ids:
            return current

        now = self.clock()
        with Session(self.engine) as session:
            update_task_row(
                session,
                task_id=task_id,
                expected_version=_expected(expected_version, current.version),
                now=now,
            )
            was_unblocked = not _pending_dependencies(session, task_id)
            session.exec(
                delete(TaskDependency).where(
                    col(TaskDependency.task_id) == task_id,
                    col(TaskDependency.depends_on_task_id) == depends_on_id,
                ),
            )
            view = task_view_in(session, task_id)
            record_event(
                session,
                event_type=EventType.DEPENDENCY_REMOVED,
                entity_type=EntityType.TASK,
                entity_id=task_id,
                payload={**task_payload(view), "depends_on": depends_on_id},
                now=now,
            )
            if (
                not was_unblocked
                and view.status in _SCHEDULABLE_STATUSES
                and not _pending_dependencies(session, task_id)
            ):
                record_event(
                    session,
                    event_type=EventType.TASK_UNBLOCKED,
                    entity_type=EntityType.TASK,
                    entity_id=task_id,
                    payload=task_payload(view),
                    now=now,
                )
            session.commit()
        return view

    def list_task_dependents(self, task_id: str) -> list[str]:
        self.get_task(task_id)
        with Session(self.engine) as session:
            return sorted(task_graph(session).dependents(task_id))

    def is_task_unblocked(self, task_id: str) -> bool:
        """True iff every dependency task is done."""

        self.get_task(task_id)
        with Session(self.engine) as session:
            return not _pending_dependencies(session, task_id)

    # Sessions

    def create_session(
        self,
        *,
        name: str | None = None,
        owner: str | None = None,
        mode: str | None = None,
    ) -> SessionView:
        now = self.clock()
        session_id = f"sess-{now.strftime('%Y%m%d')}-{uuid4().hex[:6]}"
        with Session(self.engine) as session:
            session.add(
                WorkSession(
                    id=session_id,
                    name=name,
                    owner=owner,
                    mode=mode,
                    status=SessionStatus.OPEN.value,
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> SessionView:
        with Session(self.engine) as session:
            row = session.get(WorkSession, session_id)
            if row is None:
                raise NotFoundError(f"Session not found: {session_id}")
            project_ids = session.exec(
                select(SessionProject.project_id)
                .where(SessionProject.session_id == session_id)
                .order_by(col(SessionProject.added_at), col(SessionProject.project_id)),
            ).all()
            return _to_session_view(row, project_ids=list(project_ids))

    def list_sessions(self, *, status: SessionStatus | None = None) -> list[SessionView]:
        with Session(self.engine) as session:
            statement = select(WorkSession.id).order_by(col(WorkSession.created_at))
            if status is not None:
                statement = statement.where(WorkSession.status == status.value)
            ids = session.exec(statement).all()
        return [self.get_session(session_id) for session_id in ids]

    def close_session(self, session_id: str) -> SessionView:
        current = self.get_session(session_id)
        if current.status is SessionStatus.CLOSED:
            return current
        now = self.clock()
        with Session(self.engine) as session:
            _bump_version(
                session,
                WorkSession,
                entity_id=session_id,
                expected_version=current.version,
                now=now,
                values={"status": SessionStatus.CLOSED.value, "closed_at": to_db_datetime(now)},
            )
            session.commit()
        return self.get_session(session_id)

    def attach_project(self, session_id: str, project_ref: str) -> SessionView:
        current = self._open_session(session_id)
        project = self.get_project(project_ref)
        now = self.clock()
        with Session(self.engine) as session:
            _bump_version(
                session,
                WorkSession,
                entity_id=session_id,
                expected_version=current.version,
                now=now,
            )
            if session.get(SessionProject, (session_id, project.project_id)) is None:
                session.add(
                    SessionProject(
                        session_id=session_id,
                        project_id=project.project_id,
                        added_at=to_db_datetime(now),
                    ),
                )
            session.commit()
        return self.get_session(session_id)

    def detach_project(self, session_id: str, project_ref: str) -> SessionView:
        current = self._open_session(session_id)
        project = self.get_project(project_ref)
        now = self.clock()
        with Session(self.engine) as session:
            _bump_version(
                session,
                WorkSession,
                entity_id=session_id,
                expected_version=current.version,
                now=now,
            )
            session.exec(
                delete(SessionProject).where(
                    col(SessionProject.session_id) == session_id,
                    col(SessionProject.project_id) == project.project_id,
                ),
            )
            session.commit()
        return self.get_session(session_id)

    def focus_task(self, session_id: str, task_id: str | None) -> SessionView:
        current = self._open_session(session_id)
        if task_id is not None:
            self.get_task(task_id)
        now = self.clock()
        with Session(self.engine) as session:
            _bump_version(
                session,
                WorkSession,
                entity_id=session_id,
                expected_version=current.version,
                now=now,
                values={"focus_task_id": task_id},
            )
            session.commit()
        return self.get_session(session_id)

    # Search and events

    def search(self, query: str, *, limit: int = 50) -> list[SearchHit]:
        """Case-insensitive substring match over project and task text."""

        needle = query.strip().lower()
        if not needle:
            raise ValidationError("Search query must not be empty")
        pattern = f"%{needle}%"
        hits: list[SearchHit] = []
        with Session(self.engine) as session:
            projects = session.exec(
                select(Project)
                .where(
                    or_(
                        func.lower(Project.name).like(pattern),
                        func.lower(func.coalesce(Project.description, "")).like(pattern),
                    ),
                )
                .order_by(col(Project.created_at))
                .limit(limit),
            ).all()
            hits.extend(
                SearchHit(entity_type=EntityType.PROJECT.value, entity_id=row.id, title=row.name)
                for row in projects
            )
            tasks = session.exec(
                select(Task)
                .where(
                    or_(
                        func.lower(Task.title).like(pattern),
                        func.lower(func.coalesce(Task.description, "")).like(pattern),
                    ),
                )
                .order_by(col(Task.created_at), col(Task.id))
                .limit(limit),
            ).all()
            hits.extend(
                SearchHit(entity_type=EntityType.TASK.value, entity_id=row.id, title=row.title)
                for row in tasks
            )
        return hits[:limit]

    def list_events(
        self,
        *,
        after_id: int = 0,
        entity_id: str | None = None,
        event_type: str | None = None,
        limit: int | None = None,
    ) -> list[EventView]:
        """Return events with ``id > after_id`` in id order."""

        with Session(self.engine) as session:
            statement = select(Event).where(col(Event.id) > after_id).order_by(col(Event.id))
            if entity_id is not None:
                statement = statement.where(Event.entity_id == entity_id)
            if event_type is not None:
                statement = statement.where(Event.event_type == event_type)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [to_event_view(row) for row in rows]

    def latest_event_id(self) -> int:
        with Session(self.engine) as session:
            value = session.exec(select(func.max(Event.id))).one()
        return int(value or 0)

    # Internals

    def _transition(
        self,
        current: TaskView,
        *,
        expected_version: int | None,
        values: dict[str, Any],
        event_type: EventType,
    ) -> TaskView:
        now = self.clock()
        with Session(self.engine) as session:
            update_task_row(
                session,
                task_id=current.task_id,
                expected_version=_expected(expected_version, current.version),
                now=now,
                values=values,
            )
            view = task_view_in(session, current.task_id)
            record_event(
                session,
                event_type=event_type,
                entity_type=EntityType.TASK,
                entity_id=current.task_id,
                payload=task_payload(view),
                now=now,
            )
            session.commit()
        return view

    def _announce_downstream(self, session: Session, done: TaskView, *, now: datetime) -> None:
        for dependent_id in sorted(task_graph(session).dependents(done.task_id)):
            dependent = task_view_in(session, dependent_id)
            if dependent.status not in _SCHEDULABLE_STATUSES:
                continue
            if _pending_dependencies(session, dependent_id):
                continue
            record_event(
                session,
                event_type=EventType.TASK_UNBLOCKED,
                entity_type=EntityType.TASK,
                entity_id=dependent_id,
                payload=task_payload(dependent),
                now=now,
            )

        if not _project_is_complete(session, done.project_id):
            return
        project = self._project_view_in(session, done.project_id)
        record_event(
            session,
            event_type=EventType.PROJECT_COMPLETED,
            entity_type=EntityType.PROJECT,
            entity_id=done.project_id,
            payload=project_payload(project),
            now=now,
        )
        for dependent_project_id in sorted(project_graph(session).dependents(done.project_id)):
            if not _project_is_unblocked(session, dependent_project_id):
                continue
            record_event(
                session,
                event_type=EventType.PROJECT_UNBLOCKED,
                entity_type=EntityType.PROJECT,
                entity_id=dependent_project_id,
                payload=project_payload(self._project_view_in(session, dependent_project_id)),
                now=now,
            )

    def _project_view_in(self, session: Session, project_id: str) -> ProjectView:
        row = session.get(Project, project_id)
        if row is None:
            raise NotFoundError(f"Project not found: {project_id}")
        session.refresh(row)
        return _to_project_view(row, dependency_ids=_project_dependency_ids(session, project_id))

    def _open_session(self, session_id: str) -> SessionView:
        current = self.get_session(session_id)
        if current.status is SessionStatus.CLOSED:
            raise ValidationError(f"Session {session_id} is closed")
        return current

    def _free_id(self, session: Session, table: type[Initiative] | type[Project], slug: str) -> str:
        for _ in range(_MAX_ID_ATTEMPTS):
            candidate = f"{slug}-{uuid4().hex[:4]}"
            if session.get(table, candidate) is None:
                return candidate
        raise AlreadyExistsError(f"Could not allocate a free id for {slug!r}")


_CLEARED_LEASE: dict[str, Any] = {
    "claim_owner": None,
    "claim_claimed_at": None,
    "claim_lease_expires_at": None,
}

_SCHEDULABLE_STATUSES = frozenset({TaskStatus.TODO, TaskStatus.IN_PROGRESS})


def slugify(value: str) -> str:
    slug = _SLUG_PATTERN.sub("-", value.strip().lower()).strip("-")
    if not slug:
        raise ValidationError(f"Cannot derive a slug from {value!r}")
    return slug


def update_task_row(
    session: Session,
    *,
    task_id: str,
    expected_version: int,
    now: datetime,
    values: dict[str, Any] | None = None,
) -> None:
    """Apply a versioned update to one task or raise NotFound/VersionConflict."""

    _bump_version(
        session,
        Task,
        entity_id=task_id,
        expected_version=expected_version,
        now=now,
        values=values,
    )


def record_event(  # noqa: PLR0913
    session: Session,
    *,
    event_type: EventType,
    entity_type: EntityType,
    entity_id: str,
    payload: dict[str, Any],
    now: datetime,
) -> None:
    """Append an event with the next per-entity sequence number.

    Callers must already hold the write lock (a write precedes this call in
    the same transaction), which keeps ``max(seq) + 1`` race-free.
    """

    last_seq = session.exec(
        select(func.max(Event.seq)).where(
            Event.entity_type == entity_type.value,
            Event.entity_id == entity_id,
        ),
    ).one()
    session.add(
        Event(
            event_type=event_type.value,
            entity_type=entity_type.value,
            entity_id=entity_id,
            seq=int(last_seq or 0) + 1,
            payload_json=dump_json(payload),
            created_at=to_db_datetime(now),
        ),
    )
    session.flush()


def task_view_in(session: Session, task_id: str) -> TaskView:
    row = session.get(Task, task_id)
    if row is None:
        raise NotFoundError(f"Task not found: {task_id}")
    session.refresh(row)
    dependency_map = _task_dependency_map(session, [task_id])
    return _to_task_view(row, dependency_map.get(task_id, []))


def task_graph(session: Session) -> DependencyGraph:
    edges = session.exec(select(TaskDependency.task_id, TaskDependency.depends_on_task_id)).all()
    return DependencyGraph(edges)


def project_graph(session: Session) -> DependencyGraph:
    edges = session.exec(
        select(ProjectDependency.project_id, ProjectDependency.depends_on_project_id),
    ).all()
    return DependencyGraph(edges)


def task_payload(view: TaskView) -> dict[str, Any]:
    """Event payload snapshot of a task."""

    return {
        "id": view.task_id,
        "project_id": view.project_id,
        "task_number": view.task_number,
        "title": view.title,
        "description": view.description,
        "status": view.status.value,
        "priority": view.priority.value,
        "blocked_reason": view.blocked_reason,
        "lease": (
            {
                "owner": view.lease.owner,
                "claimed_at": view.lease.claimed_at.isoformat(),
                "expires_at": view.lease.expires_at.isoformat(),
            }
            if view.lease is not None
            else None
        ),
        "dependencies": list(view.dependency_ids),
        "version": view.version,
    }


def project_payload(view: ProjectView) -> dict[str, Any]:
    return {
        "id": view.project_id,
        "slug": view.slug,
        "name": view.name,
        "description": view.description,
        "owner": view.owner,
        "status": view.status.value,
        "tags": list(view.tags),
        "dependencies": list(view.dependency_ids),
        "version": view.version,
    }


def initiative_payload(view: InitiativeView) -> dict[str, Any]:
    return {
        "id": view.initiative_id,
        "slug": view.slug,
        "name": view.name,
        "owner": view.owner,
        "status": view.status,
        "tags": list(view.tags),
        "version": view.version,
    }


def to_event_view(row: Event) -> EventView:
    return EventView(
        event_id=row.id or 0,
        event_type=row.event_type,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        seq=row.seq,
        payload=load_json_dict(row.payload_json),
        created_at=to_utc_aware(row.created_at),
    )


def _bump_version(  # noqa: PLR0913
    session: Session,
    table: type[Task] | type[Project] | type[Initiative] | type[WorkSession],
    *,
    entity_id: str,
    expected_version: int,
    now: datetime,
    values: dict[str, Any] | None = None,
) -> None:
    result = session.exec(
        sa_update(table)
        .where(col(table.id) == entity_id, col(table.version) == expected_version)
        .values(
            version=expected_version + 1,
            updated_at=to_db_datetime(now),
            **(values or {}),
        ),
    )
    if result.rowcount == 1:
        return
    session.rollback()
    stored = session.exec(select(table.version).where(col(table.id) == entity_id)).one_or_none()
    label = table.__tablename__.rstrip("s")
    if stored is None:
        raise NotFoundError(f"{label.capitalize()} not found: {entity_id}")
    raise VersionConflict(
        f"{label.capitalize()} {entity_id} is at version {stored}, expected {expected_version}",
    )


def _expected(expected_version: int | None, observed: int) -> int:
    return observed if expected_version is None else expected_version


def _check_holder(
    current: TaskView,
    owner: str | None,
    expected_version: int | None,
    *,
    now: datetime,
) -> None:
    if expected_version is not None and expected_version != current.version:
        raise VersionConflict(
            f"Task {current.task_id} is at version {current.version}, "
            f"expected {expected_version}",
        )
    lease = current.active_lease(now)
    if lease is not None and lease.owner != owner:
        raise ConflictError(f"Task {current.task_id} is claimed by {lease.owner}")


def _resolve_by_id_or_slug(
    session: Session,
    table: type[Initiative] | type[Project],
    ref: str,
) -> Any:
    row = session.get(table, ref)
    if row is not None:
        return row
    matches = session.exec(select(table).where(col(table.slug) == ref)).all()
    if len(matches) == 1:
        return matches[0]
    label = table.__tablename__.rstrip("s").capitalize()
    if not matches:
        raise NotFoundError(f"{label} not found: {ref}")
    raise ValidationError(f"{label} slug {ref!r} is ambiguous; use the full id")


def _pending_dependencies(session: Session, task_id: str) -> list[str]:
    """Dependency task ids that are not done yet."""

    rows = session.exec(
        select(TaskDependency.depends_on_task_id)
        .join(Task, col(Task.id) == col(TaskDependency.depends_on_task_id))
        .where(
            TaskDependency.task_id == task_id,
            Task.status != TaskStatus.DONE.value,
        )
        .order_by(col(TaskDependency.depends_on_task_id)),
    ).all()
    return list(rows)


def _project_has_tasks(session: Session, project_id: str) -> bool:
    count = session.exec(
        select(func.count()).select_from(Task).where(Task.project_id == project_id),
    ).one()
    return bool(count)


def _project_is_complete(session: Session, project_id: str) -> bool:
    remaining = session.exec(
        select(func.count())
        .select_from(Task)
        .where(Task.project_id == project_id, Task.status != TaskStatus.DONE.value),
    ).one()
    return remaining == 0


def _project_is_unblocked(session: Session, project_id: str) -> bool:
    dependency_ids = _project_dependency_ids(session, project_id)
    return all(_project_is_complete(session, dependency_id) for dependency_id in dependency_ids)


def _project_dependency_ids(session: Session, project_id: str) -> list[str]:
    rows = session.exec(
        select(ProjectDependency.depends_on_project_id)
        .where(ProjectDependency.project_id == project_id)
        .order_by(col(ProjectDependency.depends_on_project_id)),
    ).all()
    return list(rows)


def _initiative_project_ids(session: Session, initiative_id: str) -> list[str]:
    rows = session.exec(
        select(InitiativeProject.project_id)
        .where(InitiativeProject.initiative_id == initiative_id)
        .order_by(col(InitiativeProject.added_at), col(InitiativeProject.project_id)),
    ).all()
    return list(rows)


def _task_dependency_map(session: Session, task_ids: list[str]) -> dict[str, list[str]]:
    if not task_ids:
        return {}
    rows = session.exec(
        select(TaskDependency.task_id, TaskDependency.depends_on_task_id)
        .where(col(TaskDependency.task_id).in_(task_ids))
        .order_by(col(TaskDependency.depends_on_task_id)),
    ).all()
    dependency_map: dict[str, list[str]] = {}
    for task_id, depends_on in rows:
        dependency_map.setdefault(task_id, []).append(depends_on)
    return dependency_map


def _to_task_view(row: Task, dependency_ids: list[str]) -> TaskView:
    lease = None
    if row.claim_owner is not None and row.claim_lease_expires_at is not None:
        lease = LeaseView(
            owner=row.claim_owner,
            claimed_at=to_utc_aware(row.claim_claimed_at or row.claim_lease_expires_at),
            expires_at=to_utc_aware(row.claim_lease_expires_at),
        )
    return TaskView(
        task_id=row.id,
        project_id=row.project_id,
        task_number=row.task_number,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        priority=Priority(row.priority),
        blocked_reason=row.blocked_reason,
        lease=lease,
        dependency_ids=list(dependency_ids),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        version=row.version,
    )


def _to_project_view(row: Project, *, dependency_ids: list[str]) -> ProjectView:
    return ProjectView(
        project_id=row.id,
        slug=row.slug,
        name=row.name,
        description=row.description,
        owner=row.owner,
        status=ProjectStatus(row.status),
        tags=load_json_list(row.tags),
        dependency_ids=dependency_ids,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        version=row.version,
    )


def _to_initiative_view(row: Initiative, *, project_ids: list[str]) -> InitiativeView:
    return InitiativeView(
        initiative_id=row.id,
        slug=row.slug,
        name=row.name,
        description=row.description,
        owner=row.owner,
        status=row.status,
        tags=load_json_list(row.tags),
        project_ids=project_ids,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        version=row.version,
    )


def _to_session_view(row: WorkSession, *, project_ids: list[str]) -> SessionView:
    return SessionView(
        session_id=row.id,
        name=row.name,
        owner=row.owner,
        mode=row.mode,
        status=SessionStatus(row.status),
        focus_task_id=row.focus_task_id,
        project_ids=project_ids,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        closed_at=optional_utc_aware(row.closed_at),
        version=row.version,
    )
