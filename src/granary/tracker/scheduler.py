"""Read-only scheduler: which tasks are actionable now."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from enum import Enum

from granary.tracker.errors import ValidationError
from granary.tracker.models import (
    BlockedTask,
    ProjectStatus,
    ScopeSummary,
    TaskStatus,
    TaskView,
)
from granary.tracker.repository import GranaryRepository


class ScopeKind(str, Enum):
    ALL = "all"
    PROJECT = "project"
    INITIATIVE = "initiative"
    SESSION = "session"


@dataclass(slots=True, frozen=True)
class Scope:
    """Set of projects a scheduler query looks at."""

    kind: ScopeKind = ScopeKind.ALL
    ref: str | None = None

    @classmethod
    def project(cls, ref: str) -> Scope:
        return cls(ScopeKind.PROJECT, ref)

    @classmethod
    def initiative(cls, ref: str) -> Scope:
        return cls(ScopeKind.INITIATIVE, ref)

    @classmethod
    def session(cls, ref: str) -> Scope:
        return cls(ScopeKind.SESSION, ref)

    @property
    def label(self) -> str:
        if self.kind is ScopeKind.ALL:
            return "all"
        return f"{self.kind.value}:{self.ref}"


class Scheduler:
    """Stateless query layer over the graph and lease state; never mutates."""

    def __init__(self, repository: GranaryRepository) -> None:
        self.repository = repository

    def next(self, scope: Scope = Scope()) -> TaskView | None:
        """Most urgent actionable task, or None."""

        candidates = self.next_all(scope)
        return candidates[0] if candidates else None

    def next_all(self, scope: Scope = Scope()) -> list[TaskView]:
        """Every actionable task ordered by priority, creation time, then id."""

        now = self.repository.clock()
        project_ids = self._active_project_ids(scope)
        tasks = self.repository.list_tasks(project_ids=project_ids)
        dependency_status = self.repository.task_statuses(
            {dep for task in tasks for dep in task.dependency_ids},
        )
        unblocked_projects = {
            project_id
            for project_id in project_ids
            if self.repository.is_project_unblocked(project_id)
        }

        ready: list[TaskView] = []
        for task in tasks:
            if task.project_id not in unblocked_projects:
                continue
            if task.status not in {TaskStatus.TODO, TaskStatus.IN_PROGRESS}:
                continue
            if task.active_lease(now) is not None:
                continue
            if any(
                dependency_status.get(dep) is not TaskStatus.DONE for dep in task.dependency_ids
            ):
                continue
            ready.append(task)
        ready.sort(key=lambda task: (task.priority.rank, task.created_at, task.task_id))
        return ready

    def summary(self, scope: Scope = Scope(), *, next_limit: int = 5) -> ScopeSummary:
        """Counts by status and priority, blocked tasks and the next actions."""

        tasks = self.repository.list_tasks(project_ids=self.project_ids(scope))
        dependency_status = self.repository.task_statuses(
            {dep for task in tasks for dep in task.dependency_ids},
        )
        blocked: list[BlockedTask] = []
        for task in tasks:
            if task.status is TaskStatus.BLOCKED:
                blocked.append(
                    BlockedTask(
                        task_id=task.task_id,
                        title=task.title,
                        reason=task.blocked_reason or "blocked",
                    ),
                )
                continue
            if task.status in {TaskStatus.DONE, TaskStatus.DRAFT}:
                continue
            pending = [
                dep
                for dep in task.dependency_ids
                if dependency_status.get(dep) is not TaskStatus.DONE
            ]
            if pending:
                blocked.append(
                    BlockedTask(
                        task_id=task.task_id,
                        title=task.title,
                        reason=f"waiting on {', '.join(pending)}",
                    ),
                )

        return ScopeSummary(
            scope_label=scope.label,
            total=len(tasks),
            by_status=dict(Counter(task.status.value for task in tasks)),
            by_priority=dict(Counter(task.priority.value for task in tasks)),
            blocked=blocked,
            next_actions=self.next_all(scope)[:next_limit],
        )

    def project_ids(self, scope: Scope) -> list[str]:
        """Resolve a scope to the ids of its member projects."""

        if scope.kind is ScopeKind.ALL:
            return [project.project_id for project in self.repository.list_projects()]
        if scope.ref is None:
            raise ValidationError(f"Scope {scope.kind.value} requires a reference")
        if scope.kind is ScopeKind.PROJECT:
            return [self.repository.get_project(scope.ref).project_id]
        if scope.kind is ScopeKind.INITIATIVE:
            return list(self.repository.get_initiative(scope.ref).project_ids)
        return list(self.repository.get_session(scope.ref).project_ids)

    def _active_project_ids(self, scope: Scope) -> list[str]:
        active = {
            project.project_id
            for project in self.repository.list_projects(status=ProjectStatus.ACTIVE)
        }
        return [project_id for project_id in self.project_ids(scope) if project_id in active]
