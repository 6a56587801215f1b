from __future__ import annotations

import allure
import pytest

from conftest import make_project, make_task
from granary.tracker.errors import NotFoundError
from granary.tracker.leases import LeaseManager
from granary.tracker.models import Priority, ProjectStatus
from granary.tracker.repository import GranaryRepository
from granary.tracker.scheduler import Scheduler, Scope

pytestmark = [
    allure.epic("Tracker"),
    allure.feature("Scheduler"),
]


def _next_id(scheduler: Scheduler, scope: Scope = Scope()) -> str | None:
    task = scheduler.next(scope)
    return task.task_id if task else None


def test_next_follows_dependencies_and_leases(repository: GranaryRepository) -> None:
    project_id = make_project(repository, "Pipeline")
    first = make_task(repository, project_id, "T1", priority=Priority.P0)
    second = make_task(
        repository,
        project_id,
        "T2",
        priority=Priority.P0,
        depends_on=(first.task_id,),
    )
    scheduler = Scheduler(repository)

    assert _next_id(scheduler) == first.task_id

    LeaseManager(repository).claim(first.task_id, owner="agent", ttl_seconds=600)
    assert _next_id(scheduler) is None

    repository.start_task(first.task_id, owner="agent", ttl_seconds=600)
    assert _next_id(scheduler) is None

    repository.done_task(first.task_id, owner="agent")
    assert _next_id(scheduler) == second.task_id


def test_next_orders_by_priority_then_creation(repository: GranaryRepository) -> None:
    project_id = make_project(repository, "Ordering")
    low = make_task(repository, project_id, "later", priority=Priority.P3)
    high = make_task(repository, project_id, "urgent", priority=Priority.P1)
    also_high = make_task(repository, project_id, "urgent too", priority=Priority.P1)
    make_task(repository, project_id, "draft", priority=Priority.P0, draft=True)

    ordered = [task.task_id for task in Scheduler(repository).next_all()]

    assert ordered == [high.task_id, also_high.task_id, low.task_id]


def test_blocked_and_archived_projects_are_skipped(repository: GranaryRepository) -> None:
    core = make_project(repository, "Core")
    app = make_project(repository, "App")
    old = make_project(repository, "Old")
    repository.add_project_dependency(app, core)
    core_task = make_task(repository, core, "core", priority=Priority.P3)
    make_task(repository, app, "app", priority=Priority.P0)
    make_task(repository, old, "old", priority=Priority.P0)
    repository.update_project(old, status=ProjectStatus.ARCHIVED)
    scheduler = Scheduler(repository)

    assert [task.task_id for task in scheduler.next_all()] == [core_task.task_id]
    assert _next_id(scheduler, Scope.project(app)) is None
    assert _next_id(scheduler, Scope.project(old)) is None


def test_scopes_resolve_initiative_and_session(repository: GranaryRepository) -> None:
    alpha = make_project(repository, "Alpha")
    beta = make_project(repository, "Beta")
    alpha_task = make_task(repository, alpha, "alpha work", priority=Priority.P2)
    beta_task = make_task(repository, beta, "beta work", priority=Priority.P0)
    initiative = repository.create_initiative(name="Q3")
    repository.add_project_to_initiative(initiative.initiative_id, alpha)
    session = repository.create_session(name="focus", owner="alice", mode="execute")
    repository.attach_project(session.session_id, beta)
    scheduler = Scheduler(repository)

    assert _next_id(scheduler) == beta_task.task_id
    assert _next_id(scheduler, Scope.initiative("q3")) == alpha_task.task_id
    assert _next_id(scheduler, Scope.session(session.session_id)) == beta_task.task_id
    with pytest.raises(NotFoundError):
        scheduler.next(Scope.project("missing"))


def test_summary_counts_and_blocked_reasons(repository: GranaryRepository) -> None:
    project_id = make_project(repository, "Summary")
    first = make_task(repository, project_id, "first", priority=Priority.P1)
    waiting = make_task(repository, project_id, "waiting", depends_on=(first.task_id,))
    stuck = make_task(repository, project_id, "stuck")
    repository.block_task(stuck.task_id, reason="needs credentials")

    summary = Scheduler(repository).summary(Scope.project(project_id))

    assert summary.scope_label == f"project:{project_id}"
    assert summary.total == 3
    assert summary.by_status == {"todo": 2, "blocked": 1}
    assert summary.by_priority == {"P1": 1, "P2": 2}
    assert {(item.task_id, item.reason) for item in summary.blocked} == {
        (waiting.task_id, f"waiting on {first.task_id}"),
        (stuck.task_id, "needs credentials"),
    }
    assert [task.task_id for task in summary.next_actions] == [first.task_id]
