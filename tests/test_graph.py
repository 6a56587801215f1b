from __future__ import annotations

import allure
import pytest

from conftest import make_project, make_task
from granary.tracker.errors import CycleError, SelfDependencyError
from granary.tracker.graph import DependencyGraph
from granary.tracker.repository import GranaryRepository

pytestmark = [
    allure.epic("Tracker"),
    allure.feature("Dependency Graph"),
]


def test_graph_rejects_self_dependency() -> None:
    graph = DependencyGraph()

    with pytest.raises(SelfDependencyError):
        graph.add_edge("a", "a")
    assert graph.dependencies("a") == set()


def test_graph_rejects_cycle_without_mutation() -> None:
    graph = DependencyGraph([("b", "a"), ("c", "b")])

    with pytest.raises(CycleError):
        graph.add_edge("a", "c")

    assert not graph.has_edge("a", "c")
    assert graph.dependencies("a") == set()
    assert graph.dependents("c") == set()
    assert graph.reaches("c", "a")
    assert not graph.reaches("a", "c")


def test_graph_accepts_diamond_and_reports_dependents() -> None:
    graph = DependencyGraph()
    assert graph.add_edge("b", "a")
    assert graph.add_edge("c", "a")
    assert graph.add_edge("d", "b")
    assert graph.add_edge("d", "c")
    assert not graph.add_edge("d", "c")

    assert graph.dependents("a") == {"b", "c"}
    assert graph.dependencies("d") == {"b", "c"}
    assert graph.remove_edge("d", "c")
    assert not graph.remove_edge("d", "c")
    assert graph.dependencies("d") == {"b"}


def test_task_cycle_is_rejected_and_store_unchanged(repository: GranaryRepository) -> None:
    project_id = make_project(repository, "Cycles")
    first = make_task(repository, project_id, "first")
    second = make_task(repository, project_id, "second", depends_on=(first.task_id,))
    third = make_task(repository, project_id, "third", depends_on=(second.task_id,))
    before = repository.get_task(first.task_id)
    events_before = repository.latest_event_id()

    with pytest.raises(CycleError):
        repository.add_task_dependency(first.task_id, third.task_id)
    with pytest.raises(SelfDependencyError):
        repository.add_task_dependency(first.task_id, first.task_id)

    after = repository.get_task(first.task_id)
    assert after.dependency_ids == []
    assert after.version == before.version
    assert repository.latest_event_id() == events_before


def test_project_cycle_is_rejected(repository: GranaryRepository) -> None:
    api = make_project(repository, "API")
    web = make_project(repository, "Web")
    repository.add_project_dependency(web, api)

    with pytest.raises(CycleError):
        repository.add_project_dependency(api, web)

    assert repository.get_project(api).dependency_ids == []
    assert repository.get_project(web).dependency_ids == [api]
