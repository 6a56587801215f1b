from __future__ import annotations

import allure
import pytest

from conftest import make_project, make_task
from granary.tracker.checkpoints import CheckpointManager
from granary.tracker.errors import AlreadyExistsError, NotFoundError, VersionConflict
from granary.tracker.leases import LeaseManager
from granary.tracker.models import TaskStatus
from granary.tracker.repository import GranaryRepository

pytestmark = [
    allure.epic("Tracker"),
    allure.feature("Checkpoints"),
]


def test_restore_brings_back_statuses_leases_and_versions(repository: GranaryRepository) -> None:
    project_id = make_project(repository, "Snapshot")
    first = make_task(repository, project_id, "first")
    second = make_task(repository, project_id, "second", depends_on=(first.task_id,))
    claimed = LeaseManager(repository).claim(first.task_id, owner="alice", ttl_seconds=600)
    checkpoints = CheckpointManager(repository)
    created = checkpoints.create("before-work")
    assert created.row_counts["tasks"] == 2

    repository.done_task(first.task_id, owner="alice")
    repository.update_task(second.task_id, title="renamed")
    make_task(repository, project_id, "added later")

    restored = checkpoints.restore("before-work")

    assert restored.name == "before-work"
    tasks = {task.task_id: task for task in repository.list_tasks()}
    assert set(tasks) == {first.task_id, second.task_id}
    assert tasks[first.task_id].status is TaskStatus.TODO
    assert tasks[first.task_id].version == claimed.version
    assert tasks[first.task_id].lease is not None
    assert tasks[first.task_id].lease.owner == "alice"
    assert tasks[second.task_id].title == "second"
    assert tasks[second.task_id].dependency_ids == [first.task_id]
    assert not repository.is_task_unblocked(second.task_id)


def test_stale_version_conflicts_after_restore(repository: GranaryRepository) -> None:
    project_id = make_project(repository, "Versions")
    task = make_task(repository, project_id, "edit")
    checkpoints = CheckpointManager(repository)
    checkpoints.create("v1")
    edited = repository.update_task(task.task_id, title="edited")

    checkpoints.restore("v1")

    with pytest.raises(VersionConflict):
        repository.update_task(task.task_id, title="again", expected_version=edited.version)
    assert repository.update_task(
        task.task_id,
        title="again",
        expected_version=task.version,
    ).version == task.version + 1


def test_events_survive_restore(repository: GranaryRepository) -> None:
    make_project(repository, "Events")
    checkpoints = CheckpointManager(repository)
    checkpoints.create("empty")
    before = repository.latest_event_id()

    checkpoints.restore("empty")

    restored_events = repository.list_events(after_id=before)
    assert [event.event_type for event in restored_events] == ["checkpoint.restored"]
    assert repository.list_events(event_type="project.created")


def test_names_are_unique_unless_overwritten(repository: GranaryRepository) -> None:
    checkpoints = CheckpointManager(repository)
    first = checkpoints.create("daily")

    with pytest.raises(AlreadyExistsError):
        checkpoints.create("daily")

    make_project(repository, "Later")
    replaced = checkpoints.create("daily", overwrite=True)
    assert replaced.checkpoint_id != first.checkpoint_id
    assert replaced.row_counts["projects"] == 1
    assert [checkpoint.name for checkpoint in checkpoints.list()] == ["daily"]


def test_prune_removes_checkpoint(repository: GranaryRepository) -> None:
    checkpoints = CheckpointManager(repository)
    checkpoints.create("old")

    checkpoints.prune("old")

    assert checkpoints.list() == []
    with pytest.raises(NotFoundError):
        checkpoints.prune("old")
    with pytest.raises(NotFoundError):
        checkpoints.restore("old")


def test_restore_invalidates_lease_held_at_newer_version(repository: GranaryRepository) -> None:
    project_id = make_project(repository, "Leases")
    task = make_task(repository, project_id, "held")
    checkpoints = CheckpointManager(repository)
    checkpoints.create("unclaimed")
    leases = LeaseManager(repository)
    claimed = leases.claim(task.task_id, owner="alice", ttl_seconds=600)

    checkpoints.restore("unclaimed")

    with pytest.raises(VersionConflict):
        leases.heartbeat(task.task_id, owner="alice", expected_version=claimed.version)
    with pytest.raises(VersionConflict):
        leases.release(task.task_id, owner="alice", expected_version=claimed.version)
    assert repository.get_task(task.task_id).lease is None
