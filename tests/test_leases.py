from __future__ import annotations

import threading

import allure
import pytest

from conftest import FakeClock, make_project, make_task
from granary.tracker.errors import ConflictError, LeaseLostError, ValidationError
from granary.tracker.leases import LeaseManager
from granary.tracker.models import TaskStatus
from granary.tracker.repository import GranaryRepository

pytestmark = [
    allure.epic("Tracker"),
    allure.feature("Leases"),
]


def test_concurrent_claims_have_one_winner(repository: GranaryRepository) -> None:
    project_id = make_project(repository, "Race")
    task = make_task(repository, project_id, "contended")
    leases = LeaseManager(repository)
    barrier = threading.Barrier(2)
    outcomes: dict[str, object] = {}

    def _claim(owner: str) -> None:
        barrier.wait()
        try:
            outcomes[owner] = leases.claim(task.task_id, owner=owner, ttl_seconds=60)
        except ConflictError as error:
            outcomes[owner] = error

    threads = [threading.Thread(target=_claim, args=(owner,)) for owner in ("alice", "bob")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    winners = [owner for owner, result in outcomes.items() if not isinstance(result, Exception)]
    losers = [owner for owner, result in outcomes.items() if isinstance(result, ConflictError)]
    assert len(winners) == 1
    assert len(losers) == 1
    stored = repository.get_task(task.task_id)
    assert stored.lease is not None
    assert stored.lease.owner == winners[0]
    assert len(repository.list_events(entity_id=task.task_id, event_type="task.claimed")) == 1


def test_expired_lease_can_be_reclaimed(repository: GranaryRepository, clock: FakeClock) -> None:
    project_id = make_project(repository, "Expiry")
    task = make_task(repository, project_id, "short lease")
    leases = LeaseManager(repository)
    leases.claim(task.task_id, owner="alice", ttl_seconds=30)

    with pytest.raises(ConflictError) as error:
        leases.claim(task.task_id, owner="bob", ttl_seconds=30)
    assert error.value.exit_code == 4

    clock.advance(31)
    reclaimed = leases.claim(task.task_id, owner="bob", ttl_seconds=30)
    assert reclaimed.lease is not None
    assert reclaimed.lease.owner == "bob"
    assert reclaimed.lease.claimed_at == clock()


def test_heartbeat_extends_only_for_holder(
    repository: GranaryRepository,
    clock: FakeClock,
) -> None:
    project_id = make_project(repository, "Heartbeat")
    task = make_task(repository, project_id, "long job")
    leases = LeaseManager(repository)
    claimed = leases.claim(task.task_id, owner="alice", ttl_seconds=60)
    assert claimed.lease is not None

    clock.advance(50)
    extended = leases.heartbeat(task.task_id, owner="alice", ttl_seconds=60)
    assert extended.lease is not None
    assert extended.lease.expires_at > claimed.lease.expires_at
    assert extended.lease.claimed_at == claimed.lease.claimed_at

    with pytest.raises(LeaseLostError):
        leases.heartbeat(task.task_id, owner="bob")

    clock.advance(61)
    with pytest.raises(LeaseLostError):
        leases.heartbeat(task.task_id, owner="alice")


def test_release_returns_in_progress_task_to_todo(repository: GranaryRepository) -> None:
    project_id = make_project(repository, "Release")
    task = make_task(repository, project_id, "give back")
    leases = LeaseManager(repository)
    repository.start_task(task.task_id, owner="alice", ttl_seconds=60)

    with pytest.raises(ConflictError):
        leases.release(task.task_id, owner="bob")

    released = leases.release(task.task_id, owner="alice")
    assert released.lease is None
    assert released.status is TaskStatus.TODO
    event = repository.list_events(entity_id=task.task_id, event_type="task.released")[0]
    assert event.payload["released_by"] == "alice"

    # Releasing an unleased task is a no-op.
    assert leases.release(task.task_id, owner="alice").version == released.version


def test_claim_rejects_draft_and_bad_ttl(repository: GranaryRepository) -> None:
    project_id = make_project(repository, "Claim Rules")
    draft = make_task(repository, project_id, "not yet", draft=True)
    task = make_task(repository, project_id, "ok")
    leases = LeaseManager(repository)

    with pytest.raises(ValidationError):
        leases.claim(draft.task_id, owner="alice")
    with pytest.raises(ValidationError):
        leases.claim(task.task_id, owner="alice", ttl_seconds=0)


def test_sweep_clears_expired_leases(repository: GranaryRepository, clock: FakeClock) -> None:
    project_id = make_project(repository, "Sweep")
    stale = make_task(repository, project_id, "stale")
    fresh = make_task(repository, project_id, "fresh")
    leases = LeaseManager(repository)
    repository.start_task(stale.task_id, owner="alice", ttl_seconds=10)
    clock.advance(20)
    leases.claim(fresh.task_id, owner="bob", ttl_seconds=60)

    swept = leases.sweep_expired_leases()

    assert [view.task_id for view in swept] == [stale.task_id]
    assert repository.get_task(stale.task_id).status is TaskStatus.TODO
    assert repository.get_task(fresh.task_id).lease is not None
    event = repository.list_events(entity_id=stale.task_id, event_type="task.lease_expired")[0]
    assert event.payload["previous_owner"] == "alice"
    assert leases.sweep_expired_leases() == []
