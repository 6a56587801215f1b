from __future__ import annotations

import shutil
import sys
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

import allure
import pytest

from conftest import make_project, make_task
from granary.orchestrator.backend import RunnerRequest, RunnerResult
from granary.orchestrator.models import (
    INSTANCE_MISSING,
    WORKER_EXITED,
    RunStatus,
    RunView,
    WorkerCreate,
    WorkerStatus,
    WorkerView,
)
from granary.orchestrator.registry import WorkerRegistry
from granary.orchestrator.supervisor import SupervisorOptions, WorkerSupervisor
from granary.storage.common import utc_now
from granary.tracker.repository import GranaryRepository

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Worker Supervisor"),
]


class FakeRunner:
    """Backend double: records attempts and returns scripted exit codes."""

    def __init__(
        self,
        exit_codes: list[int] | None = None,
        *,
        gate: threading.Event | None = None,
    ) -> None:
        self.exit_codes = list(exit_codes or [])
        self.gate = gate
        self.requests: list[RunnerRequest] = []
        self.started_at: list[datetime] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def run(self, request: RunnerRequest) -> RunnerResult:
        with self._lock:
            self.requests.append(request)
            self.started_at.append(utc_now())
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            exit_code = self.exit_codes.pop(0) if self.exit_codes else 0
        if request.on_spawn is not None:
            request.on_spawn(10_000 + len(self.requests))
        cancelled = False
        try:
            while self.gate is not None and not self.gate.wait(0.01):
                if request.cancel_requested is not None and request.cancel_requested():
                    cancelled = True
                    break
        finally:
            with self._lock:
                self.in_flight -= 1
        return RunnerResult(exit_code=exit_code, cancelled=cancelled, log_path=request.log_path)


def _options(tmp_path: Path) -> SupervisorOptions:
    return SupervisorOptions(
        logs_dir=tmp_path / "home" / "logs",
        tick_seconds=0.02,
        graceful_shutdown_seconds=1.0,
        jitter_seconds=0.0,
        cancel_poll_seconds=0.02,
    )


def _register(
    registry: WorkerRegistry,
    instance_path: Path,
    *,
    command: str = "runner",
    args: list[str] | None = None,
    concurrency: int = 1,
    max_attempts: int = 3,
    last_event_id: int = 0,
    retry_base_seconds: float = 0.01,
    retry_max_seconds: float = 0.05,
) -> WorkerView:
    return registry.create_worker(
        WorkerCreate(
            command=command,
            args=args or [],
            event_type="task.done",
            instance_path=instance_path,
            concurrency=concurrency,
            max_attempts=max_attempts,
            retry_base_seconds=retry_base_seconds,
            retry_max_seconds=retry_max_seconds,
            last_event_id=last_event_id,
        ),
    )


def _wait_for(predicate: Callable[[], bool], *, timeout: float = 15.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.02)
    pytest.fail("condition not reached before timeout")


def _runs(registry: WorkerRegistry, worker_id: str) -> list[RunView]:
    return registry.list_runs(worker_id=worker_id)


def _finish_tasks(repository: GranaryRepository, count: int) -> list[str]:
    project_id = make_project(repository, "Workload")
    task_ids = [make_task(repository, project_id, f"job {index}").task_id for index in range(count)]
    for task_id in task_ids:
        repository.done_task(task_id)
    return task_ids


def test_run_succeeds_with_rendered_args_env_and_log(
    tmp_path: Path,
    repository: GranaryRepository,
    registry: WorkerRegistry,
) -> None:
    workspace = tmp_path / "workspace"
    script = (
        "import os, sys; "
        "print('task', sys.argv[1]); "
        "print('entity', os.environ['GRANARY_ENTITY_ID']); "
        "print('token', os.environ['EXTRA_TOKEN'])"
    )
    worker = registry.create_worker(
        WorkerCreate(
            command=sys.executable,
            args=["-c", script, "{task.id}"],
            env={"EXTRA_TOKEN": "abc"},
            event_type="task.done",
            instance_path=workspace,
            last_event_id=repository.latest_event_id(),
        ),
    )
    supervisor = WorkerSupervisor(registry=registry, options=_options(tmp_path))
    supervisor.start(worker.worker_id)

    [task_id] = _finish_tasks(repository, 1)
    _wait_for(
        lambda: any(run.status is RunStatus.SUCCEEDED for run in _runs(registry, worker.worker_id)),
    )
    registry.request_stop(worker.worker_id, stop_runs=False)
    assert supervisor.join(timeout=10)

    [run] = _runs(registry, worker.worker_id)
    assert run.entity_id == task_id
    assert run.args[-1] == task_id
    assert run.exit_code == 0
    assert run.attempt == 1
    log_text = Path(run.log_path or "").read_text(encoding="utf-8")
    assert f"task {task_id}" in log_text
    assert f"entity {task_id}" in log_text
    assert "token abc" in log_text

    stopped = registry.get_worker(worker.worker_id)
    assert stopped.status is WorkerStatus.STOPPED
    assert stopped.last_event_id == repository.latest_event_id()


def test_failing_run_stops_after_max_attempts(
    tmp_path: Path,
    repository: GranaryRepository,
    registry: WorkerRegistry,
) -> None:
    worker = _register(registry, tmp_path / "workspace", last_event_id=repository.latest_event_id())
    runner = FakeRunner([1, 1, 1, 1])
    supervisor = WorkerSupervisor(registry=registry, options=_options(tmp_path), backend=runner)
    loop = supervisor.start(worker.worker_id)

    _finish_tasks(repository, 1)
    _wait_for(
        lambda: any(run.status is RunStatus.FAILED for run in _runs(registry, worker.worker_id)),
    )
    loop.request_stop(stop_runs=False)
    assert supervisor.join(timeout=10)

    [run] = _runs(registry, worker.worker_id)
    assert [request.attempt for request in runner.requests] == [1, 2, 3]
    assert run.attempt == 3
    assert run.exit_code == 1
    assert "attempt 3/3" in (run.error_message or "")
    assert loop.summary.failed == 1


class RetryRecordingRegistry(WorkerRegistry):
    """Registry that remembers every retrying transition."""

    def __init__(self, db_path: Path) -> None:
        super().__init__(db_path)
        self.retries: list[tuple[int, datetime, datetime]] = []

    def mark_run_retrying(  # noqa: PLR0913
        self,
        run_id: str,
        *,
        exit_code: int | None,
        error_message: str,
        next_retry_at: datetime,
        attempt: int,
    ) -> bool:
        self.retries.append((attempt, utc_now(), next_retry_at))
        return super().mark_run_retrying(
            run_id,
            exit_code=exit_code,
            error_message=error_message,
            next_retry_at=next_retry_at,
            attempt=attempt,
        )


def test_retry_delays_double_up_to_the_cap(
    tmp_path: Path,
    repository: GranaryRepository,
) -> None:
    registry = RetryRecordingRegistry(tmp_path / "home" / "recording.db")
    registry.init_schema()
    base, cap = 0.2, 0.3
    worker = _register(
        registry,
        tmp_path / "workspace",
        last_event_id=repository.latest_event_id(),
        retry_base_seconds=base,
        retry_max_seconds=cap,
    )
    runner = FakeRunner([1, 1, 1])
    supervisor = WorkerSupervisor(registry=registry, options=_options(tmp_path), backend=runner)
    loop = supervisor.start(worker.worker_id)

    _finish_tasks(repository, 1)
    _wait_for(
        lambda: any(run.status is RunStatus.FAILED for run in _runs(registry, worker.worker_id)),
    )
    loop.request_stop(stop_runs=False)
    assert supervisor.join(timeout=10)
    registry.close()

    assert [attempt for attempt, _, _ in registry.retries] == [1, 2]
    for attempt, recorded_at, next_retry_at in registry.retries:
        delay = (next_retry_at - recorded_at).total_seconds()
        assert min(base * 2 ** (attempt - 1), cap) - 0.02 <= delay <= cap
    for (_, _, next_retry_at), started_at in zip(
        registry.retries,
        runner.started_at[1:],
        strict=True,
    ):
        assert started_at >= next_retry_at - timedelta(milliseconds=20)


def test_unlaunchable_command_fails_without_retry(
    tmp_path: Path,
    repository: GranaryRepository,
    registry: WorkerRegistry,
) -> None:
    worker = _register(
        registry,
        tmp_path / "workspace",
        command=str(tmp_path / "no-such-runner"),
        last_event_id=repository.latest_event_id(),
    )
    supervisor = WorkerSupervisor(registry=registry, options=_options(tmp_path))
    loop = supervisor.start(worker.worker_id)

    _finish_tasks(repository, 1)
    _wait_for(
        lambda: any(run.status is RunStatus.FAILED for run in _runs(registry, worker.worker_id)),
    )
    loop.request_stop(stop_runs=False)
    assert supervisor.join(timeout=10)

    [run] = _runs(registry, worker.worker_id)
    assert run.attempt == 1
    assert "cannot be launched" in (run.error_message or "")


def test_concurrency_budget_and_fifo_order(
    tmp_path: Path,
    repository: GranaryRepository,
    registry: WorkerRegistry,
) -> None:
    worker = _register(
        registry,
        tmp_path / "workspace",
        concurrency=2,
        last_event_id=repository.latest_event_id(),
    )
    gate = threading.Event()
    runner = FakeRunner(gate=gate)
    supervisor = WorkerSupervisor(registry=registry, options=_options(tmp_path), backend=runner)
    loop = supervisor.start(worker.worker_id)

    task_ids = _finish_tasks(repository, 4)
    _wait_for(
        lambda: len(runner.requests) == 2 and len(_runs(registry, worker.worker_id)) == 4,
    )
    time.sleep(0.2)
    assert len(runner.requests) == 2
    pending = [run for run in _runs(registry, worker.worker_id) if run.status is RunStatus.PENDING]
    assert len(pending) == 2

    gate.set()
    _wait_for(
        lambda: sum(
            run.status is RunStatus.SUCCEEDED for run in _runs(registry, worker.worker_id)
        )
        == 4,
    )
    loop.request_stop(stop_runs=False)
    assert supervisor.join(timeout=10)

    assert runner.max_in_flight == 2
    started = [request.env["GRANARY_ENTITY_ID"] for request in runner.requests]
    assert set(started[:2]) == set(task_ids[:2])
    assert set(started[2:]) == set(task_ids[2:])
    assert loop.summary.succeeded == 4


def test_stop_with_runs_cancels_active_and_pending(
    tmp_path: Path,
    repository: GranaryRepository,
    registry: WorkerRegistry,
) -> None:
    worker = _register(registry, tmp_path / "workspace", last_event_id=repository.latest_event_id())
    runner = FakeRunner(gate=threading.Event())
    supervisor = WorkerSupervisor(registry=registry, options=_options(tmp_path), backend=runner)
    supervisor.start(worker.worker_id)

    _finish_tasks(repository, 2)
    _wait_for(lambda: len(runner.requests) == 1 and len(_runs(registry, worker.worker_id)) == 2)
    registry.request_stop(worker.worker_id, stop_runs=True)
    assert supervisor.join(timeout=10)

    statuses = [run.status for run in _runs(registry, worker.worker_id)]
    assert statuses == [RunStatus.CANCELLED, RunStatus.CANCELLED]
    assert registry.get_worker(worker.worker_id).status is WorkerStatus.STOPPED


def test_cancelled_run_is_observed_by_supervisor(
    tmp_path: Path,
    repository: GranaryRepository,
    registry: WorkerRegistry,
) -> None:
    worker = _register(registry, tmp_path / "workspace", last_event_id=repository.latest_event_id())
    runner = FakeRunner(gate=threading.Event())
    supervisor = WorkerSupervisor(registry=registry, options=_options(tmp_path), backend=runner)
    loop = supervisor.start(worker.worker_id)

    _finish_tasks(repository, 1)
    _wait_for(lambda: len(runner.requests) == 1)
    [run] = _runs(registry, worker.worker_id)
    registry.mark_run_cancelled(run.run_id)
    _wait_for(lambda: loop.summary.cancelled == 1)
    loop.request_stop(stop_runs=False)
    assert supervisor.join(timeout=10)

    assert registry.get_run(run.run_id).status is RunStatus.CANCELLED
    assert len(runner.requests) == 1


def test_missing_instance_puts_worker_in_error(
    tmp_path: Path,
    repository: GranaryRepository,
    registry: WorkerRegistry,
) -> None:
    instance = tmp_path / "workspace"
    _finish_tasks(repository, 1)
    worker = _register(registry, instance)
    supervisor = WorkerSupervisor(
        registry=registry,
        options=_options(tmp_path),
        backend=FakeRunner(),
    )
    supervisor.start(worker.worker_id)
    _wait_for(
        lambda: any(run.status is RunStatus.SUCCEEDED for run in _runs(registry, worker.worker_id)),
    )

    shutil.rmtree(instance)
    assert supervisor.join(timeout=10)

    errored = registry.get_worker(worker.worker_id)
    assert errored.status is WorkerStatus.ERROR
    assert errored.error_message == INSTANCE_MISSING
    assert registry.prune_workers() == [worker.worker_id]
    assert registry.list_runs(worker_id=worker.worker_id) == []


def test_removed_store_directory_is_instance_missing(
    tmp_path: Path,
    repository: GranaryRepository,
    registry: WorkerRegistry,
) -> None:
    instance = tmp_path / "workspace"
    _finish_tasks(repository, 1)
    worker = _register(registry, instance)
    supervisor = WorkerSupervisor(
        registry=registry,
        options=_options(tmp_path),
        backend=FakeRunner(),
    )
    supervisor.start(worker.worker_id)
    _wait_for(
        lambda: any(run.status is RunStatus.SUCCEEDED for run in _runs(registry, worker.worker_id)),
    )

    repository.close()
    shutil.rmtree(instance / ".granary")
    assert supervisor.join(timeout=10)

    errored = registry.get_worker(worker.worker_id)
    assert errored.status is WorkerStatus.ERROR
    assert errored.error_message == INSTANCE_MISSING
    assert instance.is_dir()


def test_worker_on_uninitialized_workspace_does_not_create_store(
    tmp_path: Path,
    registry: WorkerRegistry,
) -> None:
    instance = tmp_path / "empty-workspace"
    instance.mkdir()
    worker = _register(registry, instance)
    supervisor = WorkerSupervisor(
        registry=registry,
        options=_options(tmp_path),
        backend=FakeRunner(),
    )

    supervisor.start(worker.worker_id)
    assert supervisor.join(timeout=10)

    errored = registry.get_worker(worker.worker_id)
    assert errored.status is WorkerStatus.ERROR
    assert errored.error_message == INSTANCE_MISSING
    assert not (instance / ".granary").exists()


def test_reconcile_marks_only_live_workers_with_dead_pids(
    tmp_path: Path,
    registry: WorkerRegistry,
) -> None:
    gone = _register(registry, tmp_path, last_event_id=9)
    alive = _register(registry, tmp_path)
    idle = _register(registry, tmp_path)
    registry.mark_worker_running(gone.worker_id, pid=111)
    registry.mark_worker_running(alive.worker_id, pid=222)

    exited = registry.reconcile_exited_workers(lambda pid: pid == 222)

    assert [worker.worker_id for worker in exited] == [gone.worker_id]
    assert registry.get_worker(gone.worker_id).error_message == WORKER_EXITED
    assert registry.get_worker(alive.worker_id).status is WorkerStatus.RUNNING
    assert registry.get_worker(idle.worker_id).status is WorkerStatus.STARTING
    second_pass = registry.reconcile_exited_workers(lambda _pid: False)
    assert [worker.worker_id for worker in second_pass] == [alive.worker_id]

    assert registry.reset_for_restore(gone.worker_id)
    restored = registry.get_worker(gone.worker_id)
    assert restored.status is WorkerStatus.STARTING
    assert restored.pid is None
    assert restored.last_event_id == 9
    assert not registry.reset_for_restore(idle.worker_id)
