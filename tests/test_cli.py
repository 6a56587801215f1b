from __future__ import annotations

import json
import re
import subprocess
import sys
import threading
import time
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner, Result

from conftest import make_project, make_task
from granary.main import granary
from granary.orchestrator import controllers as orchestrator_controllers
from granary.orchestrator.models import RunCreate, RunStatus, WorkerCreate, WorkerStatus
from granary.orchestrator.registry import WorkerRegistry
from granary.tracker.repository import GranaryRepository

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Tracker & Worker Commands"),
]


def _invoke(*args: str) -> Result:
    return CliRunner().invoke(granary, list(args))


def _created_id(result: Result, prefix: str) -> str:
    assert result.exit_code == 0, result.output
    match = re.search(rf"{prefix}: (\S+)", result.output)
    assert match is not None, result.output
    return match.group(1)


def test_task_flow_with_claim_conflict_and_dependency_gate(granary_env: Path) -> None:
    assert _invoke("init").exit_code == 0
    project_id = _created_id(_invoke("project", "create", "Auth Service"), "Project created")
    first = _created_id(
        _invoke("task", "create", project_id, "T1", "--priority", "P0"),
        "Task created",
    )
    second = _created_id(
        _invoke("task", "create", project_id, "T2", "--priority", "p0", "--depends-on", first),
        "Task created",
    )

    next_task = _invoke("task", "next")
    assert next_task.exit_code == 0
    assert next_task.output.startswith(f"{first} [todo] P0 T1")

    assert _invoke("task", "claim", first, "--owner", "alice").exit_code == 0
    conflict = _invoke("task", "claim", first, "--owner", "bob")
    assert conflict.exit_code == 4
    assert "alice" in conflict.output

    gated = _invoke("task", "start", second, "--owner", "alice")
    assert gated.exit_code == 5
    assert first in gated.output

    assert _invoke("task", "start", first, "--owner", "alice").exit_code == 0
    done = _invoke("task", "done", first, "--owner", "alice", "--output", "schema merged")
    assert done.exit_code == 0
    assert f"Unblocked: {second}" in done.output

    next_task = _invoke("task", "next", "--project", project_id)
    assert next_task.output.startswith(f"{second} [todo] P0 T2")


def test_done_and_block_by_non_holder_exit_with_conflict(
    granary_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    project_id = _created_id(_invoke("project", "create", "Holders"), "Project created")
    task_id = _created_id(_invoke("task", "create", project_id, "held"), "Task created")
    monkeypatch.setenv("GRANARY_SESSION", "alice")
    assert _invoke("task", "claim", task_id).exit_code == 0

    monkeypatch.setenv("GRANARY_SESSION", "bob")
    assert _invoke("task", "claim", task_id).exit_code == 4
    done = _invoke("task", "done", task_id)
    assert done.exit_code == 4
    assert "alice" in done.output
    assert _invoke("task", "block", task_id, "--reason", "taking over").exit_code == 4
    assert json.loads(_invoke("task", "show", task_id, "--json").output)["status"] == "todo"

    monkeypatch.setenv("GRANARY_SESSION", "alice")
    assert _invoke("task", "done", task_id).exit_code == 0


def test_stale_expected_version_exits_with_conflict(granary_env: Path) -> None:
    project_id = _created_id(_invoke("project", "create", "Versions"), "Project created")
    task_id = _created_id(_invoke("task", "create", project_id, "edit me"), "Task created")

    updated = _invoke("task", "update", task_id, "--title", "v2", "--expected-version", "1")
    assert updated.exit_code == 0
    stale = _invoke("task", "update", task_id, "--title", "v3", "--expected-version", "1")

    assert stale.exit_code == 4
    shown = _invoke("task", "show", task_id, "--json")
    assert json.loads(shown.output)["title"] == "v2"


def test_missing_entities_and_bad_input_exit_codes(granary_env: Path) -> None:
    assert _invoke("task", "show", "nope-task-1").exit_code == 3
    project_id = _created_id(_invoke("project", "create", "Inputs"), "Project created")
    assert _invoke("task", "create", project_id, "x", "--priority", "P9").exit_code == 2
    assert _invoke("task", "next", "--project", project_id, "--initiative", "x").exit_code == 2


def test_events_json_lines(granary_env: Path) -> None:
    project_id = _created_id(_invoke("project", "create", "Events"), "Project created")
    task_id = _created_id(_invoke("task", "create", project_id, "logged"), "Task created")

    result = _invoke("events", "--json", "--entity", task_id)

    assert result.exit_code == 0
    [event] = [json.loads(line) for line in result.output.splitlines()]
    assert event["type"] == "task.created"
    assert event["payload"]["title"] == "logged"


def test_session_scopes_next(granary_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    alpha = _created_id(_invoke("project", "create", "Alpha"), "Project created")
    beta = _created_id(_invoke("project", "create", "Beta"), "Project created")
    _invoke("task", "create", alpha, "alpha work", "--priority", "P0")
    beta_task = _created_id(_invoke("task", "create", beta, "beta work"), "Task created")
    session_id = _created_id(
        _invoke("session", "create", "--name", "pair", "--project", beta),
        "Session created",
    )
    monkeypatch.setenv("GRANARY_SESSION", session_id)

    result = _invoke("task", "next")

    assert result.output.startswith(beta_task)
    assert "export GRANARY_SESSION" not in result.output


def test_checkpoint_round_trip(granary_env: Path) -> None:
    project_id = _created_id(_invoke("project", "create", "Snap"), "Project created")
    assert _invoke("checkpoint", "create", "base").exit_code == 0
    assert _invoke("checkpoint", "create", "base").exit_code == 2
    _invoke("task", "create", project_id, "after snapshot")

    restored = _invoke("checkpoint", "restore", "base")

    assert restored.exit_code == 0
    assert "tasks=0" in restored.output
    assert "Tasks: 0" in _invoke("task", "list").output


def test_worker_stop_and_prune_for_errored_worker(tmp_path: Path, granary_env: Path) -> None:
    registry = WorkerRegistry(tmp_path / "home" / "workers.db")
    registry.init_schema()
    worker = registry.create_worker(
        WorkerCreate(command="true", event_type="task.done", instance_path=granary_env),
    )
    run = registry.create_run(
        RunCreate(
            worker_id=worker.worker_id,
            event_id=1,
            event_type="task.done",
            entity_id="x-task-1",
            command="true",
            args=[],
        ),
    )
    registry.mark_worker_error(worker.worker_id, error_message="instance_missing")

    status = _invoke("worker", "status")
    assert worker.worker_id in status.output
    assert "error=instance_missing" in status.output

    stopped = _invoke("worker", "stop", worker.worker_id)
    assert stopped.exit_code == 0
    assert "cancelled runs: 1" in stopped.output
    assert registry.get_run(run.run_id).status is RunStatus.CANCELLED

    pruned = _invoke("worker", "prune")
    assert pruned.exit_code == 0
    assert worker.worker_id in pruned.output
    assert _invoke("worker", "status", worker.worker_id).exit_code == 3
    registry.close()


def test_run_control_commands(tmp_path: Path, granary_env: Path) -> None:
    registry = WorkerRegistry(tmp_path / "home" / "workers.db")
    registry.init_schema()
    worker = registry.create_worker(
        WorkerCreate(command="true", event_type="task.done", instance_path=granary_env),
    )
    run = registry.create_run(
        RunCreate(
            worker_id=worker.worker_id,
            event_id=7,
            event_type="task.done",
            entity_id="x-task-1",
            command="true",
            args=["--flag"],
        ),
    )

    shown = _invoke("run", "status", run.run_id)
    assert "Status: pending" in shown.output
    assert "Command: true --flag" in shown.output
    assert _invoke("run", "pause", run.run_id).exit_code == 2

    assert _invoke("run", "stop", run.run_id).exit_code == 0
    assert "already cancelled" in _invoke("run", "stop", run.run_id).output
    listed = _invoke("run", "list", "--status", "cancelled")
    assert run.run_id in listed.output
    assert "No log yet" in _invoke("run", "logs", run.run_id).output
    registry.close()


def test_worker_start_requires_runner_and_event(granary_env: Path) -> None:
    assert _invoke("worker", "start", "--on", "task.done").exit_code == 2
    assert _invoke("worker", "start", "--command", "true").exit_code == 2
    assert _invoke("worker", "start", "--runner", "missing", "--on", "task.done").exit_code == 3


def test_worker_start_requires_initialized_workspace(granary_env: Path) -> None:
    result = _invoke("worker", "start", "--command", "true", "--on", "task.done")

    assert result.exit_code == 3
    assert "granary init" in result.output
    assert not (granary_env / ".granary").exists()
    assert "Workers: 0" in _invoke("worker", "status").output


def test_exited_worker_is_reconciled_and_restored(
    tmp_path: Path,
    granary_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    assert _invoke("init").exit_code == 0
    registry = WorkerRegistry(tmp_path / "home" / "workers.db")
    registry.init_schema()
    worker = registry.create_worker(
        WorkerCreate(
            command="true",
            event_type="task.done",
            instance_path=granary_env,
            last_event_id=5,
            detached=True,
        ),
    )
    exited = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    exited.wait()
    registry.mark_worker_running(worker.worker_id, pid=exited.pid)
    run = registry.create_run(
        RunCreate(
            worker_id=worker.worker_id,
            event_id=5,
            event_type="task.done",
            entity_id="x-task-1",
            command="true",
            args=[],
        ),
    )

    status = _invoke("worker", "status")
    assert "error=process_exited" in status.output
    assert registry.get_run(run.run_id).status is RunStatus.CANCELLED

    spawned: list[tuple[str, Path]] = []

    def _fake_spawn(worker_id: str, *, workspace: Path, logs_dir: Path) -> int:
        spawned.append((worker_id, workspace))
        return 4242

    monkeypatch.setattr(orchestrator_controllers, "_spawn_detached", _fake_spawn)
    restored = _invoke("worker", "start", "--restore")

    assert restored.exit_code == 0, restored.output
    assert f"Worker restored: {worker.worker_id}" in restored.output
    assert "cursor 5" in restored.output
    assert spawned == [(worker.worker_id, granary_env)]
    current = registry.get_worker(worker.worker_id)
    assert current.status is WorkerStatus.STARTING
    assert current.last_event_id == 5
    assert current.error_message is None
    assert "No workers to restore" in _invoke("worker", "start", "--restore").output
    registry.close()


def test_foreground_worker_runs_command_per_event(
    tmp_path: Path,
    granary_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("GRANARY_SUPERVISOR_TICK_SECONDS", "0.05")
    monkeypatch.setenv("GRANARY_RETRY_JITTER_SECONDS", "0")
    assert _invoke("init").exit_code == 0
    repository = GranaryRepository(granary_env / ".granary" / "granary.db")
    registry = WorkerRegistry(tmp_path / "home" / "workers.db")
    registry.init_schema()
    failures: list[str] = []

    def _drive() -> None:
        deadline = time.monotonic() + 20
        try:
            while not registry.list_workers(status=WorkerStatus.RUNNING):
                if time.monotonic() > deadline:
                    failures.append("worker never started")
                    return
                time.sleep(0.05)
            [worker] = registry.list_workers(status=WorkerStatus.RUNNING)
            project_id = make_project(repository, "Driven")
            repository.done_task(make_task(repository, project_id, "ship it").task_id)
            succeeded = [RunStatus.SUCCEEDED]
            while not registry.list_runs(worker_id=worker.worker_id, statuses=succeeded):
                if time.monotonic() > deadline:
                    failures.append("run never succeeded")
                    break
                time.sleep(0.05)
        finally:
            for worker in registry.list_workers():
                registry.request_stop(worker.worker_id, stop_runs=False)

    driver = threading.Thread(target=_drive)
    driver.start()
    result = _invoke(
        "worker",
        "start",
        "--command",
        sys.executable,
        "--arg=-c",
        "--arg=import sys; print('done', sys.argv[1])",
        "--arg={task.id}",
        "--on",
        "task.done",
    )
    driver.join(timeout=30)

    assert failures == []
    assert result.exit_code == 0, result.output
    assert "stopped" in result.output
    assert "succeeded=1" in result.output
    [run] = registry.list_runs()
    assert "done " in Path(run.log_path or "").read_text(encoding="utf-8")
    worker_log = tmp_path / "home" / "logs" / run.worker_id / "worker.log"
    assert run.run_id in worker_log.read_text(encoding="utf-8")
    registry.close()
    repository.close()
