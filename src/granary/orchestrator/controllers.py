"""Controllers for worker and run CLI commands."""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from granary.config import RunnerConfig, Settings, load_runner_catalog
from granary.orchestrator.backend import (
    pause_process,
    pid_alive,
    resume_process,
    terminate_pid,
)
from granary.orchestrator.models import (
    INSTANCE_MISSING,
    TERMINAL_RUN_STATUSES,
    WORKER_EXITED,
    RunStatus,
    RunView,
    WorkerCreate,
    WorkerStatus,
    WorkerView,
)
from granary.orchestrator.registry import WorkerRegistry
from granary.orchestrator.supervisor import (
    SupervisorOptions,
    WorkerSupervisor,
    instance_healthy,
    workspace_repository,
)
from granary.tracker.errors import NotFoundError, ValidationError
from granary.tracker.events import parse_filters
from granary.tracker.repository import GranaryRepository

logger = logging.getLogger(__name__)

WORKER_LOG_NAME = "worker.log"


@dataclass(slots=True)
class WorkerStartCommand:
    """CLI input for registering and running a worker."""

    workspace: Path | None
    runner: str | None
    command: str | None
    args: tuple[str, ...]
    on: str | None
    filters: tuple[str, ...]
    env: tuple[str, ...]
    concurrency: int | None
    max_attempts: int | None
    replay: bool
    detach: bool
    worker_id: str | None = None
    restore: bool = False


@dataclass(slots=True)
class WorkerStopCommand:
    worker_id: str | None
    all_workers: bool
    stop_runs: bool


@dataclass(slots=True)
class WorkerStatusCommand:
    worker_id: str | None
    show_all: bool = False


@dataclass(slots=True)
class LogsCommand:
    """CLI input for log tails of a worker or a run."""

    ref: str
    lines: int


@dataclass(slots=True)
class PruneCommand:
    keep_logs: bool = False


@dataclass(slots=True)
class RunListCommand:
    worker_id: str | None
    statuses: tuple[str, ...]
    limit: int


@dataclass(slots=True)
class RunCommand:
    run_id: str


class OrchestratorCliController:
    """Coordinates worker lifecycle and run control commands."""

    def start_worker(self, command: WorkerStartCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        settings.validate()
        with _registry(settings) as registry:
            if command.restore:
                return self._restore_workers(registry, settings=settings)
            if command.worker_id is not None:
                worker = registry.get_worker(command.worker_id)
                if worker.status is not WorkerStatus.STARTING:
                    raise ValidationError(
                        f"Worker {worker.worker_id} is {worker.status.value}; "
                        "cannot start it again",
                    )
            else:
                worker = registry.create_worker(
                    self._worker_create(command, settings=settings),
                )
            if command.detach:
                pid = _spawn_detached(
                    worker.worker_id,
                    workspace=settings.workspace,
                    logs_dir=settings.logs_dir,
                )
                return [
                    f"Worker started: {worker.worker_id} (detached, pid {pid})",
                    f"Logs: {settings.logs_dir / worker.worker_id / WORKER_LOG_NAME}",
                ]
            return self._run_foreground(worker, registry=registry, settings=settings)

    def stop_worker(self, command: WorkerStopCommand) -> list[str]:
        settings = Settings.from_env()
        with _registry(settings) as registry:
            if command.all_workers:
                workers = [
                    worker
                    for worker in registry.list_workers()
                    if worker.status is not WorkerStatus.STOPPED
                ]
            elif command.worker_id is not None:
                workers = [registry.get_worker(command.worker_id)]
            else:
                raise ValidationError("Pass a worker id or --all")
            return [
                _stop_one(registry, worker, stop_runs=command.stop_runs) for worker in workers
            ] or ["No workers to stop"]

    def worker_status(self, command: WorkerStatusCommand) -> list[str]:
        settings = Settings.from_env()
        with _registry(settings) as registry:
            _reconcile_exited(registry)
            if command.worker_id is not None:
                worker = registry.get_worker(command.worker_id)
                runs = registry.list_runs(worker_id=worker.worker_id, limit=10)
                return [*_worker_details(worker), f"Recent runs: {len(runs)}"] + [
                    f"  {_run_line(run)}" for run in runs
                ]
            workers = registry.list_workers()
            if not command.show_all:
                workers = [w for w in workers if w.status is not WorkerStatus.STOPPED]
            active_counts = {
                worker.worker_id: len(
                    registry.list_runs(
                        worker_id=worker.worker_id,
                        statuses=[RunStatus.RUNNING, RunStatus.PAUSED, RunStatus.RETRYING],
                    ),
                )
                for worker in workers
            }
        lines = [f"Workers: {len(workers)}"]
        for worker in workers:
            lines.append(
                f"  {_worker_line(worker)} active_runs={active_counts[worker.worker_id]}",
            )
        return lines

    def worker_logs(self, command: LogsCommand) -> list[str]:
        settings = Settings.from_env()
        with _registry(settings) as registry:
            worker = registry.get_worker(command.ref)
        return _tail(settings.logs_dir / worker.worker_id / WORKER_LOG_NAME, command.lines)

    def prune_workers(self, command: PruneCommand) -> list[str]:
        settings = Settings.from_env()
        with _registry(settings) as registry:
            _reconcile_exited(registry)
            pruned = registry.prune_workers()
        if not command.keep_logs:
            for worker_id in pruned:
                shutil.rmtree(settings.logs_dir / worker_id, ignore_errors=True)
        lines = [f"Pruned workers: {len(pruned)}"]
        lines.extend(f"  {worker_id}" for worker_id in pruned)
        return lines

    def list_runs(self, command: RunListCommand) -> list[str]:
        settings = Settings.from_env()
        statuses = [RunStatus(value) for value in command.statuses] or None
        with _registry(settings) as registry:
            runs = registry.list_runs(
                worker_id=command.worker_id,
                statuses=statuses,
                limit=command.limit,
            )
        lines = [f"Runs: {len(runs)}"]
        lines.extend(f"  {_run_line(run)}" for run in runs)
        return lines

    def run_status(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env()
        with _registry(settings) as registry:
            run = registry.get_run(command.run_id)
        return [
            f"Run: {run.run_id}",
            f"Worker: {run.worker_id}",
            f"Event: {run.event_id} {run.event_type} {run.entity_id}",
            f"Command: {run.command} {' '.join(run.args)}".rstrip(),
            f"Status: {run.status.value}",
            f"Attempt: {run.attempt}/{run.max_attempts}",
            f"Exit code: {run.exit_code if run.exit_code is not None else '-'}",
            f"Error: {run.error_message or '-'}",
            f"Next retry: {run.next_retry_at.isoformat() if run.next_retry_at else '-'}",
            f"Pid: {run.pid or '-'}",
            f"Log: {run.log_path or '-'}",
            f"Started: {run.started_at.isoformat() if run.started_at else '-'}",
            f"Completed: {run.completed_at.isoformat() if run.completed_at else '-'}",
        ]

    def stop_run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env()
        with _registry(settings) as registry:
            run = registry.get_run(command.run_id)
            if run.status in TERMINAL_RUN_STATUSES:
                return [f"Run {run.run_id} is already {run.status.value}"]
            registry.mark_run_cancelled(run.run_id, reason="stopped by user")
            worker = registry.get_worker(run.worker_id)
        # Without a live supervisor nobody else will signal the process.
        if not pid_alive(worker.pid) and pid_alive(run.pid):
            resume_process(run.pid)
            terminate_pid(run.pid)
        return [f"Run stopped: {run.run_id}"]

    def pause_run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env()
        with _registry(settings) as registry:
            run = registry.get_run(command.run_id)
            if run.pid is None or not registry.set_run_paused(run.run_id, paused=True):
                raise ValidationError(
                    f"Run {run.run_id} is {run.status.value}; only running runs pause",
                )
            try:
                pause_process(run.pid)
            except NotFoundError:
                registry.set_run_paused(run.run_id, paused=False)
                raise
        return [f"Run paused: {run.run_id} (pid {run.pid})"]

    def resume_run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env()
        with _registry(settings) as registry:
            run = registry.get_run(command.run_id)
            if run.pid is None or not registry.set_run_paused(run.run_id, paused=False):
                raise ValidationError(
                    f"Run {run.run_id} is {run.status.value}; only paused runs resume",
                )
            resume_process(run.pid)
        return [f"Run resumed: {run.run_id} (pid {run.pid})"]

    def run_logs(self, command: LogsCommand) -> list[str]:
        settings = Settings.from_env()
        with _registry(settings) as registry:
            run = registry.get_run(command.ref)
        log_path = (
            Path(run.log_path)
            if run.log_path
            else settings.logs_dir / run.worker_id / f"{run.run_id}.log"
        )
        return _tail(log_path, command.lines)

    def _worker_create(self, command: WorkerStartCommand, *, settings: Settings) -> WorkerCreate:
        runner = _resolve_runner(command, settings=settings)
        event_type = command.on or runner.on
        if not event_type:
            raise ValidationError("An event type is required: pass --on or set 'on' for the runner")
        filters = list(command.filters)
        parse_filters(filters)

        with _workspace_repository(settings) as repository:
            last_event_id = 0 if command.replay else repository.latest_event_id()

        return WorkerCreate(
            command=runner.command,
            event_type=event_type,
            instance_path=settings.workspace,
            args=list(command.args) if command.args else list(runner.args),
            env={**runner.env, **_parse_env_pairs(command.env)},
            filters=filters,
            runner_name=command.runner,
            concurrency=command.concurrency or runner.concurrency,
            max_attempts=command.max_attempts or runner.max_attempts or settings.retry.max_attempts,
            retry_base_seconds=(
                runner.retry_base_seconds
                if runner.retry_base_seconds is not None
                else settings.retry.base_seconds
            ),
            retry_max_seconds=(
                runner.retry_max_seconds
                if runner.retry_max_seconds is not None
                else settings.retry.max_seconds
            ),
            last_event_id=last_event_id,
            detached=command.detach,
        )

    def _run_foreground(
        self,
        worker: WorkerView,
        *,
        registry: WorkerRegistry,
        settings: Settings,
    ) -> list[str]:
        supervisor = WorkerSupervisor(
            registry=registry,
            options=SupervisorOptions(
                logs_dir=settings.logs_dir,
                tick_seconds=settings.supervisor.tick_seconds,
                graceful_shutdown_seconds=settings.supervisor.graceful_shutdown_seconds,
                jitter_seconds=settings.retry.jitter_seconds,
                busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            ),
        )
        with _worker_log(settings.logs_dir / worker.worker_id / WORKER_LOG_NAME):
            supervisor.run_forever([worker.worker_id])

        final = registry.get_worker(worker.worker_id)
        lines = [f"Worker {final.worker_id} {final.status.value}"]
        for loop in supervisor.loops:
            summary = loop.summary
            lines.append(
                "Worker summary: "
                f"queued={summary.queued} started={summary.started} "
                f"succeeded={summary.succeeded} failed={summary.failed} "
                f"cancelled={summary.cancelled}",
            )
        if final.error_message:
            lines.append(f"Error: {final.error_message}")
        return lines

    def _restore_workers(self, registry: WorkerRegistry, *, settings: Settings) -> list[str]:
        """Relaunch workers whose process exited, resuming from their stored cursor."""

        _reconcile_exited(registry)
        lines = []
        for worker in registry.list_workers(status=WorkerStatus.ERROR):
            if worker.error_message != WORKER_EXITED:
                continue
            if not instance_healthy(worker.instance_path):
                lines.append(f"Worker {worker.worker_id} not restored: {INSTANCE_MISSING}")
                continue
            if not registry.reset_for_restore(worker.worker_id):
                continue
            pid = _spawn_detached(
                worker.worker_id,
                workspace=worker.instance_path,
                logs_dir=settings.logs_dir,
            )
            lines.append(
                f"Worker restored: {worker.worker_id} "
                f"(detached, pid {pid}, cursor {worker.last_event_id})",
            )
        return lines or ["No workers to restore"]


def _resolve_runner(command: WorkerStartCommand, *, settings: Settings) -> RunnerConfig:
    if command.runner is not None:
        catalog = load_runner_catalog(settings.runner_catalog_path)
        runner = catalog.get(command.runner)
        if runner is None:
            raise NotFoundError(
                f"Runner not found: {command.runner} (catalog {settings.runner_catalog_path})",
            )
        return runner
    if not command.command:
        raise ValidationError("Pass --runner or --command")
    return RunnerConfig(name=command.command, command=command.command, args=command.args)


def _parse_env_pairs(pairs: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, separator, value = pair.partition("=")
        if not separator or not key.strip():
            raise ValidationError(f"Invalid --env {pair!r}; expected KEY=VALUE")
        env[key.strip()] = value
    return env


def _reconcile_exited(registry: WorkerRegistry) -> None:
    for worker in registry.reconcile_exited_workers(pid_alive):
        for run in registry.list_runs(
            worker_id=worker.worker_id,
            statuses=[RunStatus.RUNNING, RunStatus.PAUSED],
        ):
            if pid_alive(run.pid):
                resume_process(run.pid)
                terminate_pid(run.pid)
        registry.cancel_open_runs(worker.worker_id, reason="worker process exited")


def _stop_one(registry: WorkerRegistry, worker: WorkerView, *, stop_runs: bool) -> str:
    if worker.status is WorkerStatus.STOPPED:
        return f"Worker {worker.worker_id} already stopped"
    if worker.status is WorkerStatus.ERROR or not pid_alive(worker.pid):
        open_runs = registry.list_runs(
            worker_id=worker.worker_id,
            statuses=[RunStatus.RUNNING, RunStatus.PAUSED],
        )
        cancelled = registry.cancel_open_runs(worker.worker_id, reason="worker stopped")
        if stop_runs:
            for run in open_runs:
                if pid_alive(run.pid):
                    resume_process(run.pid)
                    terminate_pid(run.pid)
        registry.mark_worker_stopped(worker.worker_id)
        return f"Worker {worker.worker_id} stopped (cancelled runs: {len(cancelled)})"
    registry.request_stop(worker.worker_id, stop_runs=stop_runs)
    mode = "killing" if stop_runs else "draining"
    return f"Worker {worker.worker_id} stopping ({mode} in-flight runs)"


def _spawn_detached(worker_id: str, *, workspace: Path, logs_dir: Path) -> int:
    log_path = logs_dir / worker_id / WORKER_LOG_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as log_handle:
        process = subprocess.Popen(  # noqa: S603
            [
                sys.executable,
                "-m",
                "granary.main",
                "worker",
                "start",
                "--worker-id",
                worker_id,
                "--workspace",
                str(workspace),
            ],
            stdout=log_handle,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            start_new_session=True,
        )
    logger.info("Detached worker %s as pid %s", worker_id, process.pid)
    return process.pid


def _tail(path: Path, lines: int) -> list[str]:
    if not path.exists():
        return [f"No log yet: {path}"]
    with path.open(encoding="utf-8", errors="replace") as handle:
        return [line.rstrip("\n") for line in deque(handle, maxlen=lines)]


def _worker_line(worker: WorkerView) -> str:
    label = worker.runner_name or worker.command
    line = (
        f"{worker.worker_id} [{worker.status.value}] on={worker.event_type} runner={label} "
        f"concurrency={worker.concurrency} pid={worker.pid or '-'} instance={worker.instance_path}"
    )
    if worker.error_message:
        line += f" error={worker.error_message}"
    return line


def _worker_details(worker: WorkerView) -> list[str]:
    return [
        f"Worker: {worker.worker_id}",
        f"Status: {worker.status.value}",
        f"Error: {worker.error_message or '-'}",
        f"Runner: {worker.runner_name or '-'}",
        f"Command: {worker.command} {' '.join(worker.args)}".rstrip(),
        f"Event type: {worker.event_type}",
        f"Filters: {', '.join(worker.filters) or '-'}",
        f"Concurrency: {worker.concurrency}",
        f"Max attempts: {worker.max_attempts}",
        f"Instance: {worker.instance_path}",
        f"Pid: {worker.pid or '-'}",
        f"Detached: {'yes' if worker.detached else 'no'}",
        f"Cursor: {worker.last_event_id}",
    ]


def _run_line(run: RunView) -> str:
    return (
        f"{run.run_id} [{run.status.value}] worker={run.worker_id} "
        f"event={run.event_id}:{run.event_type} entity={run.entity_id} "
        f"attempt={run.attempt}/{run.max_attempts} "
        f"exit={run.exit_code if run.exit_code is not None else '-'}"
    )


@contextmanager
def _worker_log(path: Path) -> Iterator[None]:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    package_logger = logging.getLogger("granary")
    previous_level = package_logger.level
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.INFO)
    try:
        yield
    finally:
        package_logger.removeHandler(handler)
        package_logger.setLevel(previous_level)
        handler.close()


@contextmanager
def _registry(settings: Settings) -> Iterator[WorkerRegistry]:
    registry = WorkerRegistry(
        settings.global_db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    registry.init_schema()
    try:
        yield registry
    finally:
        registry.close()


@contextmanager
def _workspace_repository(settings: Settings) -> Iterator[GranaryRepository]:
    if not instance_healthy(settings.workspace):
        raise NotFoundError(
            f"No granary store in {settings.workspace}; run 'granary init' there first",
        )
    repository = workspace_repository(
        settings.workspace,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        yield repository
    finally:
        repository.close()
