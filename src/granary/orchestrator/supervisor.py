"""Worker supervisor: event-driven, concurrency-limited run execution.

Each worker gets one :class:`WorkerLoop` thread. On every tick it checks the
worker's health and stop requests, pulls matching events from the instance's
event log, queues one run per event (FIFO) and starts queued runs while the
worker's counting semaphore has free slots. Every started run is supervised
by its own :class:`RunExecution` thread, so spawning processes and waiting
for them never blocks the dispatch loop.
"""

from __future__ import annotations

import logging
import os
import random
import signal
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from sqlalchemy.exc import OperationalError

from granary.config import DEFAULT_STATE_DIR_NAME, WORKSPACE_DB_NAME
from granary.orchestrator.backend import RunnerBackend, RunnerRequest, SubprocessRunner
from granary.orchestrator.models import (
    INSTANCE_MISSING,
    TERMINAL_WORKER_STATUSES,
    RunCreate,
    RunStatus,
    RunView,
    WorkerStatus,
    WorkerView,
)
from granary.orchestrator.registry import WorkerRegistry
from granary.orchestrator.retry import RetryPolicy
from granary.orchestrator.templates import render_args
from granary.storage.common import utc_now
from granary.tracker.errors import InstanceMissingError, ProcessSpawnError
from granary.tracker.events import EventChannel, parse_filters
from granary.tracker.models import EventView
from granary.tracker.repository import GranaryRepository

logger = logging.getLogger(__name__)

RepositoryFactory = Callable[[Path], GranaryRepository]


@dataclass(slots=True)
class SupervisorOptions:
    """Timing knobs for worker loops and run executions."""

    logs_dir: Path = field(default_factory=lambda: Path.home() / DEFAULT_STATE_DIR_NAME / "logs")
    tick_seconds: float = 1.0
    graceful_shutdown_seconds: float = 10.0
    jitter_seconds: float = 1.0
    cancel_poll_seconds: float = 0.5
    busy_timeout_ms: int = 5_000


def instance_db_path(instance_path: Path) -> Path:
    return instance_path / DEFAULT_STATE_DIR_NAME / WORKSPACE_DB_NAME


def workspace_repository(instance_path: Path, *, busy_timeout_ms: int = 5_000) -> GranaryRepository:
    """Open the workspace store that lives under ``instance_path``."""

    return GranaryRepository(instance_db_path(instance_path), busy_timeout_ms=busy_timeout_ms)


def instance_healthy(instance_path: Path) -> bool:
    """True when the instance directory exists and its store file is usable."""

    db_path = instance_db_path(instance_path)
    return (
        instance_path.is_dir()
        and os.access(instance_path, os.R_OK | os.X_OK)
        and db_path.is_file()
        and os.access(db_path, os.R_OK | os.W_OK)
    )


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate counters for CLI reporting."""

    queued: int = 0
    started: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0


class RunExecution(threading.Thread):
    """Supervises one run through the retry state machine until it is terminal."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        run: RunView,
        worker: WorkerView,
        registry: WorkerRegistry,
        backend: RunnerBackend,
        policy: RetryPolicy,
        options: SupervisorOptions,
        rng: random.Random,
        on_finish: Callable[[RunExecution], None],
    ) -> None:
        super().__init__(name=f"granary-{run.run_id}", daemon=True)
        self.run_view = run
        self.worker = worker
        self.registry = registry
        self.backend = backend
        self.policy = policy
        self.options = options
        self._random = rng
        self._on_finish = on_finish
        self._cancel = threading.Event()
        self._last_remote_check = 0.0
        self.final_status: RunStatus | None = None

    @property
    def log_path(self) -> Path:
        return self.options.logs_dir / self.worker.worker_id / f"{self.run_view.run_id}.log"

    def cancel(self) -> None:
        self._cancel.set()

    def run(self) -> None:
        try:
            self.final_status = self._execute()
        except Exception as error:
            logger.exception("Run %s crashed", self.run_view.run_id)
            self.registry.mark_run_failed(
                self.run_view.run_id,
                exit_code=None,
                error_message=f"supervisor error: {error}",
            )
            self.final_status = RunStatus.FAILED
        finally:
            self._on_finish(self)

    def _execute(self) -> RunStatus:
        run_id = self.run_view.run_id
        attempt = self.run_view.attempt
        while True:
            if self._cancel_requested():
                return self._finish_cancelled()
            attempt += 1
            try:
                result = self.backend.run(self._request(attempt))
            except ProcessSpawnError as error:
                exit_code = None
                message = str(error)
                transient = error.transient
                logger.warning("Run %s attempt %s could not spawn: %s", run_id, attempt, error)
            else:
                if result.cancelled or self._cancel_requested():
                    return self._finish_cancelled()
                if result.exit_code == 0:
                    self.registry.mark_run_succeeded(run_id, exit_code=0)
                    logger.info("Run %s succeeded on attempt %s", run_id, attempt)
                    return RunStatus.SUCCEEDED
                exit_code = result.exit_code
                message = f"exited with code {exit_code}"
                transient = True

            if not transient or not self.policy.should_retry(attempt):
                self.registry.mark_run_failed(
                    run_id,
                    exit_code=exit_code,
                    error_message=f"{message} (attempt {attempt}/{self.policy.max_attempts})",
                    attempt=attempt,
                )
                logger.warning("Run %s failed after %s attempt(s): %s", run_id, attempt, message)
                return RunStatus.FAILED

            delay = self.policy.delay_after(attempt, rng=self._random)
            if not self.registry.mark_run_retrying(
                run_id,
                exit_code=exit_code,
                error_message=message,
                next_retry_at=utc_now() + timedelta(seconds=delay),
                attempt=attempt,
            ):
                return self._finish_cancelled()
            logger.info(
                "Run %s attempt %s failed (%s); retrying in %.2fs",
                run_id,
                attempt,
                message,
                delay,
            )
            if self._wait_or_cancel(delay):
                return self._finish_cancelled()

    def _request(self, attempt: int) -> RunnerRequest:
        run = self.run_view

        def _on_spawn(pid: int) -> None:
            if not self.registry.mark_run_running(
                run.run_id,
                attempt=attempt,
                pid=pid,
                log_path=str(self.log_path),
            ):
                self._cancel.set()

        return RunnerRequest(
            run_id=run.run_id,
            attempt=attempt,
            command=run.command,
            args=list(run.args),
            log_path=self.log_path,
            cwd=self.worker.instance_path,
            env={
                **self.worker.env,
                "GRANARY_RUN_ID": run.run_id,
                "GRANARY_WORKER_ID": self.worker.worker_id,
                "GRANARY_EVENT_ID": str(run.event_id),
                "GRANARY_EVENT_TYPE": run.event_type,
                "GRANARY_ENTITY_ID": run.entity_id,
                "GRANARY_WORKSPACE": str(self.worker.instance_path),
            },
            cancel_requested=self._cancel_requested,
            on_spawn=_on_spawn,
            graceful_shutdown_seconds=self.options.graceful_shutdown_seconds,
        )

    def _cancel_requested(self) -> bool:
        if self._cancel.is_set():
            return True
        now = time.monotonic()
        if now - self._last_remote_check < self.options.cancel_poll_seconds:
            return False
        self._last_remote_check = now
        if self.registry.run_status(self.run_view.run_id) is RunStatus.CANCELLED:
            self._cancel.set()
            return True
        return False

    def _wait_or_cancel(self, delay: float) -> bool:
        deadline = time.monotonic() + delay
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return self._cancel_requested()
            if self._cancel.wait(min(remaining, self.options.cancel_poll_seconds)):
                return True
            if self._cancel_requested():
                return True

    def _finish_cancelled(self) -> RunStatus:
        self.registry.mark_run_cancelled(self.run_view.run_id)
        logger.info("Run %s cancelled", self.run_view.run_id)
        return RunStatus.CANCELLED


class WorkerLoop(threading.Thread):
    """Scheduling loop of one worker."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        worker: WorkerView,
        registry: WorkerRegistry,
        repository_factory: RepositoryFactory,
        backend: RunnerBackend,
        options: SupervisorOptions,
        rng: random.Random,
    ) -> None:
        super().__init__(name=f"granary-{worker.worker_id}", daemon=True)
        self.worker = worker
        self.registry = registry
        self.repository_factory = repository_factory
        self.backend = backend
        self.options = options
        self._random = rng
        self.policy = RetryPolicy(
            max_attempts=worker.max_attempts,
            base_seconds=worker.retry_base_seconds,
            max_seconds=worker.retry_max_seconds,
            jitter_seconds=options.jitter_seconds,
        )
        self.summary = WorkerRunSummary()
        self._stop_event = threading.Event()
        self._stop_runs = False
        self._slots = threading.BoundedSemaphore(worker.concurrency)
        self._pending: deque[RunView] = deque()
        self._active: dict[str, RunExecution] = {}
        self._lock = threading.Lock()
        self._repository: GranaryRepository | None = None
        self._channel: EventChannel | None = None

    @property
    def worker_id(self) -> str:
        return self.worker.worker_id

    def request_stop(self, *, stop_runs: bool) -> None:
        self._stop_runs = self._stop_runs or stop_runs
        self._stop_event.set()

    def run(self) -> None:
        try:
            self._run()
        except Exception as error:
            logger.exception("Worker %s crashed", self.worker_id)
            self.registry.mark_worker_error(self.worker_id, error_message=str(error))
            self._shutdown(stop_runs=True, final_status=WorkerStatus.ERROR)

    def _run(self) -> None:
        self.registry.mark_worker_running(self.worker_id, pid=os.getpid())
        logger.info(
            "Worker %s watching %s for %s",
            self.worker_id,
            self.worker.instance_path,
            self.worker.event_type,
        )
        final_status = WorkerStatus.STOPPED
        while not self._stop_event.is_set():
            try:
                keep_going = self._tick()
            except InstanceMissingError:
                self._enter_error()
                final_status = WorkerStatus.ERROR
                break
            if not keep_going:
                break
            self._stop_event.wait(self.options.tick_seconds)
        self._shutdown(stop_runs=self._stop_runs, final_status=final_status)

    def _tick(self) -> bool:
        current = self.registry.get_worker(self.worker_id)
        if current.status is WorkerStatus.STOPPING:
            self._stop_runs = self._stop_runs or current.stop_runs
            return False
        if current.status in TERMINAL_WORKER_STATUSES:
            return False
        if not instance_healthy(self.worker.instance_path):
            raise InstanceMissingError(f"Instance path missing: {self.worker.instance_path}")
        try:
            self._consume_events()
        except OperationalError as error:
            if not instance_healthy(self.worker.instance_path):
                raise InstanceMissingError(str(error)) from error
            raise
        self._dispatch()
        return True

    def _consume_events(self) -> None:
        if self._channel is None:
            self._repository = self.repository_factory(self.worker.instance_path)
            self._channel = EventChannel(
                repository=self._repository,
                event_pattern=self.worker.event_type,
                filters=parse_filters(self.worker.filters),
                cursor=self.worker.last_event_id,
            )
        previous_cursor = self._channel.cursor
        for event in self._channel.poll():
            self._enqueue(event)
        if self._channel.cursor != previous_cursor:
            self.registry.update_cursor(self.worker_id, last_event_id=self._channel.cursor)

    def _enqueue(self, event: EventView) -> None:
        run = self.registry.create_run(
            RunCreate(
                worker_id=self.worker_id,
                event_id=event.event_id,
                event_type=event.event_type,
                entity_id=event.entity_id,
                command=self.worker.command,
                args=render_args(self.worker.args, event),
                max_attempts=self.worker.max_attempts,
            ),
        )
        self._pending.append(run)
        self.summary.queued += 1
        logger.info("Queued %s for %s on %s", run.run_id, event.event_type, event.entity_id)

    def _dispatch(self) -> None:
        while self._pending:
            if not self._slots.acquire(blocking=False):
                return
            run = self._pending.popleft()
            if self.registry.run_status(run.run_id) is RunStatus.CANCELLED:
                self._slots.release()
                continue
            execution = RunExecution(
                run=run,
                worker=self.worker,
                registry=self.registry,
                backend=self.backend,
                policy=self.policy,
                options=self.options,
                rng=self._random,
                on_finish=self._run_finished,
            )
            with self._lock:
                self._active[run.run_id] = execution
            self.summary.started += 1
            execution.start()

    def _run_finished(self, execution: RunExecution) -> None:
        with self._lock:
            self._active.pop(execution.run_view.run_id, None)
            if execution.final_status is RunStatus.SUCCEEDED:
                self.summary.succeeded += 1
            elif execution.final_status is RunStatus.FAILED:
                self.summary.failed += 1
            elif execution.final_status is RunStatus.CANCELLED:
                self.summary.cancelled += 1
        self._slots.release()

    def _enter_error(self) -> None:
        logger.error(
            "Worker %s instance path %s is missing or unreadable; no longer consuming events",
            self.worker_id,
            self.worker.instance_path,
        )
        self.registry.mark_worker_error(self.worker_id, error_message=INSTANCE_MISSING)

    def _shutdown(self, *, stop_runs: bool, final_status: WorkerStatus) -> None:
        while self._pending:
            run = self._pending.popleft()
            if self.registry.mark_run_cancelled(run.run_id, reason="worker stopped"):
                self.summary.cancelled += 1
        with self._lock:
            active = list(self._active.values())
        if stop_runs:
            for execution in active:
                execution.cancel()
        for execution in active:
            execution.join()
        if final_status is WorkerStatus.STOPPED:
            self.registry.mark_worker_stopped(self.worker_id)
        if self._repository is not None:
            self._repository.close()
        logger.info("Worker %s is %s", self.worker_id, final_status.value)


class WorkerSupervisor:
    """Owns the worker loops of one process."""

    def __init__(
        self,
        *,
        registry: WorkerRegistry,
        options: SupervisorOptions,
        repository_factory: RepositoryFactory | None = None,
        backend: RunnerBackend | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.registry = registry
        self.options = options
        self.repository_factory = repository_factory or (
            lambda path: workspace_repository(path, busy_timeout_ms=options.busy_timeout_ms)
        )
        self.backend = backend or SubprocessRunner()
        self._random = rng or random.Random()
        self._loops: dict[str, WorkerLoop] = {}
        self._signal_received = False

    @property
    def loops(self) -> list[WorkerLoop]:
        return list(self._loops.values())

    def start(self, worker_id: str) -> WorkerLoop:
        worker = self.registry.get_worker(worker_id)
        loop = WorkerLoop(
            worker=worker,
            registry=self.registry,
            repository_factory=self.repository_factory,
            backend=self.backend,
            options=self.options,
            rng=self._random,
        )
        self._loops[worker_id] = loop
        loop.start()
        return loop

    def stop(self, *, stop_runs: bool) -> None:
        for loop in self._loops.values():
            loop.request_stop(stop_runs=stop_runs)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for every loop; return True if all of them have finished."""

        deadline = None if timeout is None else time.monotonic() + timeout
        for loop in self._loops.values():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            loop.join(remaining)
        return not any(loop.is_alive() for loop in self._loops.values())

    def run_forever(self, worker_ids: list[str]) -> None:
        """Run loops in the foreground until they stop or a signal arrives.

        SIGINT/SIGTERM stop the loops with the ``stop_runs`` flag recorded
        on each worker (drain by default).
        """

        with self._signal_handlers():
            for worker_id in worker_ids:
                self.start(worker_id)
            while any(loop.is_alive() for loop in self._loops.values()):
                if self._signal_received:
                    self._signal_received = False
                    for loop in self._loops.values():
                        stop_runs = self.registry.get_worker(loop.worker_id).stop_runs
                        loop.request_stop(stop_runs=stop_runs)
                self.join(timeout=0.2)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s; stopping workers", signal.Signals(signum).name)
            self._signal_received = True

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
