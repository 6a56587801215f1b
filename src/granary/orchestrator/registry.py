"""Global worker/run registry backed by SQLModel + SQLite.

The registry lives outside any workspace so that workers stay controllable
(stop, prune, status) even when their instance path has disappeared.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, delete, select

from granary.orchestrator.models import (
    ACTIVE_RUN_STATUSES,
    LIVE_WORKER_STATUSES,
    TERMINAL_RUN_STATUSES,
    TERMINAL_WORKER_STATUSES,
    WORKER_EXITED,
    RunCreate,
    RunStatus,
    RunView,
    WorkerCreate,
    WorkerStatus,
    WorkerView,
)
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
from granary.storage.sqlmodel_models import Run, Worker
from granary.tracker.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_NON_TERMINAL_RUN_VALUES = [
    status.value for status in RunStatus if status not in TERMINAL_RUN_STATUSES
]


class WorkerRegistry:
    """Persistence facade for workers and their runs."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    # Workers

    def create_worker(self, payload: WorkerCreate) -> WorkerView:
        if payload.concurrency <= 0:
            raise ValidationError("Worker concurrency must be > 0")
        if payload.max_attempts <= 0:
            raise ValidationError("Worker max_attempts must be > 0")
        now = utc_now()
        worker_id = f"worker-{uuid4().hex[:8]}"
        with Session(self.engine) as session:
            row = Worker(
                id=worker_id,
                runner_name=payload.runner_name,
                command=payload.command,
                args_json=dump_json(list(payload.args)),
                env_json=dump_json(dict(payload.env)) if payload.env else None,
                event_type=payload.event_type,
                filters_json=dump_json(list(payload.filters)) if payload.filters else None,
                concurrency=payload.concurrency,
                max_attempts=payload.max_attempts,
                retry_base_seconds=payload.retry_base_seconds,
                retry_max_seconds=payload.retry_max_seconds,
                instance_path=str(payload.instance_path),
                status=WorkerStatus.STARTING.value,
                detached=payload.detached,
                last_event_id=payload.last_event_id,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_worker_view(row)
        logger.info("Registered worker %s for %s", worker_id, payload.event_type)
        return view

    def get_worker(self, worker_id: str) -> WorkerView:
        with Session(self.engine) as session:
            row = session.get(Worker, worker_id)
            if row is None:
                raise NotFoundError(f"Worker not found: {worker_id}")
            return _to_worker_view(row)

    def list_workers(self, *, status: WorkerStatus | None = None) -> list[WorkerView]:
        with Session(self.engine) as session:
            statement = select(Worker).order_by(col(Worker.created_at), col(Worker.id))
            if status is not None:
                statement = statement.where(Worker.status == status.value)
            rows = session.exec(statement).all()
            return [_to_worker_view(row) for row in rows]

    def mark_worker_running(self, worker_id: str, *, pid: int) -> bool:
        return self._update_worker(
            worker_id,
            allowed={WorkerStatus.STARTING, WorkerStatus.RUNNING},
            values={"status": WorkerStatus.RUNNING.value, "pid": pid, "error_message": None},
        )

    def mark_worker_error(self, worker_id: str, *, error_message: str) -> bool:
        return self._update_worker(
            worker_id,
            allowed={WorkerStatus.STARTING, WorkerStatus.RUNNING, WorkerStatus.STOPPING},
            values={"status": WorkerStatus.ERROR.value, "error_message": error_message},
        )

    def request_stop(self, worker_id: str, *, stop_runs: bool) -> WorkerView:
        """Ask a live worker to stop; its loop finishes the transition."""

        self.get_worker(worker_id)
        self._update_worker(
            worker_id,
            allowed={WorkerStatus.STARTING, WorkerStatus.RUNNING, WorkerStatus.STOPPING},
            values={"status": WorkerStatus.STOPPING.value, "stop_runs": stop_runs},
        )
        return self.get_worker(worker_id)

    def mark_worker_stopped(self, worker_id: str) -> bool:
        now = utc_now()
        return self._update_worker(
            worker_id,
            allowed=set(WorkerStatus),
            values={
                "status": WorkerStatus.STOPPED.value,
                "pid": None,
                "stopped_at": to_db_datetime(now),
            },
        )

    def reconcile_exited_workers(self, is_alive: Callable[[int | None], bool]) -> list[WorkerView]:
        """Move live workers whose process is gone to ``error``; return them."""

        exited = []
        for worker in self.list_workers():
            if worker.status not in LIVE_WORKER_STATUSES or is_alive(worker.pid):
                continue
            if self.mark_worker_error(worker.worker_id, error_message=WORKER_EXITED):
                logger.warning(
                    "Worker %s (pid %s) exited without stopping",
                    worker.worker_id,
                    worker.pid,
                )
                exited.append(worker)
        return exited

    def reset_for_restore(self, worker_id: str) -> bool:
        """Put an errored worker back to ``starting``; its cursor is kept."""

        return self._update_worker(
            worker_id,
            allowed={WorkerStatus.ERROR},
            values={
                "status": WorkerStatus.STARTING.value,
                "pid": None,
                "error_message": None,
                "stop_runs": False,
                "stopped_at": None,
            },
        )

    def update_cursor(self, worker_id: str, *, last_event_id: int) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Worker)
                .where(col(Worker.id) == worker_id, col(Worker.last_event_id) < last_event_id)
                .values(last_event_id=last_event_id, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def prune_workers(self) -> list[str]:
        """Delete stopped/errored workers (and their runs); return removed ids."""

        terminal = [status.value for status in TERMINAL_WORKER_STATUSES]
        statement = (
            delete(Worker).where(col(Worker.status).in_(terminal)).returning(col(Worker.id))
        )
        with Session(self.engine) as session:
            ids = list(session.exec(statement).scalars().all())
            session.commit()
        if ids:
            logger.info("Pruned workers: %s", ", ".join(ids))
        return ids

    # Runs

    def create_run(self, payload: RunCreate) -> RunView:
        now = utc_now()
        run_id = f"run-{uuid4().hex[:8]}"
        with Session(self.engine) as session:
            row = Run(
                id=run_id,
                worker_id=payload.worker_id,
                event_id=payload.event_id,
                event_type=payload.event_type,
                entity_id=payload.entity_id,
                command=payload.command,
                args_json=dump_json(list(payload.args)),
                status=RunStatus.PENDING.value,
                max_attempts=payload.max_attempts,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def get_run(self, run_id: str) -> RunView:
        with Session(self.engine) as session:
            row = session.get(Run, run_id)
            if row is None:
                raise NotFoundError(f"Run not found: {run_id}")
            return _to_run_view(row)

    def run_status(self, run_id: str) -> RunStatus:
        with Session(self.engine) as session:
            value = session.exec(select(Run.status).where(Run.id == run_id)).one_or_none()
        if value is None:
            raise NotFoundError(f"Run not found: {run_id}")
        return RunStatus(value)

    def list_runs(
        self,
        *,
        worker_id: str | None = None,
        statuses: Iterable[RunStatus] | None = None,
        limit: int = 50,
    ) -> list[RunView]:
        with Session(self.engine) as session:
            statement = (
                select(Run).order_by(col(Run.created_at).desc(), col(Run.id).desc()).limit(limit)
            )
            if worker_id is not None:
                statement = statement.where(Run.worker_id == worker_id)
            if statuses is not None:
                statement = statement.where(col(Run.status).in_([s.value for s in statuses]))
            rows = session.exec(statement).all()
            return [_to_run_view(row) for row in rows]

    def mark_run_running(
        self,
        run_id: str,
        *,
        attempt: int,
        pid: int,
        log_path: str,
    ) -> bool:
        now = utc_now()
        values: dict[str, Any] = {
            "status": RunStatus.RUNNING.value,
            "attempt": attempt,
            "pid": pid,
            "log_path": log_path,
            "next_retry_at": None,
        }
        if attempt == 1:
            values["started_at"] = to_db_datetime(now)
        return self._update_run(
            run_id,
            allowed={RunStatus.PENDING, RunStatus.RETRYING},
            values=values,
        )

    def mark_run_retrying(
        self,
        run_id: str,
        *,
        exit_code: int | None,
        error_message: str,
        next_retry_at: datetime,
        attempt: int,
    ) -> bool:
        return self._update_run(
            run_id,
            allowed=set(ACTIVE_RUN_STATUSES) | {RunStatus.PENDING, RunStatus.RETRYING},
            values={
                "status": RunStatus.RETRYING.value,
                "attempt": attempt,
                "exit_code": exit_code,
                "error_message": error_message,
                "next_retry_at": to_db_datetime(next_retry_at),
                "pid": None,
            },
        )

    def mark_run_succeeded(self, run_id: str, *, exit_code: int) -> bool:
        return self._finish_run(run_id, status=RunStatus.SUCCEEDED, exit_code=exit_code)

    def mark_run_failed(
        self,
        run_id: str,
        *,
        exit_code: int | None,
        error_message: str,
        attempt: int | None = None,
    ) -> bool:
        return self._finish_run(
            run_id,
            status=RunStatus.FAILED,
            exit_code=exit_code,
            error_message=error_message,
            attempt=attempt,
        )

    def mark_run_cancelled(self, run_id: str, *, reason: str = "cancelled") -> bool:
        return self._finish_run(run_id, status=RunStatus.CANCELLED, error_message=reason)

    def set_run_paused(self, run_id: str, *, paused: bool) -> bool:
        if paused:
            source, target = RunStatus.RUNNING, RunStatus.PAUSED
        else:
            source, target = RunStatus.PAUSED, RunStatus.RUNNING
        return self._update_run(run_id, allowed={source}, values={"status": target.value})

    def cancel_open_runs(self, worker_id: str, *, reason: str) -> list[str]:
        """Cancel every non-terminal run of a worker; return their ids."""

        with Session(self.engine) as session:
            ids = list(
                session.exec(
                    select(Run.id).where(
                        Run.worker_id == worker_id,
                        col(Run.status).in_(_NON_TERMINAL_RUN_VALUES),
                    ),
                ).all(),
            )
        return [run_id for run_id in ids if self.mark_run_cancelled(run_id, reason=reason)]

    def _finish_run(  # noqa: PLR0913
        self,
        run_id: str,
        *,
        status: RunStatus,
        exit_code: int | None = None,
        error_message: str | None = None,
        attempt: int | None = None,
    ) -> bool:
        now = utc_now()
        values: dict[str, Any] = {
            "status": status.value,
            "completed_at": to_db_datetime(now),
            "next_retry_at": None,
            "pid": None,
        }
        if exit_code is not None:
            values["exit_code"] = exit_code
        if error_message is not None:
            values["error_message"] = error_message
        if attempt is not None:
            values["attempt"] = attempt
        allowed = {s for s in RunStatus if s not in TERMINAL_RUN_STATUSES}
        return self._update_run(run_id, allowed=allowed, values=values)

    def _update_run(
        self,
        run_id: str,
        *,
        allowed: set[RunStatus],
        values: dict[str, Any],
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Run)
                .where(
                    col(Run.id) == run_id,
                    col(Run.status).in_([status.value for status in allowed]),
                )
                .values(updated_at=to_db_datetime(utc_now()), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _update_worker(
        self,
        worker_id: str,
        *,
        allowed: set[WorkerStatus],
        values: dict[str, Any],
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Worker)
                .where(
                    col(Worker.id) == worker_id,
                    col(Worker.status).in_([status.value for status in allowed]),
                )
                .values(updated_at=to_db_datetime(utc_now()), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _to_worker_view(row: Worker) -> WorkerView:
    return WorkerView(
        worker_id=row.id,
        runner_name=row.runner_name,
        command=row.command,
        args=load_json_list(row.args_json),
        env={key: str(value) for key, value in load_json_dict(row.env_json).items()},
        event_type=row.event_type,
        filters=load_json_list(row.filters_json),
        concurrency=row.concurrency,
        max_attempts=row.max_attempts,
        retry_base_seconds=row.retry_base_seconds,
        retry_max_seconds=row.retry_max_seconds,
        instance_path=Path(row.instance_path),
        status=WorkerStatus(row.status),
        error_message=row.error_message,
        stop_runs=row.stop_runs,
        detached=row.detached,
        pid=row.pid,
        last_event_id=row.last_event_id,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        stopped_at=optional_utc_aware(row.stopped_at),
    )


def _to_run_view(row: Run) -> RunView:
    return RunView(
        run_id=row.id,
        worker_id=row.worker_id,
        event_id=row.event_id,
        event_type=row.event_type,
        entity_id=row.entity_id,
        command=row.command,
        args=load_json_list(row.args_json),
        status=RunStatus(row.status),
        exit_code=row.exit_code,
        error_message=row.error_message,
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        next_retry_at=optional_utc_aware(row.next_retry_at),
        pid=row.pid,
        log_path=row.log_path,
        started_at=optional_utc_aware(row.started_at),
        completed_at=optional_utc_aware(row.completed_at),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
