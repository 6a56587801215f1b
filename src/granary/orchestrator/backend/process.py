"""Subprocess-based runner: one external process per run attempt."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time
from typing import IO

from granary.orchestrator.backend.base import RunnerRequest, RunnerResult
from granary.storage.common import utc_now
from granary.tracker.errors import NotFoundError, ProcessSpawnError

logger = logging.getLogger(__name__)

CANCELLED_EXIT_CODE = -signal.SIGTERM


class SubprocessRunner:
    """Spawn the runner command and stream combined output into the run log."""

    def __init__(self, *, poll_interval_seconds: float = 0.1) -> None:
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, request: RunnerRequest) -> RunnerResult:
        request.log_path.parent.mkdir(parents=True, exist_ok=True)
        env = os.environ.copy()
        env.update(request.env)
        argv = [request.command, *request.args]

        with request.log_path.open("a", encoding="utf-8") as log_handle:
            log_handle.write(
                f"--- {utc_now().isoformat()} {request.run_id} attempt {request.attempt}: "
                f"{shlex.join(argv)}\n",
            )
            log_handle.flush()
            process = _spawn(argv, request=request, env=env, log_handle=log_handle)
            if request.on_spawn is not None:
                try:
                    request.on_spawn(process.pid)
                except Exception:
                    _terminate_process(process, graceful_seconds=0)
                    raise
            result = self._wait(process, request=request)
            log_handle.write(
                f"--- {request.run_id} attempt {request.attempt} exited with {result.exit_code}"
                f"{' (cancelled)' if result.cancelled else ''}\n",
            )
        return result

    def _wait(self, process: subprocess.Popen[str], *, request: RunnerRequest) -> RunnerResult:
        while True:
            returncode = process.poll()
            if returncode is not None:
                return RunnerResult(
                    exit_code=returncode,
                    cancelled=False,
                    log_path=request.log_path,
                )
            if request.cancel_requested is not None and request.cancel_requested():
                logger.info("Cancelling %s (pid %s)", request.run_id, process.pid)
                _terminate_process(process, graceful_seconds=request.graceful_shutdown_seconds)
                exit_code = process.returncode
                return RunnerResult(
                    exit_code=exit_code if exit_code is not None else CANCELLED_EXIT_CODE,
                    cancelled=True,
                    log_path=request.log_path,
                )
            time.sleep(self.poll_interval_seconds)


def pause_process(pid: int) -> None:
    _send_signal(pid, signal.SIGSTOP)


def resume_process(pid: int) -> None:
    _send_signal(pid, signal.SIGCONT)


def terminate_pid(pid: int) -> None:
    _send_signal(pid, signal.SIGTERM)


def pid_alive(pid: int | None) -> bool:
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _spawn(
    argv: list[str],
    *,
    request: RunnerRequest,
    env: dict[str, str],
    log_handle: IO[str],
) -> subprocess.Popen[str]:
    try:
        return subprocess.Popen(  # noqa: S603
            argv,
            cwd=request.cwd,
            env=env,
            stdout=log_handle,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError) as error:
        raise ProcessSpawnError(
            f"Runner command cannot be launched: {argv[0]} ({error})",
            transient=False,
        ) from error
    except OSError as error:
        raise ProcessSpawnError(f"Runner command failed to start: {argv[0]} ({error})") from error


def _terminate_process(process: subprocess.Popen[str], *, graceful_seconds: float) -> None:
    try:
        process.terminate()
        # A paused process only acts on SIGTERM once continued.
        os.kill(process.pid, signal.SIGCONT)
    except OSError:
        return
    try:
        process.wait(timeout=max(graceful_seconds, 0.01))
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _send_signal(pid: int, signum: signal.Signals) -> None:
    try:
        os.kill(pid, signum)
    except ProcessLookupError as error:
        raise NotFoundError(f"No process with pid {pid}") from error
