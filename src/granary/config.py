"""Runtime configuration for the tracker and the worker supervisor."""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_STATE_DIR_NAME = ".granary"
WORKSPACE_DB_NAME = "granary.db"
GLOBAL_DB_NAME = "workers.db"
RUNNER_CATALOG_NAME = "config.toml"

_ENV_REF_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass(slots=True)
class LeaseSettings:
    """Task claim settings."""

    ttl_seconds: int = 1_800


@dataclass(slots=True)
class RetrySettings:
    """Default backoff parameters for runner retries."""

    base_seconds: float = 5.0
    max_seconds: float = 300.0
    jitter_seconds: float = 1.0
    max_attempts: int = 3


@dataclass(slots=True)
class SupervisorSettings:
    """Worker supervisor loop settings."""

    tick_seconds: float = 1.0
    graceful_shutdown_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    workspace: Path = field(default_factory=Path.cwd)
    db_path: Path = Path(DEFAULT_STATE_DIR_NAME) / WORKSPACE_DB_NAME
    home: Path = field(default_factory=lambda: Path.home() / DEFAULT_STATE_DIR_NAME)
    session_id: str | None = None
    sqlite_busy_timeout_ms: int = 5_000
    lease: LeaseSettings = field(default_factory=LeaseSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)

    @property
    def global_db_path(self) -> Path:
        return self.home / GLOBAL_DB_NAME

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    @property
    def runner_catalog_path(self) -> Path:
        return self.home / RUNNER_CATALOG_NAME

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        workspace: Path | None = None,
    ) -> Settings:
        """Load settings from environment with defaults for local use."""

        resolved_workspace = (
            workspace or Path(os.getenv("GRANARY_WORKSPACE", "") or Path.cwd())
        ).resolve()
        env_db_path = os.getenv("GRANARY_DB_PATH", "").strip()
        if db_path is None:
            db_path = (
                Path(env_db_path)
                if env_db_path
                else resolved_workspace / DEFAULT_STATE_DIR_NAME / WORKSPACE_DB_NAME
            )
        env_home = os.getenv("GRANARY_HOME", "").strip()
        home = Path(env_home) if env_home else Path.home() / DEFAULT_STATE_DIR_NAME
        session_id = os.getenv("GRANARY_SESSION", "").strip() or None

        return cls(
            workspace=resolved_workspace,
            db_path=db_path,
            home=home,
            session_id=session_id,
            sqlite_busy_timeout_ms=_env_int("GRANARY_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            lease=LeaseSettings(
                ttl_seconds=_env_int("GRANARY_LEASE_TTL_SECONDS", 1_800),
            ),
            retry=RetrySettings(
                base_seconds=_env_float("GRANARY_RETRY_BASE_SECONDS", 5.0),
                max_seconds=_env_float("GRANARY_RETRY_MAX_SECONDS", 300.0),
                jitter_seconds=_env_float("GRANARY_RETRY_JITTER_SECONDS", 1.0),
                max_attempts=_env_int("GRANARY_RETRY_MAX_ATTEMPTS", 3),
            ),
            supervisor=SupervisorSettings(
                tick_seconds=_env_float("GRANARY_SUPERVISOR_TICK_SECONDS", 1.0),
                graceful_shutdown_seconds=_env_float(
                    "GRANARY_GRACEFUL_SHUTDOWN_SECONDS",
                    10.0,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any numeric setting is out of range."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("GRANARY_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.lease.ttl_seconds <= 0:
            raise ValueError("GRANARY_LEASE_TTL_SECONDS must be > 0.")
        if self.supervisor.tick_seconds <= 0:
            raise ValueError("GRANARY_SUPERVISOR_TICK_SECONDS must be > 0.")
        if self.supervisor.graceful_shutdown_seconds < 0:
            raise ValueError("GRANARY_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.retry.max_attempts <= 0:
            raise ValueError("GRANARY_RETRY_MAX_ATTEMPTS must be > 0.")
        if self.retry.base_seconds < 0:
            raise ValueError("GRANARY_RETRY_BASE_SECONDS must be >= 0.")
        if self.retry.jitter_seconds < 0:
            raise ValueError("GRANARY_RETRY_JITTER_SECONDS must be >= 0.")
        if self.retry.max_seconds < self.retry.base_seconds:
            raise ValueError(
                "GRANARY_RETRY_MAX_SECONDS must be >= GRANARY_RETRY_BASE_SECONDS.",
            )


@dataclass(slots=True)
class RunnerConfig:
    """Named recipe for spawning an external process on matching events."""

    name: str
    command: str
    args: tuple[str, ...] = ()
    concurrency: int = 1
    on: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    max_attempts: int | None = None
    retry_base_seconds: float | None = None
    retry_max_seconds: float | None = None


def load_runner_catalog(path: Path) -> dict[str, RunnerConfig]:
    """Read ``[runners.<name>]`` tables from a TOML file.

    A missing file is an empty catalog. ``${VAR}`` references in ``args`` and
    ``env`` values are expanded from the process environment.
    """

    if not path.exists():
        return {}
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as error:
        raise ValueError(f"Cannot read runner catalog {path}: {error}") from error

    runners_raw = raw.get("runners", {})
    if not isinstance(runners_raw, dict):
        raise ValueError(f"Invalid runner catalog {path}: 'runners' must be a table.")

    catalog: dict[str, RunnerConfig] = {}
    for name, section in runners_raw.items():
        catalog[name] = _parse_runner(name, section, path=path)
    return catalog


def expand_env_refs(value: str) -> str:
    """Replace ``${VAR}`` with the environment value (empty when unset)."""

    return _ENV_REF_PATTERN.sub(lambda match: os.getenv(match.group(1), ""), value)


def _parse_runner(name: str, section: object, *, path: Path) -> RunnerConfig:
    if not isinstance(section, dict):
        raise ValueError(f"Invalid runner {name!r} in {path}: expected a table.")
    command = section.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ValueError(f"Runner {name!r} in {path} requires a non-empty 'command'.")

    args_raw = section.get("args", [])
    if not isinstance(args_raw, list) or not all(isinstance(item, str) for item in args_raw):
        raise ValueError(f"Runner {name!r} in {path}: 'args' must be a list of strings.")

    concurrency = section.get("concurrency", 1)
    if not isinstance(concurrency, int) or concurrency <= 0:
        raise ValueError(f"Runner {name!r} in {path}: 'concurrency' must be a positive integer.")

    on = section.get("on")
    if on is not None and not isinstance(on, str):
        raise ValueError(f"Runner {name!r} in {path}: 'on' must be a string.")

    env_raw = section.get("env", {})
    if not isinstance(env_raw, dict):
        raise ValueError(f"Runner {name!r} in {path}: 'env' must be a table.")

    max_attempts = section.get("max_attempts")
    if max_attempts is not None and (not isinstance(max_attempts, int) or max_attempts <= 0):
        raise ValueError(f"Runner {name!r} in {path}: 'max_attempts' must be > 0.")

    return RunnerConfig(
        name=name,
        command=command,
        args=tuple(expand_env_refs(item) for item in args_raw),
        concurrency=concurrency,
        on=on,
        env={str(key): expand_env_refs(str(value)) for key, value in env_raw.items()},
        max_attempts=max_attempts,
        retry_base_seconds=_optional_float(section, "retry_base_seconds", name=name, path=path),
        retry_max_seconds=_optional_float(section, "retry_max_seconds", name=name, path=path),
    )


def _optional_float(section: dict, key: str, *, name: str, path: Path) -> float | None:
    value = section.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float) or value < 0:
        raise ValueError(f"Runner {name!r} in {path}: {key!r} must be a non-negative number.")
    return float(value)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error
