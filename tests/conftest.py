"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from granary.orchestrator.registry import WorkerRegistry
from granary.tracker.models import Priority, ProjectCreate, TaskCreate, TaskView
from granary.tracker.repository import GranaryRepository


class FakeClock:
    """Manually advanced UTC clock for lease expiry tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(tmp_path: Path, clock: FakeClock) -> Iterator[GranaryRepository]:
    repo = GranaryRepository(tmp_path / "workspace" / ".granary" / "granary.db", clock=clock)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def registry(tmp_path: Path) -> Iterator[WorkerRegistry]:
    reg = WorkerRegistry(tmp_path / "home" / "workers.db")
    reg.init_schema()
    yield reg
    reg.close()


@pytest.fixture()
def granary_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate CLI settings: workspace and home under tmp_path, no session."""

    workspace = tmp_path / "workspace"
    workspace.mkdir(exist_ok=True)
    monkeypatch.setenv("GRANARY_WORKSPACE", str(workspace))
    monkeypatch.setenv("GRANARY_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("GRANARY_DB_PATH", raising=False)
    monkeypatch.delenv("GRANARY_SESSION", raising=False)
    return workspace


def make_task(
    repository: GranaryRepository,
    project_id: str,
    title: str,
    *,
    priority: Priority = Priority.P2,
    depends_on: tuple[str, ...] = (),
    draft: bool = False,
) -> TaskView:
    return repository.create_task(
        TaskCreate(
            project_id=project_id,
            title=title,
            priority=priority,
            dependency_ids=list(depends_on),
            draft=draft,
        ),
    )


def make_project(repository: GranaryRepository, name: str) -> str:
    return repository.create_project(ProjectCreate(name=name)).project_id
