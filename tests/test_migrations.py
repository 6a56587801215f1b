from pathlib import Path

import allure
from sqlalchemy import text

from granary.orchestrator.registry import WorkerRegistry
from granary.storage.alembic_runner import HEAD_REVISION
from granary.tracker.repository import GranaryRepository

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def _table_names(engine) -> list[str]:
    with engine.connect() as connection:
        rows = connection.execute(
            text(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name",
            ),
        ).fetchall()
    return [str(row[0]) for row in rows]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = GranaryRepository(tmp_path / "nested" / "granary.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    assert version == HEAD_REVISION
    assert _table_names(repository.engine) == [
        "alembic_version",
        "checkpoints",
        "events",
        "initiative_projects",
        "initiatives",
        "project_dependencies",
        "projects",
        "runs",
        "session_projects",
        "sessions",
        "task_dependencies",
        "tasks",
        "workers",
    ]
    repository.close()


def test_sqlite_pragmas_are_applied(tmp_path: Path) -> None:
    registry = WorkerRegistry(tmp_path / "workers.db", busy_timeout_ms=1234)
    registry.init_schema()

    with registry.engine.connect() as connection:
        assert connection.execute(text("PRAGMA journal_mode")).scalar_one() == "wal"
        assert connection.execute(text("PRAGMA foreign_keys")).scalar_one() == 1
        assert connection.execute(text("PRAGMA busy_timeout")).scalar_one() == 1234
    registry.close()
