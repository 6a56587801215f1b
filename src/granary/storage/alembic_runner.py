"""Programmatic Alembic upgrades for the workspace store and the worker registry."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

PROJECT_ROOT = Path(__file__).resolve().parents[3]
HEAD_REVISION = "20260301_0001"


def alembic_config(db_path: Path) -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Create the parent directory if needed and migrate ``db_path`` to head.

    Both stores share one revision chain, so a workspace DB also carries the
    (empty) registry tables and vice versa.
    """

    db_path.parent.mkdir(parents=True, exist_ok=True)
    command.upgrade(alembic_config(db_path), "head")
