"""Named full snapshots of the workspace store, restorable atomically."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime
from sqlalchemy import insert as sa_insert
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, col, delete, select

from granary.storage.common import dump_json, from_iso, to_db_datetime, to_utc_aware
from granary.storage.sqlmodel_models import SNAPSHOT_TABLES, Checkpoint
from granary.tracker.errors import AlreadyExistsError, NotFoundError, ValidationError
from granary.tracker.models import CheckpointView, EntityType, EventType
from granary.tracker.repository import GranaryRepository, record_event

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = 1


class CheckpointManager:
    """Create, list, restore and prune checkpoints.

    Events and checkpoints themselves are not part of a snapshot: the event
    log is append-only and survives restores.
    """

    def __init__(self, repository: GranaryRepository) -> None:
        self.repository = repository

    def create(self, name: str, *, overwrite: bool = False) -> CheckpointView:
        if not name.strip():
            raise ValidationError("Checkpoint name must not be empty")
        now = self.repository.clock()
        checkpoint_id = f"chk-{uuid4().hex[:8]}"
        with Session(self.repository.engine) as session:
            # Claim the name first so the snapshot below is read under the write lock.
            if overwrite:
                session.exec(delete(Checkpoint).where(col(Checkpoint.name) == name))
            row = Checkpoint(
                id=checkpoint_id,
                name=name,
                snapshot_json="{}",
                created_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise AlreadyExistsError(f"Checkpoint already exists: {name}") from error

            tables = {
                table.__tablename__: _dump_table(session, table) for table in SNAPSHOT_TABLES
            }
            row.snapshot_json = dump_json({"format": SNAPSHOT_FORMAT, "tables": tables})
            session.add(row)
            row_counts = {table_name: len(rows) for table_name, rows in tables.items()}
            record_event(
                session,
                event_type=EventType.CHECKPOINT_CREATED,
                entity_type=EntityType.CHECKPOINT,
                entity_id=checkpoint_id,
                payload={"name": name, "row_counts": row_counts},
                now=now,
            )
            session.commit()
        logger.info("Checkpoint %s created (%s)", name, row_counts)
        return CheckpointView(
            checkpoint_id=checkpoint_id,
            name=name,
            created_at=to_utc_aware(to_db_datetime(now)),
            row_counts=row_counts,
        )

    def restore(self, name: str) -> CheckpointView:
        """Replace live state with the snapshot in a single transaction."""

        checkpoint = self._get_row(name)
        snapshot = json.loads(checkpoint.snapshot_json)
        tables: dict[str, list[dict[str, Any]]] = snapshot.get("tables", {})
        now = self.repository.clock()

        with Session(self.repository.engine) as session:
            for table in reversed(SNAPSHOT_TABLES):
                session.exec(delete(table))
            for table in SNAPSHOT_TABLES:
                rows = [_load_row(table, raw) for raw in tables.get(table.__tablename__, [])]
                if rows:
                    session.exec(sa_insert(table), params=rows)
            record_event(
                session,
                event_type=EventType.CHECKPOINT_RESTORED,
                entity_type=EntityType.CHECKPOINT,
                entity_id=checkpoint.id,
                payload={"name": name},
                now=now,
            )
            session.commit()
        logger.info("Checkpoint %s restored", name)
        return _to_view(checkpoint, tables)

    def get(self, name: str) -> CheckpointView:
        row = self._get_row(name)
        return _to_view(row, json.loads(row.snapshot_json).get("tables", {}))

    def list(self) -> list[CheckpointView]:
        with Session(self.repository.engine) as session:
            rows = session.exec(select(Checkpoint).order_by(col(Checkpoint.created_at))).all()
        return [_to_view(row, json.loads(row.snapshot_json).get("tables", {})) for row in rows]

    def prune(self, name: str) -> None:
        with Session(self.repository.engine) as session:
            result = session.exec(delete(Checkpoint).where(col(Checkpoint.name) == name))
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(f"Checkpoint not found: {name}")
            session.commit()

    def _get_row(self, name: str) -> Checkpoint:
        with Session(self.repository.engine) as session:
            row = session.exec(select(Checkpoint).where(Checkpoint.name == name)).one_or_none()
        if row is None:
            raise NotFoundError(f"Checkpoint not found: {name}")
        return row


def _dump_table(session: Session, table: type[SQLModel]) -> list[dict[str, Any]]:
    columns = list(table.__table__.columns)  # type: ignore[attr-defined]
    primary_key = [col(getattr(table, column.name)) for column in columns if column.primary_key]
    rows = session.exec(select(table).order_by(*primary_key)).all()
    return [
        {column.name: _dump_value(getattr(row, column.name)) for column in columns}
        for row in rows
    ]


def _dump_value(value: object) -> object:
    if isinstance(value, datetime):
        return to_db_datetime(value).isoformat()
    return value


def _load_row(table: type[SQLModel], raw: dict[str, Any]) -> dict[str, Any]:
    row: dict[str, Any] = {}
    for column in table.__table__.columns:  # type: ignore[attr-defined]
        value = raw.get(column.name)
        if value is not None and isinstance(column.type, DateTime):
            value = to_db_datetime(from_iso(value))
        row[column.name] = value
    return row


def _to_view(row: Checkpoint, tables: dict[str, list[dict[str, Any]]]) -> CheckpointView:
    return CheckpointView(
        checkpoint_id=row.id,
        name=row.name,
        created_at=to_utc_aware(row.created_at),
        row_counts={table_name: len(rows) for table_name, rows in tables.items()},
    )
