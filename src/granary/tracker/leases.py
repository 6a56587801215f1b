"""Lease/claim manager: optimistic, TTL-bounded task ownership."""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlmodel import Session, col, select

from granary.storage.common import to_db_datetime
from granary.storage.sqlmodel_models import Task
from granary.tracker.errors import (
    ConflictError,
    LeaseLostError,
    ValidationError,
    VersionConflict,
)
from granary.tracker.models import EntityType, EventType, TaskStatus, TaskView
from granary.tracker.repository import (
    GranaryRepository,
    record_event,
    task_payload,
    task_view_in,
    update_task_row,
)

logger = logging.getLogger(__name__)


class LeaseManager:
    """Claim, heartbeat and release task leases.

    Expiry is evaluated lazily: an expired lease is treated as absent by every
    operation here, whether or not :meth:`sweep_expired_leases` ran.
    """

    def __init__(self, repository: GranaryRepository, *, default_ttl_seconds: int = 1_800) -> None:
        self.repository = repository
        self.default_ttl_seconds = default_ttl_seconds

    def claim(
        self,
        task_id: str,
        *,
        owner: str,
        ttl_seconds: int | None = None,
        expected_version: int | None = None,
    ) -> TaskView:
        """Take the lease for ``owner`` unless another owner holds a live one."""

        current = self.repository.get_task(task_id)
        _check_version(current, expected_version)
        if current.status is TaskStatus.DRAFT:
            raise ValidationError(f"Task {task_id} is a draft and cannot be claimed")
        if current.status is TaskStatus.DONE:
            raise ValidationError(f"Task {task_id} is already done")

        now = self.repository.clock()
        lease = current.active_lease(now)
        if lease is not None and lease.owner != owner:
            raise ConflictError(
                f"Task {task_id} is claimed by {lease.owner} until {lease.expires_at.isoformat()}",
            )
        ttl = self._ttl(ttl_seconds)
        values = {
            "claim_owner": owner,
            "claim_lease_expires_at": to_db_datetime(now + timedelta(seconds=ttl)),
        }
        if lease is None:
            values["claim_claimed_at"] = to_db_datetime(now)

        with Session(self.repository.engine) as session:
            try:
                update_task_row(
                    session,
                    task_id=task_id,
                    expected_version=current.version,
                    now=now,
                    values=values,
                )
            except VersionConflict:
                self._raise_if_taken(task_id, owner=owner)
                raise
            view = task_view_in(session, task_id)
            record_event(
                session,
                event_type=EventType.TASK_CLAIMED,
                entity_type=EntityType.TASK,
                entity_id=task_id,
                payload=task_payload(view),
                now=now,
            )
            session.commit()
        logger.info("Task %s claimed by %s for %ss", task_id, owner, ttl)
        return view

    def heartbeat(
        self,
        task_id: str,
        *,
        owner: str,
        ttl_seconds: int | None = None,
        expected_version: int | None = None,
    ) -> TaskView:
        """Extend the holder's lease; anyone else gets ``LeaseLostError``."""

        current = self.repository.get_task(task_id)
        _check_version(current, expected_version)
        now = self.repository.clock()
        lease = current.active_lease(now)
        if lease is None or lease.owner != owner:
            raise LeaseLostError(f"{owner} does not hold the lease on task {task_id}")

        with Session(self.repository.engine) as session:
            try:
                update_task_row(
                    session,
                    task_id=task_id,
                    expected_version=current.version,
                    now=now,
                    values={
                        "claim_lease_expires_at": to_db_datetime(
                            now + timedelta(seconds=self._ttl(ttl_seconds)),
                        ),
                    },
                )
            except VersionConflict:
                refreshed = self.repository.get_task(task_id)
                refreshed_lease = refreshed.active_lease(self.repository.clock())
                if refreshed_lease is None or refreshed_lease.owner != owner:
                    raise LeaseLostError(
                        f"{owner} lost the lease on task {task_id}",
                    ) from None
                raise
            view = task_view_in(session, task_id)
            session.commit()
        return view

    def release(
        self,
        task_id: str,
        *,
        owner: str,
        expected_version: int | None = None,
    ) -> TaskView:
        """Drop the lease held by ``owner``; no-op if no live lease exists."""

        current = self.repository.get_task(task_id)
        _check_version(current, expected_version)
        now = self.repository.clock()
        lease = current.active_lease(now)
        if lease is None:
            return current
        if lease.owner != owner:
            raise ConflictError(f"Task {task_id} is claimed by {lease.owner}, not {owner}")

        values: dict[str, object] = {
            "claim_owner": None,
            "claim_claimed_at": None,
            "claim_lease_expires_at": None,
        }
        if current.status is TaskStatus.IN_PROGRESS:
            values["status"] = TaskStatus.TODO.value

        with Session(self.repository.engine) as session:
            update_task_row(
                session,
                task_id=task_id,
                expected_version=current.version,
                now=now,
                values=values,
            )
            view = task_view_in(session, task_id)
            record_event(
                session,
                event_type=EventType.TASK_RELEASED,
                entity_type=EntityType.TASK,
                entity_id=task_id,
                payload={**task_payload(view), "released_by": owner},
                now=now,
            )
            session.commit()
        return view

    def sweep_expired_leases(self) -> list[TaskView]:
        """Clear leases past their expiry and emit ``task.lease_expired``.

        Optional housekeeping; claims never depend on it having run.
        """

        now = self.repository.clock()
        with Session(self.repository.engine) as session:
            candidates = session.exec(
                select(Task.id, Task.version, Task.claim_owner, Task.status).where(
                    col(Task.claim_owner).is_not(None),
                    col(Task.claim_lease_expires_at) <= to_db_datetime(now),
                ),
            ).all()

        swept: list[TaskView] = []
        for task_id, version, previous_owner, status in candidates:
            values: dict[str, object] = {
                "claim_owner": None,
                "claim_claimed_at": None,
                "claim_lease_expires_at": None,
            }
            if status == TaskStatus.IN_PROGRESS.value:
                values["status"] = TaskStatus.TODO.value
            with Session(self.repository.engine) as session:
                try:
                    update_task_row(
                        session,
                        task_id=task_id,
                        expected_version=version,
                        now=now,
                        values=values,
                    )
                except VersionConflict:
                    logger.info("Skipping lease sweep for %s: changed concurrently", task_id)
                    continue
                view = task_view_in(session, task_id)
                record_event(
                    session,
                    event_type=EventType.TASK_LEASE_EXPIRED,
                    entity_type=EntityType.TASK,
                    entity_id=task_id,
                    payload={**task_payload(view), "previous_owner": previous_owner},
                    now=now,
                )
                session.commit()
            swept.append(view)
        if swept:
            logger.info("Swept %s expired lease(s)", len(swept))
        return swept

    def _ttl(self, ttl_seconds: int | None) -> int:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValidationError("Lease TTL must be a positive number of seconds")
        return ttl

    def _raise_if_taken(self, task_id: str, *, owner: str) -> None:
        refreshed = self.repository.get_task(task_id)
        lease = refreshed.active_lease(self.repository.clock())
        if lease is not None and lease.owner != owner:
            raise ConflictError(f"Task {task_id} was claimed concurrently by {lease.owner}")


def _check_version(current: TaskView, expected_version: int | None) -> None:
    if expected_version is not None and expected_version != current.version:
        raise VersionConflict(
            f"Task {current.task_id} is at version {current.version}, "
            f"expected {expected_version}",
        )
