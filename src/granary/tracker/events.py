"""Event subscriptions: type patterns, filter predicates and cursors."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any

from granary.tracker.errors import ValidationError
from granary.tracker.models import EventView
from granary.tracker.repository import GranaryRepository

logger = logging.getLogger(__name__)

MISSING = object()


class FilterOperator(str, Enum):
    EQ = "="
    NE = "!="


@dataclass(slots=True, frozen=True)
class FilterPredicate:
    """``field {=,!=} value`` evaluated against an event payload."""

    field: str
    operator: FilterOperator
    value: str

    def __str__(self) -> str:
        return f"{self.field}{self.operator.value}{self.value}"


def parse_filter(expression: str) -> FilterPredicate:
    text = expression.strip()
    if "!=" in text:
        field_name, value = text.split("!=", 1)
        operator = FilterOperator.NE
    elif "=" in text:
        field_name, value = text.split("=", 1)
        operator = FilterOperator.EQ
    else:
        raise ValidationError(
            f"Invalid filter {expression!r}; expected field=value or field!=value",
        )
    field_name = field_name.strip()
    if not field_name:
        raise ValidationError(f"Invalid filter {expression!r}: empty field name")
    return FilterPredicate(field=field_name, operator=operator, value=value.strip())


def parse_filters(expressions: Iterable[str]) -> list[FilterPredicate]:
    return [parse_filter(expression) for expression in expressions if expression.strip()]


def resolve_field(payload: dict[str, Any], path: str) -> Any:
    """Follow a dotted path through nested dicts; ``MISSING`` if absent."""

    current: Any = payload
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return MISSING
        current = current[part]
    return current


def evaluate(predicate: FilterPredicate, event: EventView) -> bool:
    """Apply one predicate; unresolvable fields are a logged non-match."""

    value = resolve_field(event.payload, predicate.field)
    if value is MISSING:
        logger.warning(
            "Filter %s skipped for event %s (%s %s): field %r not present",
            predicate,
            event.event_id,
            event.entity_type,
            event.entity_id,
            predicate.field,
        )
        return False
    equal = _as_text(value) == predicate.value
    return equal if predicate.operator is FilterOperator.EQ else not equal


def matches(
    event: EventView,
    *,
    event_pattern: str | None = None,
    filters: Sequence[FilterPredicate] = (),
) -> bool:
    """True if the event type fits the glob pattern and every filter holds."""

    if event_pattern and not fnmatchcase(event.event_type, event_pattern):
        return False
    return all(evaluate(predicate, event) for predicate in filters)


def _as_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(_as_text(item) for item in value)
    return str(value)


@dataclass(slots=True)
class EventChannel:
    """Pull-based view of the event log for one subscriber.

    ``cursor`` is the id of the last event the subscriber has consumed;
    events are returned in id order, which preserves per-entity sequence.
    """

    repository: GranaryRepository
    event_pattern: str | None = None
    filters: list[FilterPredicate] = field(default_factory=list)
    cursor: int = 0

    def poll(self, *, limit: int = 100) -> list[EventView]:
        """Return matching events after the cursor and advance past everything read."""

        events = self.repository.list_events(after_id=self.cursor, limit=limit)
        if not events:
            return []
        self.cursor = events[-1].event_id
        return [
            event
            for event in events
            if matches(event, event_pattern=self.event_pattern, filters=self.filters)
        ]

