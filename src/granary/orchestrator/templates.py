"""Substitution of ``{token}`` placeholders in runner argument templates."""

from __future__ import annotations

import logging
import re
from typing import Any

from granary.storage.common import dump_json
from granary.tracker.events import MISSING, resolve_field
from granary.tracker.models import EntityType, EventView

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.]*)\}")


def build_context(event: EventView) -> dict[str, str]:
    """Well-known tokens for an event; payload paths are resolved on demand."""

    payload = event.payload
    context = {
        "event.id": str(event.event_id),
        "event.type": event.event_type,
        "entity.id": event.entity_id,
        "entity.type": event.entity_type,
        "output": _text(payload.get("output")),
    }
    if event.entity_type == EntityType.TASK.value:
        context["task.id"] = event.entity_id
        context["project.id"] = _text(payload.get("project_id"))
    elif event.entity_type == EntityType.PROJECT.value:
        context["project.id"] = event.entity_id
    return context


def render_args(args: list[str], event: EventView) -> list[str]:
    """Render every argument; unknown tokens become empty strings with a warning."""

    context = build_context(event)

    def _replace(match: re.Match[str]) -> str:
        token = match.group(1)
        if token in context:
            return context[token]
        value = resolve_field(event.payload, token.removeprefix("payload."))
        if value is not MISSING:
            return _text(value)
        logger.warning(
            "Template token {%s} unresolved for event %s; substituting empty string",
            token,
            event.event_id,
        )
        return ""

    return [_TOKEN_PATTERN.sub(_replace, arg) for arg in args]


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(_text(item) for item in value)
    if isinstance(value, dict):
        return dump_json(value)
    return str(value)
