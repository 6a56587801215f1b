from __future__ import annotations

import logging
from datetime import UTC, datetime

import allure
import pytest

from granary.orchestrator.templates import build_context, render_args
from granary.tracker.models import EventView

pytestmark = [
    allure.epic("Orchestrator"),
    allure.feature("Argument Templates"),
]


def _event(**payload: object) -> EventView:
    return EventView(
        event_id=42,
        event_type="task.done",
        entity_type="task",
        entity_id="core-1a2b-task-3",
        seq=4,
        payload={"project_id": "core-1a2b", "status": "done", **payload},
        created_at=datetime(2026, 3, 1, tzinfo=UTC),
    )


def test_render_known_tokens() -> None:
    event = _event(output="tests pass", lease=None)

    rendered = render_args(
        ["review", "{task.id}", "--project={project.id}", "--note", "{output}", "{event.id}"],
        event,
    )

    assert rendered == [
        "review",
        "core-1a2b-task-3",
        "--project=core-1a2b",
        "--note",
        "tests pass",
        "42",
    ]


def test_render_payload_paths() -> None:
    event = _event(lease={"owner": "alice"}, dependencies=["a", "b"])

    assert render_args(["{payload.lease.owner}", "{status}", "{dependencies}"], event) == [
        "alice",
        "done",
        "a,b",
    ]


def test_unresolved_token_becomes_empty_with_warning(caplog: pytest.LogCaptureFixture) -> None:
    event = _event()

    with caplog.at_level(logging.WARNING, logger="granary.orchestrator.templates"):
        rendered = render_args(["--owner={payload.owner}", "{not.there}"], event)

    assert rendered == ["--owner=", ""]
    assert "payload.owner" in caplog.text
    assert "not.there" in caplog.text


def test_project_event_context() -> None:
    event = EventView(
        event_id=7,
        event_type="project.completed",
        entity_type="project",
        entity_id="core-1a2b",
        seq=9,
        payload={},
        created_at=datetime(2026, 3, 1, tzinfo=UTC),
    )

    context = build_context(event)

    assert context["project.id"] == "core-1a2b"
    assert context["output"] == ""
    assert "task.id" not in context
