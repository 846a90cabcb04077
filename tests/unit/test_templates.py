"""Unit tests for the workflow template table."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from event_orchestrator.orchestrator.workflow.events import Event
from event_orchestrator.orchestrator.workflow.templates import load_templates


def test_load_templates(tmp_path: Path) -> None:
    path = tmp_path / "workflows.json"
    path.write_text(
        json.dumps(
            {
                "refund": {"command": "refund_order", "event_fields": ["order_id"]},
                "audit": {"platform": "backoffice"},
            }
        ),
        encoding="utf-8",
    )

    templates = load_templates(path)

    assert set(templates) == {"refund", "audit"}
    event = Event(
        _id="e1", backend="a", object="b", action="c", status="d", platform="shop", order_id="o-1"
    )
    assert templates["refund"].build_options(event) == {"order_id": "o-1", "event_id": "e1"}
    assert templates["refund"].resolve_platform(event) == "shop"
    assert templates["audit"].resolve_platform(Event(backend="a", object="b", action="c", status="d")) == "backoffice"


def test_no_template_file_means_no_workflows() -> None:
    assert load_templates(None) == {}


def test_malformed_template_file(tmp_path: Path) -> None:
    path = tmp_path / "workflows.json"
    path.write_text('{"refund": {"options": "not-a-map"}}', encoding="utf-8")

    with pytest.raises(ValidationError):
        load_templates(path)
