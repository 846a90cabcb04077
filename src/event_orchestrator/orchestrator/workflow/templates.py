"""Name-keyed table of workflows that rules may start."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, TypeAdapter

from event_orchestrator.orchestrator.workflow.events import Event

logger = logging.getLogger(__name__)


class WorkflowTemplate(BaseModel):
    """How to build the start options of one workflow from an event.

    `options` are copied as they are; each name in `event_fields` is read
    from the event (declared field, free-form field or parsed payload) and
    added when present.
    """

    command: str | None = Field(default=None, description="Workflow command; defaults to the name")
    platform: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)
    event_fields: list[str] = Field(default_factory=list)

    def build_options(self, event: Event) -> dict[str, Any]:
        options = dict(self.options)
        for name in self.event_fields:
            value = event.field(name)
            if value is not None:
                options[name] = value
        options.setdefault("event_id", event.id)
        return options

    def resolve_platform(self, event: Event) -> str | None:
        platform = event.field("platform")
        return str(platform) if platform else self.platform


_TEMPLATE_TABLE = TypeAdapter(dict[str, WorkflowTemplate])


def load_templates(path: Path | None) -> dict[str, WorkflowTemplate]:
    if path is None:
        return {}
    templates = _TEMPLATE_TABLE.validate_json(path.read_text(encoding="utf-8"))
    logger.info("Workflow templates loaded", extra={"path": str(path), "count": len(templates)})
    return templates
