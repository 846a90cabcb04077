from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from event_orchestrator.orchestrator.context import EngineContext
from event_orchestrator.orchestrator.errors import ValidationError
from event_orchestrator.orchestrator.workflow.dispatcher import exec_event
from event_orchestrator.orchestrator.workflow.events import Event, missing_name_fields

logger = logging.getLogger(__name__)


def add_event(
    ctx: EngineContext,
    options: Mapping[str, Any],
    reply: Callable[[str], None] | None = None,
) -> str:
    """Validate and persist a new event, acknowledge it, then execute it.

    `reply` is called with the new event id before the action runs, so the
    caller is not kept waiting on the action.

    Raises:
        ValidationError: backend, object, action or status is missing.
        StoreError: the event could not be written.
    """

    missing = missing_name_fields(options)
    if missing:
        raise ValidationError("missing mandatory event fields", missing=tuple(missing))

    doc: dict[str, Any] = {key: value for key, value in options.items() if value is not None}
    doc.pop("_id", None)
    doc.pop("_rev", None)
    doc.setdefault("timestamp", ctx.now())
    doc["type"] = "event"

    try:
        event = Event.model_validate(doc)
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic("invalid event fields", e) from e

    event.id, event.rev = ctx.events.put(event.to_doc())
    logger.info("Event added", extra={"event_id": event.id, "event": event.name()})

    if reply is not None:
        reply(event.id)

    ctx.graph(event.metric_namespace, "new", 1)

    exec_event(ctx, event)
    return event.id
