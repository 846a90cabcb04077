"""Inbound command handling for the engine's own queue.

Frames look like `{"meta": {...}, "data": {"command": ..., "options": {...}}}`.
Recognised commands: `event_add`, `event_exec`, `events_trigger`.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from event_orchestrator.orchestrator.context import EngineContext
from event_orchestrator.orchestrator.errors import StoreError, ValidationError
from event_orchestrator.orchestrator.workflow.dispatcher import exec_event
from event_orchestrator.orchestrator.workflow.events import Event
from event_orchestrator.orchestrator.workflow.ingestion import add_event
from event_orchestrator.orchestrator.workflow.scheduler import EVENT_EXEC, trigger_events

logger = logging.getLogger(__name__)

EVENT_ADD = "event_add"
EVENTS_TRIGGER = "events_trigger"


class FrameHandler:
    """Route one frame to the engine and reply to the caller when asked."""

    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx

    def __call__(self, frame: Mapping[str, Any], reply_to: str | None = None) -> None:
        self.ctx.reset()
        data = frame.get("data")
        data = data if isinstance(data, Mapping) else {}
        command = data.get("command")
        options = data.get("options")
        options = options if isinstance(options, Mapping) else {}

        logger.debug("Frame received", extra={"command": command, "reply_to": reply_to})

        if command == EVENT_ADD:
            self._event_add(frame, options, reply_to)
        elif command == EVENT_EXEC:
            self._event_exec(options)
        elif command == EVENTS_TRIGGER:
            count = trigger_events(self.ctx, _int_or_none(options.get("before")))
            self._reply(frame, reply_to, result={"triggered": count})
        else:
            logger.error("Unknown command", extra={"command": command})
            self._reply(frame, reply_to, error=f"unknown command: {command}")

    def _event_add(
        self, frame: Mapping[str, Any], options: Mapping[str, Any], reply_to: str | None
    ) -> None:
        replied = False

        def ack(event_id: str) -> None:
            nonlocal replied
            replied = True
            self._reply(frame, reply_to, result={"event_id": event_id})

        try:
            add_event(self.ctx, options, reply=ack)
        except (ValidationError, StoreError) as e:
            logger.warning("Event rejected", extra={"error": str(e)})
            if not replied:
                self._reply(frame, reply_to, error=str(e))

    def _event_exec(self, options: Mapping[str, Any]) -> None:
        """Run the stored copy of the event; the frame may be stale or a redelivery."""

        event_id = options.get("_id")
        if not event_id:
            logger.error("event_exec without event id")
            return

        try:
            doc = self.ctx.events.get(str(event_id))
        except StoreError as e:
            # Left unprocessed; the scheduler surfaces it again.
            logger.error("Loading event failed", extra={"event_id": event_id, "error": str(e)})
            return
        if doc is None:
            logger.warning("Event not found", extra={"event_id": event_id})
            return

        try:
            event = Event.model_validate(doc)
        except PydanticValidationError as e:
            logger.error("Invalid event document", extra={"event_id": event_id, "error": str(e)})
            return
        exec_event(self.ctx, event)

    def _reply(
        self,
        frame: Mapping[str, Any],
        reply_to: str | None,
        *,
        result: Mapping[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        if not reply_to or self.ctx.dont_reply:
            return

        response: dict[str, Any] = copy.deepcopy(dict(frame))
        if not isinstance(response.get("data"), dict):
            response["data"] = {}
        data = response["data"]
        if result is not None:
            data["result"] = dict(result)
        if error is not None:
            response["error"] = error
        self.ctx.transport.publish(reply_to, response)


def _int_or_none(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid cutoff", extra={"before": value})
        return None
