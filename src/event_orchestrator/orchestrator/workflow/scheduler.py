"""Scheduler poll: surface events whose not-before time has passed.

Due events are put back on the engine's own queue as `event_exec`
commands so that any free worker can run them.
"""

from __future__ import annotations

import logging

from event_orchestrator.orchestrator.context import EngineContext
from event_orchestrator.orchestrator.workflow.events import Event

logger = logging.getLogger(__name__)

EVENT_EXEC = "event_exec"


def pending_events(ctx: EngineContext, now: int | None = None) -> list[Event]:
    """Events with `when` in [0, now] that are not processed yet."""

    cutoff = now if now is not None else ctx.now()
    docs = ctx.events.query(
        ctx.settings.pending_view, start_key=0, end_key=cutoff, include_docs=True
    )

    events = [Event.model_validate(doc) for doc in docs if not doc.get("processed")]
    if not events:
        logger.info("No pending events", extra={"cutoff": cutoff})
    return events


def trigger_events(ctx: EngineContext, now: int | None = None) -> int:
    """Re-enqueue every due event as an `event_exec` command."""

    events = pending_events(ctx, now)
    for event in events:
        ctx.transport.publish(
            ctx.settings.queue,
            {"data": {"command": EVENT_EXEC, "options": event.to_doc()}},
        )
    if events:
        logger.info("Pending events triggered", extra={"count": len(events)})
    return len(events)
