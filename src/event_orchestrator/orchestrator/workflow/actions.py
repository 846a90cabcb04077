from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any

from event_orchestrator.orchestrator.context import EngineContext
from event_orchestrator.orchestrator.errors import UnknownActionType, ValidationError
from event_orchestrator.orchestrator.workflow.events import Event, Rule
from event_orchestrator.orchestrator.workflow.jobs import JobQueue

logger = logging.getLogger(__name__)

SUPPORTED_TRANSPORTS: frozenset[str] = frozenset({"hipchat"})


class ActionType(str, Enum):
    """The closed set of things a rule can do.

    Names coming from rule documents that are not in this set resolve to
    UNSUPPORTED rather than failing the lookup.
    """

    BACKEND_CALL = "backend_call"
    NOTIFICATION = "notification"
    START_WORKFLOW = "start_workflow"
    RESTART_WORKFLOW = "restart_workflow"
    STOP_WORKFLOW = "stop_workflow"
    UNSUPPORTED = "unsupported"

    @classmethod
    def resolve(cls, name: str | None) -> ActionType:
        try:
            action_type = cls(name)
        except ValueError:
            return cls.UNSUPPORTED
        return action_type


def run_action(ctx: EngineContext, name: str | None, event: Event, rule: Rule) -> bool:
    """Invoke the action called `name`; returns the "processed" signal."""

    action_type = ActionType.resolve(name)
    logger.debug(
        "Invoking action",
        extra={"event_id": event.id, "action_type": action_type.value, "requested": name},
    )

    if action_type is ActionType.BACKEND_CALL:
        return backend_call(ctx, event, rule)
    elif action_type is ActionType.NOTIFICATION:
        return notification(ctx, event, rule)
    elif action_type is ActionType.START_WORKFLOW:
        return start_workflow(ctx, event, rule)
    elif action_type is ActionType.RESTART_WORKFLOW:
        return JobQueue(ctx).restart_workflow(event, rule)
    elif action_type is ActionType.STOP_WORKFLOW:
        return JobQueue(ctx).stop_workflow(event, rule)
    else:
        event.error = str(UnknownActionType(str(name)))
        return False


def backend_call(ctx: EngineContext, event: Event, _rule: Rule) -> bool:
    """Publish the command carried by the event to the named queue.

    Always reports processed: a backend call must never be retried in a
    loop, so invalid events are only marked with an error.
    """

    queue = event.field("queue")
    command = event.field("command")
    data = event.field("data")

    errors: list[str] = []
    if not queue:
        errors.append("backend_call: queue is missing")
    if not command:
        errors.append("backend_call: command is missing")
    if not isinstance(data, Mapping):
        errors.append("backend_call: data is missing or not a map")
    if errors:
        event.error = "; ".join(errors)
        return True

    frame: dict[str, Any] = {
        "meta": {"event_id": event.id},
        "data": {"command": command, "options": dict(data)},
    }
    platform = event.field("platform")
    if platform:
        frame["meta"]["platform"] = platform

    ctx.transport.publish(str(queue), frame)
    logger.info(
        "Backend call published",
        extra={"event_id": event.id, "queue": queue, "command": command},
    )
    return True


def notification(ctx: EngineContext, event: Event, rule: Rule) -> bool:
    if rule.transport not in SUPPORTED_TRANSPORTS:
        event.error = f"unsupported notification transport: {rule.transport}"
        return False

    if ctx.notifier is None:
        event.error = f"notification transport {rule.transport} is not configured"
        return False

    text = f"[{event.id}] {event.name()}: {rule.message or 'event received'}"
    ctx.notifier.notify(text, rule.room, rule.severity)
    return True


def start_workflow(ctx: EngineContext, event: Event, rule: Rule) -> bool:
    """Start the workflow named by the rule; fire-and-forget."""

    template = ctx.workflows.get(rule.workflow or "")
    if template is None:
        event.error = f"unknown workflow: {rule.workflow}"
        return False

    platform = rule.platform or template.resolve_platform(event)
    try:
        JobQueue(ctx).start_workflow(
            template.command or str(rule.workflow), platform or "", template.build_options(event)
        )
    except ValidationError as e:
        event.error = f"starting workflow {rule.workflow} failed: {e}"
        logger.error(event.error, extra={"event_id": event.id})
    return True
