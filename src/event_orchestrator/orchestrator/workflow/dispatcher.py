"""Action dispatcher: resolve an event to its rule, run the action (and the
fallback), then record the outcome on the event.

received -> rule_lookup -> {muted | action_invoked} -> [fallback_invoked]
         -> {processed | unprocessed | failed}

Store failures and malformed rule or job documents never leave this module:
they end up in the event's `error` field like every other failure.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError as PydanticValidationError

from event_orchestrator.orchestrator.context import EngineContext
from event_orchestrator.orchestrator.errors import RuleNotFoundError, StoreError, ValidationError
from event_orchestrator.orchestrator.workflow.actions import run_action
from event_orchestrator.orchestrator.workflow.events import Event, MuteList, Rule
from event_orchestrator.orchestrator.workflow.state_machine import DispatchState, advance

logger = logging.getLogger(__name__)


def load_mute_list(ctx: EngineContext) -> MuteList:
    doc = ctx.events.get(ctx.settings.mute_list_id)
    if not doc:
        return MuteList()
    try:
        return MuteList.model_validate(doc)
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic("invalid mute list", e) from e


def find_rule(ctx: EngineContext, name: str) -> Rule | None:
    """First rule stored for the event name `name`.

    Raises:
        ValidationError: the stored rule document is malformed.
        StoreError: the rule view could not be queried.
    """

    docs = ctx.events.query(ctx.settings.rules_view, key=name, include_docs=True)
    if not docs:
        return None
    try:
        return Rule.model_validate(docs[0])
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(f"invalid rule {name}", e) from e


def save_event(ctx: EngineContext, event: Event) -> bool:
    """Write the event back in place; store failures end up on the event."""

    try:
        event.id, event.rev = ctx.events.put(event.to_doc())
    except StoreError as e:
        event.error = str(e)
        logger.error("Saving event failed", extra={"event_id": event.id, "error": str(e)})
        return False
    return True


def _report_error(ctx: EngineContext, event: Event) -> None:
    logger.error(
        "Event failed", extra={"event_id": event.id, "event": event.name(), "error": event.error}
    )
    ctx.notify(f"[{event.id}] {event.name()}: {event.error}")
    ctx.graph(event.metric_namespace, "failed", 1)


def _fail(ctx: EngineContext, event: Event, state: DispatchState) -> DispatchState:
    _report_error(ctx, event)
    save_event(ctx, event)
    return advance(state, DispatchState.FAILED)


def _invoke(ctx: EngineContext, action_type: str | None, event: Event, rule: Rule) -> bool:
    try:
        return run_action(ctx, action_type, event, rule)
    except (StoreError, ValidationError) as e:
        event.error = str(e)
        logger.error(
            "Action failed",
            extra={"event_id": event.id, "action_type": action_type, "error": event.error},
        )
        return False


def exec_event(ctx: EngineContext, event: Event) -> DispatchState:
    """Run the action configured for `event` and record the outcome."""

    state = DispatchState.RECEIVED

    if not event.id:
        logger.warning("Refusing to execute an event without id", extra={"event": event.name()})
        return advance(state, DispatchState.SKIPPED)

    if event.processed:
        logger.info("Event already processed", extra={"event_id": event.id})
        return advance(state, DispatchState.SKIPPED)

    if event.when and event.when > ctx.now():
        logger.debug("Event deferred", extra={"event_id": event.id, "when": event.when})
        return advance(state, DispatchState.DEFERRED)

    # A retried event starts with a clean slate.
    event.error = None

    state = advance(state, DispatchState.RULE_LOOKUP)
    name = event.name()

    try:
        if load_mute_list(ctx).is_muted(name):
            logger.info("Event muted", extra={"event_id": event.id, "event": name})
            return advance(state, DispatchState.MUTED)
        rule = find_rule(ctx, name)
    except (StoreError, ValidationError) as e:
        event.error = str(e)
        return _fail(ctx, event, state)

    if rule is None:
        event.error = str(RuleNotFoundError(name))
        return _fail(ctx, event, state)

    state = advance(state, DispatchState.ACTION_INVOKED)
    processed = _invoke(ctx, rule.action_type, event, rule)

    if not processed and rule.fallback_action_type:
        state = advance(state, DispatchState.FALLBACK_INVOKED)
        logger.info(
            "Invoking fallback action",
            extra={"event_id": event.id, "action_type": rule.fallback_action_type},
        )
        processed = _invoke(ctx, rule.fallback_action_type, event, rule)

    if event.error:
        _report_error(ctx, event)

    if not processed:
        if event.error:
            # Keep the failure visible to operators; it is not retried.
            save_event(ctx, event)
            return advance(state, DispatchState.FAILED)
        return advance(state, DispatchState.UNPROCESSED)

    event.processed = ctx.now()
    save_event(ctx, event)
    if not event.error:
        ctx.graph(event.metric_namespace, "done", 1)
    logger.info(
        "Event processed",
        extra={"event_id": event.id, "event": name, "error": event.error},
    )
    return advance(state, DispatchState.PROCESSED)
