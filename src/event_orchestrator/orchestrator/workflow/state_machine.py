from __future__ import annotations

from enum import Enum


class IllegalTransitionError(ValueError):
    pass


class JobStatus(str, Enum):
    NEW = "new"
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


# `done -> pending` is only taken when a rule re-opens a finished job.
JOB_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.NEW: {JobStatus.PENDING, JobStatus.DONE, JobStatus.FAILED},
    JobStatus.PENDING: {JobStatus.PENDING, JobStatus.DONE, JobStatus.FAILED},
    JobStatus.FAILED: {JobStatus.PENDING, JobStatus.DONE, JobStatus.FAILED},
    JobStatus.DONE: {JobStatus.PENDING, JobStatus.DONE},
}


def transition_job(*, current: JobStatus, to: JobStatus) -> JobStatus:
    allowed = JOB_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal job transition: {current.value} -> {to.value}")
    return to


class DispatchState(str, Enum):
    """Where an event is in the action dispatcher.

    Terminal states: SKIPPED, DEFERRED, MUTED, PROCESSED, UNPROCESSED, FAILED.
    """

    RECEIVED = "received"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    RULE_LOOKUP = "rule_lookup"
    MUTED = "muted"
    ACTION_INVOKED = "action_invoked"
    FALLBACK_INVOKED = "fallback_invoked"
    PROCESSED = "processed"
    UNPROCESSED = "unprocessed"
    FAILED = "failed"


_OUTCOMES: set[DispatchState] = {
    DispatchState.PROCESSED,
    DispatchState.UNPROCESSED,
    DispatchState.FAILED,
}

DISPATCH_TRANSITIONS: dict[DispatchState, set[DispatchState]] = {
    DispatchState.RECEIVED: {
        DispatchState.SKIPPED,
        DispatchState.DEFERRED,
        DispatchState.RULE_LOOKUP,
    },
    DispatchState.RULE_LOOKUP: {
        DispatchState.MUTED,
        DispatchState.FAILED,
        DispatchState.ACTION_INVOKED,
    },
    DispatchState.ACTION_INVOKED: {DispatchState.FALLBACK_INVOKED} | _OUTCOMES,
    DispatchState.FALLBACK_INVOKED: set(_OUTCOMES),
}


def advance(current: DispatchState, to: DispatchState) -> DispatchState:
    allowed = DISPATCH_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")
    return to
