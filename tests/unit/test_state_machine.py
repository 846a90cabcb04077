"""Unit tests for the job status and dispatch state machines.

Illegal transitions must fail loudly.
"""

from __future__ import annotations

import pytest

from event_orchestrator.orchestrator.workflow.state_machine import (
    DispatchState,
    IllegalTransitionError,
    JobStatus,
    advance,
    transition_job,
)


def test_done_job_can_be_reopened_but_not_failed() -> None:
    assert transition_job(current=JobStatus.DONE, to=JobStatus.PENDING) == JobStatus.PENDING
    with pytest.raises(IllegalTransitionError):
        transition_job(current=JobStatus.DONE, to=JobStatus.FAILED)


def test_no_job_goes_back_to_new() -> None:
    for status in JobStatus:
        with pytest.raises(IllegalTransitionError):
            transition_job(current=status, to=JobStatus.NEW)


def test_dispatch_path() -> None:
    state = advance(DispatchState.RECEIVED, DispatchState.RULE_LOOKUP)
    state = advance(state, DispatchState.ACTION_INVOKED)
    state = advance(state, DispatchState.FALLBACK_INVOKED)

    assert advance(state, DispatchState.PROCESSED) == DispatchState.PROCESSED


def test_terminal_dispatch_states_have_no_exit() -> None:
    with pytest.raises(IllegalTransitionError):
        advance(DispatchState.MUTED, DispatchState.ACTION_INVOKED)
    with pytest.raises(IllegalTransitionError):
        advance(DispatchState.RECEIVED, DispatchState.PROCESSED)
