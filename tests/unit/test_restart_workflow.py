"""Unit tests for event-driven resumption and stopping of waiting jobs."""

from __future__ import annotations

import logging
from typing import Any

import pytest

from event_orchestrator.orchestrator.context import EngineContext
from event_orchestrator.orchestrator.workflow.events import Event, Rule
from event_orchestrator.orchestrator.workflow.jobs import JobQueue
from tests.conftest import NOW, FakeCache, FakeTransport, InMemoryDocumentStore

JOB_ID = "job-1"


@pytest.fixture
def waiting_job(jobs_store: InMemoryDocumentStore) -> dict[str, Any]:
    doc = {
        "_id": JOB_ID,
        "created": NOW - 100,
        "updated": NOW - 100,
        "status": "pending",
        "platform": "shop",
        "message": {
            "meta": {
                "id": JOB_ID,
                "platform": "shop",
                "event_id": "e1",
                "wait_for": "payment",
                "workflow": "invoice_payment",
                "log": ["start", "billing"],
            },
            "data": {
                "command": "invoice_payment",
                "options": {"order_id": "o-1"},
                "response": {"previous": True},
            },
            "status": "waiting",
        },
    }
    jobs_store.put(doc)
    return doc


def _event(**fields: Any) -> Event:
    base: dict[str, Any] = {
        "_id": "e1",
        "backend": "billing",
        "object": "invoice",
        "action": "pay",
        "status": "ok",
        "job_id": JOB_ID,
        "parsed": {"code": "200 OK"},
    }
    base.update(fields)
    return Event.model_validate(base)


def _rule(**fields: Any) -> Rule:
    return Rule.model_validate({"action_type": "restart_workflow", **fields})


def _stored_message(jobs_store: InMemoryDocumentStore) -> dict[str, Any]:
    return jobs_store.docs[JOB_ID]["message"]


@pytest.mark.usefixtures("waiting_job")
def test_restart_resumes_the_job(
    ctx: EngineContext,
    jobs_store: InMemoryDocumentStore,
    transport: FakeTransport,
    cache: FakeCache,
) -> None:
    event = _event()

    assert JobQueue(ctx).restart_workflow(event, _rule()) is True

    assert event.error is None
    assert jobs_store.docs[JOB_ID]["status"] == "pending"

    message = _stored_message(jobs_store)
    assert message["meta"]["event_id"] == "processed"
    assert "wait_for" not in message["meta"]
    assert "status" not in message
    assert message["meta"]["log"] == ["start", "billing"]
    assert message["data"]["response"] == {"previous": True, "code": "200 OK"}

    assert transport.frames("workflow") == [message]
    assert "lock:job-1" not in cache.values


@pytest.mark.usefixtures("waiting_job")
def test_restart_finds_the_job_through_a_view(
    ctx: EngineContext, transport: FakeTransport
) -> None:
    event = _event(job_id=None, order_id="o-1")

    assert JobQueue(ctx).restart_workflow(event, _rule(view="order_id", key="order_id")) is True
    assert len(transport.frames("workflow")) == 1


@pytest.mark.usefixtures("waiting_job")
def test_restart_mode_rewinds_the_visit_log(
    ctx: EngineContext, jobs_store: InMemoryDocumentStore
) -> None:
    JobQueue(ctx).restart_workflow(_event(), _rule(mode="restart"))

    assert _stored_message(jobs_store)["meta"]["log"] == ["start"]


def test_done_job_is_left_alone(
    ctx: EngineContext,
    jobs_store: InMemoryDocumentStore,
    transport: FakeTransport,
    waiting_job: dict[str, Any],
) -> None:
    jobs_store.put({**waiting_job, "status": "done"})
    puts = len(jobs_store.puts)

    assert JobQueue(ctx).restart_workflow(_event(), _rule()) is True

    assert len(jobs_store.puts) == puts
    assert transport.published == []


def test_done_job_is_reopened_when_the_rule_says_so(
    ctx: EngineContext,
    jobs_store: InMemoryDocumentStore,
    waiting_job: dict[str, Any],
) -> None:
    jobs_store.put({**waiting_job, "status": "done"})

    assert JobQueue(ctx).restart_workflow(_event(), _rule(reopen=True)) is True
    assert jobs_store.docs[JOB_ID]["status"] == "pending"


@pytest.mark.usefixtures("waiting_job")
def test_event_the_job_was_not_waiting_for_changes_nothing(
    ctx: EngineContext, jobs_store: InMemoryDocumentStore, transport: FakeTransport
) -> None:
    before = _stored_message(jobs_store)
    puts = len(jobs_store.puts)
    event = _event(_id="e2")

    assert JobQueue(ctx).restart_workflow(event, _rule()) is True

    assert event.error == "job was not waiting for this event"
    assert _stored_message(jobs_store) == before
    assert len(jobs_store.puts) == puts
    assert transport.published == []


@pytest.mark.usefixtures("waiting_job")
def test_failed_conditions_keep_the_job_waiting(
    ctx: EngineContext, jobs_store: InMemoryDocumentStore, transport: FakeTransport
) -> None:
    event = _event()
    rule = _rule(conditions={"log": "start"})

    assert JobQueue(ctx).restart_workflow(event, rule) is False

    assert event.error == "condition log failed: last worker is 'billing', expected 'start'"
    assert _stored_message(jobs_store)["meta"]["event_id"] == "e1"
    assert transport.published == []


@pytest.mark.usefixtures("waiting_job")
def test_conditions_are_checked_against_the_job_message(
    ctx: EngineContext, transport: FakeTransport
) -> None:
    rule = _rule(conditions={"status": {"data->options->order_id": "o-"}})

    assert JobQueue(ctx).restart_workflow(_event(), rule) is True
    assert len(transport.frames("workflow")) == 1


@pytest.mark.usefixtures("waiting_job")
def test_stop_marks_the_job_done(
    ctx: EngineContext, jobs_store: InMemoryDocumentStore, transport: FakeTransport
) -> None:
    event = _event(parsed="cancelled by customer")

    assert JobQueue(ctx).stop_workflow(event, _rule(action_type="stop_workflow")) is True

    assert jobs_store.docs[JOB_ID]["status"] == "done"
    assert _stored_message(jobs_store)["error"] == "cancelled by customer"
    assert transport.published == []


@pytest.mark.usefixtures("waiting_job")
def test_locked_job_is_not_touched(
    ctx: EngineContext,
    jobs_store: InMemoryDocumentStore,
    transport: FakeTransport,
    cache: FakeCache,
) -> None:
    cache.set("lock:job-1", "other-host:9", 600)
    puts = len(jobs_store.puts)

    assert JobQueue(ctx).restart_workflow(_event(), _rule()) is False

    assert len(jobs_store.puts) == puts
    assert cache.values["lock:job-1"] == "other-host:9"
    assert transport.frames("workflow") == []


def test_unknown_job_is_reported(ctx: EngineContext) -> None:
    event = _event(job_id="missing")

    assert JobQueue(ctx).restart_workflow(event, _rule()) is False
    assert event.error == "could not find job using job_id 'missing'"


def test_rule_without_lookup_and_event_without_job(ctx: EngineContext) -> None:
    event = _event(job_id=None)

    assert JobQueue(ctx).restart_workflow(event, _rule()) is False
    assert event.error is not None and event.error.startswith("could not find job")


def test_job_finished_while_waiting_for_its_lock_is_left_alone(
    ctx: EngineContext,
    jobs_store: InMemoryDocumentStore,
    transport: FakeTransport,
    cache: FakeCache,
    waiting_job: dict[str, Any],
) -> None:
    cache.set("lock:job-1", "other-host:9", 600)

    def other_worker_finishes(_delay: float) -> None:
        message = {**waiting_job["message"], "meta": {**waiting_job["message"]["meta"]}}
        message["meta"]["event_id"] = "processed"
        jobs_store.put({**waiting_job, "status": "done", "message": message})
        cache.remove("lock:job-1")

    ctx.sleep = other_worker_finishes
    event = _event()

    assert JobQueue(ctx).restart_workflow(event, _rule()) is True

    assert event.error is None
    assert jobs_store.docs[JOB_ID]["status"] == "done"
    assert _stored_message(jobs_store)["meta"]["event_id"] == "processed"
    assert transport.published == []
    assert "lock:job-1" not in cache.values


def test_job_removed_while_waiting_for_its_lock_is_reported(
    ctx: EngineContext,
    jobs_store: InMemoryDocumentStore,
    transport: FakeTransport,
    cache: FakeCache,
    waiting_job: dict[str, Any],
) -> None:
    cache.set("lock:job-1", "other-host:9", 600)

    def other_worker_removes(_delay: float) -> None:
        del jobs_store.docs[JOB_ID]
        cache.remove("lock:job-1")

    ctx.sleep = other_worker_removes
    event = _event()

    assert JobQueue(ctx).restart_workflow(event, _rule()) is False

    assert event.error == "job job-1 disappeared while waiting for its lock"
    assert transport.published == []
    assert "lock:job-1" not in cache.values


@pytest.mark.usefixtures("waiting_job")
def test_failed_conditions_are_logged_with_job_and_reason(
    ctx: EngineContext, caplog: pytest.LogCaptureFixture
) -> None:
    event = _event()

    with caplog.at_level(logging.WARNING):
        JobQueue(ctx).restart_workflow(event, _rule(conditions={"log": "start"}))

    record = next(r for r in caplog.records if r.getMessage() == "Job conditions not met")
    assert record.job_id == JOB_ID
    assert record.event_id == "e1"
    assert record.error == "condition log failed: last worker is 'billing', expected 'start'"
