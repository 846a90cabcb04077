"""Test configuration and fixtures.

The engine's collaborators are replaced by small in-memory fakes that keep
just enough behaviour (views, set-if-absent, recorded publishes) for the
engine to be exercised end to end.
"""

from __future__ import annotations

import copy
import itertools
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from event_orchestrator.orchestrator.config import EngineSettings
from event_orchestrator.orchestrator.context import EngineContext
from event_orchestrator.orchestrator.errors import StoreError

NOW = 1_700_000_000

ViewFn = Callable[[dict[str, Any]], list[Any]]


class InMemoryDocumentStore:
    """Documents keyed by `_id`; views are map functions emitting keys."""

    def __init__(self, views: Mapping[str, ViewFn] | None = None) -> None:
        self.docs: dict[str, dict[str, Any]] = {}
        self.views: dict[str, ViewFn] = dict(views or {})
        self.puts: list[dict[str, Any]] = []
        self.fail_puts = False
        self._ids = itertools.count(1)

    def get(self, doc_id: str) -> dict[str, Any] | None:
        doc = self.docs.get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def put(self, doc: Mapping[str, Any]) -> tuple[str, str]:
        if self.fail_puts:
            raise StoreError("conflict: Document update conflict.")

        stored = copy.deepcopy(dict(doc))
        doc_id = str(stored.get("_id") or f"doc-{next(self._ids)}")
        previous = self.docs.get(doc_id)
        generation = int(previous["_rev"].split("-")[0]) + 1 if previous else 1
        stored["_id"] = doc_id
        stored["_rev"] = f"{generation}-fake"

        self.docs[doc_id] = stored
        self.puts.append(copy.deepcopy(stored))
        return doc_id, stored["_rev"]

    def query(
        self,
        view: str,
        *,
        key: Any = None,
        start_key: Any = None,
        end_key: Any = None,
        include_docs: bool = True,
    ) -> list[dict[str, Any]]:
        if view not in self.views:
            raise StoreError(f"not_found: missing view {view}")

        rows: list[tuple[Any, dict[str, Any]]] = []
        for doc in self.docs.values():
            for emitted in self.views[view](doc):
                if key is not None and emitted != key:
                    continue
                if start_key is not None and emitted < start_key:
                    continue
                if end_key is not None and emitted > end_key:
                    continue
                rows.append((emitted, doc))

        rows.sort(key=lambda row: (str(type(row[0])), row[0]))
        return [copy.deepcopy(doc) for _, doc in rows]


class FakeCache:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key: str) -> str | None:
        return self.values.get(key)

    def set(self, key: str, value: str, ttl: int) -> None:
        self.values[key] = value
        self.ttls[key] = ttl

    def add(self, key: str, value: str, ttl: int) -> bool:
        if key in self.values:
            return False
        self.set(key, value, ttl)
        return True

    def replace(self, key: str, value: str, ttl: int) -> bool:
        if key not in self.values:
            return False
        self.set(key, value, ttl)
        return True

    def remove(self, key: str) -> bool:
        self.ttls.pop(key, None)
        return self.values.pop(key, None) is not None


class FakeTransport:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict[str, Any], str | None]] = []

    def publish(
        self, queue: str, frame: Mapping[str, Any], *, reply_to: str | None = None
    ) -> None:
        self.published.append((queue, copy.deepcopy(dict(frame)), reply_to))

    def frames(self, queue: str) -> list[dict[str, Any]]:
        return [frame for q, frame, _ in self.published if q == queue]


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str | None, str | None]] = []

    def notify(self, text: str, room: str | None = None, severity: str | None = None) -> None:
        self.sent.append((text, room, severity))


class FakeMetrics:
    def __init__(self) -> None:
        self.points: list[tuple[str, str, float]] = []

    def graph(
        self, service: str, state: str, metric: float, description: str | None = None
    ) -> None:
        self.points.append((service, state, metric))


class FakePager:
    def __init__(self) -> None:
        self.triggered: list[tuple[str, str, dict[str, Any]]] = []

    def trigger(
        self, incident_key: str, description: str, details: Mapping[str, Any] | None = None
    ) -> None:
        self.triggered.append((incident_key, description, dict(details or {})))


def _rules_by_event(doc: dict[str, Any]) -> list[Any]:
    return [doc["event"]] if doc.get("type") == "rule" else []


def _pending_events(doc: dict[str, Any]) -> list[Any]:
    if doc.get("type") == "event" and doc.get("when") is not None and not doc.get("processed"):
        return [doc["when"]]
    return []


def _jobs_by_order_id(doc: dict[str, Any]) -> list[Any]:
    options = doc.get("message", {}).get("data", {}).get("options", {})
    return [options["order_id"]] if "order_id" in options else []


@pytest.fixture
def settings() -> EngineSettings:
    """Provide engine settings that ignore any local `.env`."""
    return EngineSettings(_env_file=None, ENGINE_WORKER_NAME="event", CACHE_SYNC_DELAY=0.5)


@pytest.fixture
def events_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore(
        {"rules/by_event": _rules_by_event, "events/pending": _pending_events}
    )


@pytest.fixture
def jobs_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore({"find/order_id": _jobs_by_order_id})


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def metrics() -> FakeMetrics:
    return FakeMetrics()


@pytest.fixture
def pager() -> FakePager:
    return FakePager()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def ctx(
    settings: EngineSettings,
    events_store: InMemoryDocumentStore,
    jobs_store: InMemoryDocumentStore,
    cache: FakeCache,
    transport: FakeTransport,
    notifier: FakeNotifier,
    metrics: FakeMetrics,
    pager: FakePager,
    sleeps: list[float],
) -> EngineContext:
    """Provide an engine context wired to in-memory fakes and a fixed clock."""
    return EngineContext(
        settings=settings,
        events=events_store,
        jobs=jobs_store,
        cache=cache,
        transport=transport,
        notifier=notifier,
        metrics=metrics,
        pager=pager,
        lock_holder="test-host:1",
        clock=lambda: NOW,
        sleep=sleeps.append,
    )


@pytest.fixture
def add_rule(events_store: InMemoryDocumentStore) -> Callable[..., dict[str, Any]]:
    """Store a rule for the event named `event`."""

    def _add(event: str, **fields: Any) -> dict[str, Any]:
        doc = {"_id": f"rule-{event}", "type": "rule", "event": event, **fields}
        events_store.put(doc)
        return doc

    return _add
