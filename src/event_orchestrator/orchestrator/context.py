"""Engine context and collaborator interfaces.

Every engine operation receives an explicit `EngineContext`. It bundles the
external collaborators as capabilities so that tests can swap in fakes, and
it carries the small amount of per-worker state (active job, reply flag).
"""

from __future__ import annotations

import logging
import os
import socket
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from event_orchestrator.orchestrator.config import EngineSettings
from event_orchestrator.orchestrator.logging import JobLoggerAdapter

if TYPE_CHECKING:
    from event_orchestrator.orchestrator.workflow.jobs import Job
    from event_orchestrator.orchestrator.workflow.templates import WorkflowTemplate

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    """A database of JSON documents with indexed views."""

    def get(self, doc_id: str) -> dict[str, Any] | None: ...

    def put(self, doc: Mapping[str, Any]) -> tuple[str, str]: ...

    def query(
        self,
        view: str,
        *,
        key: Any = None,
        start_key: Any = None,
        end_key: Any = None,
        include_docs: bool = True,
    ) -> list[dict[str, Any]]: ...


class Cache(Protocol):
    """TTL key/value store used for deduplication and mutual exclusion."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl: int) -> None: ...

    def add(self, key: str, value: str, ttl: int) -> bool: ...

    def replace(self, key: str, value: str, ttl: int) -> bool: ...

    def remove(self, key: str) -> bool: ...


class Transport(Protocol):
    """At-least-once delivery of JSON frames to named queues."""

    def publish(
        self, queue: str, frame: Mapping[str, Any], *, reply_to: str | None = None
    ) -> None: ...


class Notifier(Protocol):
    def notify(self, text: str, room: str | None = None, severity: str | None = None) -> None: ...


class Metrics(Protocol):
    def graph(
        self, service: str, state: str, metric: float, description: str | None = None
    ) -> bool | None: ...


class Pager(Protocol):
    def trigger(
        self, incident_key: str, description: str, details: Mapping[str, Any] | None = None
    ) -> None: ...


def default_lock_holder() -> str:
    """Identity of this worker process: `hostname:pid`."""

    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class EngineContext:
    settings: EngineSettings
    events: DocumentStore
    jobs: DocumentStore
    cache: Cache
    transport: Transport
    notifier: Notifier | None = None
    metrics: Metrics | None = None
    pager: Pager | None = None
    workflows: dict[str, WorkflowTemplate] = field(default_factory=dict)
    lock_holder: str = field(default_factory=default_lock_holder)
    clock: Callable[[], float] = time.time
    sleep: Callable[[float], None] = time.sleep

    # Per-frame worker state.
    job: Job | None = None
    dont_reply: bool = False

    @property
    def worker_name(self) -> str:
        return self.settings.worker_name

    def now(self) -> int:
        return int(self.clock())

    def logger(self, name: str) -> JobLoggerAdapter:
        return JobLoggerAdapter(
            logging.getLogger(name), lambda: self.job.message if self.job else None
        )

    def reset(self) -> None:
        """Forget per-frame state before the next frame is handled."""

        self.job = None
        self.dont_reply = False

    def notify(self, text: str, room: str | None = None, severity: str | None = None) -> None:
        if self.notifier is not None:
            self.notifier.notify(text, room, severity)

    def graph(
        self, service: str, state: str, metric: float, description: str | None = None
    ) -> None:
        if self.metrics is not None:
            self.metrics.graph(service, state, metric, description)

    def alert(
        self, incident: str, description: str, details: Mapping[str, Any] | None = None
    ) -> bool:
        """Raise an incident: graph it, tell the chat room and page whoever is on call.

        The active job's workflow is added to the details. A `room` entry in
        `details` picks the chat room and is not sent to the pager. Nothing
        is paged in debug mode.
        """

        if not incident or not description:
            logger.error(
                "alert needs an incident and a description",
                extra={"incident": incident, "description": description},
            )
            return False

        extra = dict(details or {})
        if self.job is not None:
            data = self.job.message.get("data")
            if isinstance(data, Mapping) and data.get("command"):
                extra["workflow"] = data["command"]
            if self.job.meta.get("workflow"):
                extra["workflow"] = self.job.meta["workflow"]

        service = f"{self.worker_name}.{incident}"
        self.graph(f"incidents.{service}", "error", 1, description)
        self.notify(f"{service}: {description}", extra.pop("room", None))

        if self.pager is not None and not self.settings.debug:
            self.pager.trigger(incident, f"{socket.gethostname()} {service}: {description}", extra)
        return True
