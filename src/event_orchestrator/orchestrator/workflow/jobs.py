"""Workflow jobs: creation with deduplication, lookup, status updates and
event-driven resumption.

A job wraps a message envelope:

    {"meta": {"id", "platform", "user", "event_id", "log", "workflow", "wait_for"},
     "data": {"command", "options", "response"}}

Workflow workers move the envelope between stages; this module persists it
and resumes it when an awaited event arrives.
"""

from __future__ import annotations

import copy
import hashlib
import json
from collections.abc import Mapping, MutableMapping
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from event_orchestrator.orchestrator.context import EngineContext
from event_orchestrator.orchestrator.errors import StoreError, ValidationError
from event_orchestrator.orchestrator.locking import lock, unlock
from event_orchestrator.orchestrator.workflow.conditions import check_conditions
from event_orchestrator.orchestrator.workflow.events import Event, Rule
from event_orchestrator.orchestrator.workflow.state_machine import (
    IllegalTransitionError,
    JobStatus,
    transition_job,
)

DEDUP_WINDOW_MINUTES = 2
PROCESSED_MARKER = "processed"
RESTART_MODE = "restart"


class Job(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(alias="_id")
    rev: str | None = Field(default=None, alias="_rev")
    created: int
    updated: int
    status: JobStatus = JobStatus.NEW
    platform: str | None = None
    message: dict[str, Any] = Field(default_factory=dict)

    @property
    def meta(self) -> dict[str, Any]:
        meta = self.message.get("meta")
        return meta if isinstance(meta, dict) else {}

    @property
    def message_id(self) -> str:
        return str(self.meta.get("id") or self.id)

    def to_doc(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def load_job(doc: Mapping[str, Any]) -> Job:
    """Validate a stored job document.

    Raises:
        ValidationError: the document is not a well-formed job.
    """

    try:
        return Job.model_validate(doc)
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(f"invalid job {doc.get('_id')}", e) from e


def dedup_bucket(now: float) -> datetime:
    """Truncate `now` down to the start of its deduplication window."""

    moment = datetime.fromtimestamp(now, tz=UTC).replace(second=0, microsecond=0)
    return moment.replace(minute=moment.minute - moment.minute % DEDUP_WINDOW_MINUTES)


def dedup_job_id(options: Any, now: float) -> str:
    """Stable id for identical job requests within the same window."""

    serialized = json.dumps(options, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.md5(usedforsecurity=False)
    digest.update(serialized.encode("utf-8"))
    digest.update(dedup_bucket(now).isoformat().encode("utf-8"))
    return digest.hexdigest()


class JobQueue:
    """Job persistence and control for one worker."""

    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx
        self.log = ctx.logger(__name__)

    # Lookup

    def get_job(self, job_id: str | None) -> Job | None:
        if not job_id:
            self.log.warning("Job ID missing")
            return None

        doc = self.ctx.jobs.get(job_id)
        if doc is None:
            self.log.warning("Job ID not existing", extra={"job_id": job_id})
            return None

        job = load_job(doc)
        self.ctx.job = job
        return job

    def find_job(self, how: str, key: Any) -> Job | None:
        """First job emitted by view `find/<how>` for `key`."""

        docs = self.ctx.jobs.query(f"find/{how}", key=key, include_docs=True)
        if not docs:
            return None
        job = load_job(docs[0])
        self.ctx.job = job
        return job

    def find_all_jobs(self, how: str, key: Any) -> list[Job]:
        docs = self.ctx.jobs.query(f"find/{how}", key=key, include_docs=True)
        return [load_job(doc) for doc in docs]

    # Creation

    def create_job(self, message: Mapping[str, Any]) -> tuple[Job, bool]:
        """Persist a new job for `message`, or return the duplicate.

        Raises:
            ValidationError: `meta.platform` is missing.
            StoreError: the job could not be written.
        """

        meta = message.get("meta") if isinstance(message, Mapping) else None
        if not isinstance(meta, Mapping) or not meta.get("platform"):
            raise ValidationError("can't create job", missing=("meta.platform",))

        now = self.ctx.now()
        data = message.get("data")
        options = data.get("options") if isinstance(data, Mapping) else None
        job_id = dedup_job_id(options, now)

        existing = self.ctx.jobs.get(job_id)
        if existing is not None:
            job = load_job(existing)
            self.ctx.job = job
            self.log.info("Found duplicate job", extra={"job_id": job.id})
            return job, True

        envelope = copy.deepcopy(dict(message))
        envelope["meta"] = {**envelope["meta"], "id": job_id}
        job = Job(
            id=job_id,
            created=now,
            updated=now,
            message=envelope,
            platform=str(meta["platform"]),
            status=JobStatus.NEW,
        )
        _, job.rev = self.ctx.jobs.put(job.to_doc())
        self.ctx.job = job
        self.log.info("Job created", extra={"job_id": job_id})
        return job, False

    def start_workflow(
        self, name: str, platform: str, options: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """Ask the workflow workers to start `name`.

        The receiving workflow worker creates the job; this only publishes the
        start message, linked to whatever job is active on this worker.
        """

        if not name:
            raise ValidationError("workflow not defined")
        if not platform:
            raise ValidationError("platform not defined")

        opts = dict(options or {})
        frame: dict[str, Any] = {
            "meta": {
                "platform": platform,
                "lang": "en",
                "user": opts.get("user_id"),
            },
            "data": {
                "command": name,
                "options": opts,
            },
        }

        # Causal chain: tell the new job who created it.
        if self.ctx.job is not None and self.ctx.job.meta.get("id"):
            frame["meta"]["created_by"] = self.ctx.job.meta["id"]

        self.log.debug("Starting workflow", extra={"workflow": name, "frame": frame})
        self.ctx.transport.publish(self.ctx.settings.workflow_queue, frame)
        return frame

    # Updates

    def update_job(
        self, message: Mapping[str, Any], status: JobStatus | str | None = None
    ) -> Job | None:
        """Persist `message` as the job's envelope, optionally moving its status.

        Raises:
            StoreError: the job could not be written.
            IllegalTransitionError: the status change is not allowed.
        """

        meta = message.get("meta") if isinstance(message, Mapping) else None
        if not isinstance(meta, Mapping) or not meta.get("id"):
            self.log.debug("Not a job, just a message, nothing to see here")
            return None

        job = self.get_job(str(meta["id"]))
        if job is None:
            return None

        if status is not None:
            job.status = transition_job(current=job.status, to=JobStatus(status))
        job.updated = self.ctx.now()
        job.message = dict(message)

        _, job.rev = self.ctx.jobs.put(job.to_doc())
        self.ctx.job = job
        return job

    def job_done(self, message: Mapping[str, Any]) -> Job | None:
        return self.update_job(message, JobStatus.DONE)

    def job_failed(self, message: Mapping[str, Any]) -> Job | None:
        return self.update_job(message, JobStatus.FAILED)

    def job_pending(self, message: Mapping[str, Any]) -> Job | None:
        return self.update_job(message, JobStatus.PENDING)

    def log_worker(self, message: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        """Record this worker in the message's visit log (no repeats)."""

        meta = message.setdefault("meta", {})
        worker = meta.get("worker") or self.ctx.worker_name
        log = meta.get("log")
        if not isinstance(log, list) or not log:
            meta["log"] = [worker]
        elif log[-1] != worker:
            log.append(worker)
        return message

    def stop_here(self) -> None:
        """Don't reply to the current frame; the job continues elsewhere."""

        if self.ctx.job is not None and self.ctx.job.meta.get("id"):
            self.ctx.dont_reply = True

    # Event-driven control

    def restart_workflow(self, event: Event, rule: Rule, *, stop_mode: bool = False) -> bool:
        """Resume (or stop) the job an event was waiting for.

        Returns the event's "processed" signal. Callers must check
        `event.error` as well: True can mean "done, error logged".
        """

        job = self._resolve_job(event, rule)
        if job is None:
            return False

        lock_name = job.message_id
        if not lock(self.ctx, lock_name):
            self.log.warning(
                "Job is locked by another worker", extra={"job_id": job.id, "event_id": event.id}
            )
            return False

        try:
            # Another worker may have moved the job while we waited for the lock.
            current = self.get_job(job.id)
            if current is None:
                event.error = f"job {job.id} disappeared while waiting for its lock"
                return False
            return self._resume(current, event, rule, stop_mode=stop_mode)
        finally:
            unlock(self.ctx, lock_name)

    def stop_workflow(self, event: Event, rule: Rule) -> bool:
        return self.restart_workflow(event, rule, stop_mode=True)

    def _resolve_job(self, event: Event, rule: Rule) -> Job | None:
        if rule.view and rule.key:
            value = event.field(rule.key)
            job = self.find_job(rule.view, value) if value is not None else None
            if job is None:
                event.error = (
                    f"could not find job using view '{rule.view}' "
                    f"with {rule.key}='{value}'"
                )
            return job

        if event.job_id:
            job = self.get_job(event.job_id)
            if job is None:
                event.error = f"could not find job using job_id '{event.job_id}'"
            return job

        event.error = "could not find job: rule has no view/key and event has no job_id"
        return None

    def _resume(self, job: Job, event: Event, rule: Rule, *, stop_mode: bool) -> bool:
        if job.status == JobStatus.DONE and not rule.reopen:
            self.log.info("Job already done", extra={"job_id": job.id, "event_id": event.id})
            return True

        message = copy.deepcopy(job.message)
        meta = message.setdefault("meta", {})

        waiting_for = meta.get("event_id")
        if event.job_id and waiting_for and waiting_for != event.id:
            event.error = "job was not waiting for this event"
            self.log.error(
                event.error,
                extra={"job_id": job.id, "event_id": event.id, "waiting_for": waiting_for},
            )
            return True

        message.pop("error", None)
        if rule.conditions is not None:
            check_conditions(message, rule.conditions)
            if message.get("error"):
                event.error = str(message["error"])
                self.log.warning(
                    "Job conditions not met",
                    extra={"job_id": job.id, "event_id": event.id, "error": event.error},
                )
                return False

        data = message.setdefault("data", {})
        response = data.get("response")
        response = dict(response) if isinstance(response, Mapping) else {}
        if isinstance(event.parsed, Mapping):
            response.update(event.parsed)
        elif event.parsed is not None:
            response["parsed"] = event.parsed
        if event.raw is not None:
            response["raw"] = event.raw
        data["response"] = response

        meta.pop("wait_for", None)
        if rule.mode == RESTART_MODE and isinstance(meta.get("log"), list) and meta["log"]:
            meta["log"].pop()
        meta["event_id"] = PROCESSED_MARKER

        try:
            if stop_mode:
                message["error"] = event.parsed if event.parsed is not None else event.name()
                self.job_done(message)
                self.log.info("Job stopped", extra={"job_id": job.id, "event_id": event.id})
                return True

            message.pop("status", None)
            self.job_pending(message)
        except (StoreError, IllegalTransitionError) as e:
            event.error = f"updating job {job.id} failed: {e}"
            return False

        self.ctx.transport.publish(self.ctx.settings.workflow_queue, message)
        self.log.info("Job resumed", extra={"job_id": job.id, "event_id": event.id})
        return True
