"""CLI entrypoint for the event engine.

Commands:
- `worker`: consume the engine queue and handle event_add / event_exec / events_trigger.
- `add-event`: submit one event through the engine queue and print the reply.
- `poll`: cron-mode scheduler run that re-enqueues due events.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from pydantic import ValidationError

from event_orchestrator import __version__
from event_orchestrator.orchestrator.adapters.couchdb import CouchDBStore
from event_orchestrator.orchestrator.adapters.graphite import GraphiteMetrics
from event_orchestrator.orchestrator.adapters.hipchat import HipChatNotifier
from event_orchestrator.orchestrator.adapters.pagerduty import PagerDutyPager
from event_orchestrator.orchestrator.adapters.rabbitmq import RabbitMQTransport
from event_orchestrator.orchestrator.adapters.redis_cache import RedisCache
from event_orchestrator.orchestrator.config import EngineSettings
from event_orchestrator.orchestrator.context import EngineContext
from event_orchestrator.orchestrator.locking import lock, unlock
from event_orchestrator.orchestrator.logging import configure_logging
from event_orchestrator.orchestrator.worker import EVENT_ADD, FrameHandler
from event_orchestrator.orchestrator.workflow.scheduler import trigger_events
from event_orchestrator.orchestrator.workflow.templates import load_templates

logger = logging.getLogger(__name__)


def _json_object(value: str) -> dict[str, Any]:
    try:
        parsed = json.loads(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise argparse.ArgumentTypeError("expected a JSON object")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="event-orchestrator",
        description="Event-driven workflow orchestration engine",
    )
    parser.add_argument("--version", action="version", version=f"event-orchestrator {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("worker", help="Consume the engine queue")

    add_event = subparsers.add_parser("add-event", help="Submit one event")
    add_event.add_argument("--backend", required=True)
    add_event.add_argument("--object", required=True)
    add_event.add_argument("--action", required=True)
    add_event.add_argument("--status", required=True)
    add_event.add_argument(
        "--when", type=int, default=None, help="Not-before time (epoch seconds)"
    )
    add_event.add_argument(
        "--parsed", type=_json_object, default=None, help="Structured payload as a JSON object"
    )
    add_event.add_argument("--job-id", default=None, help="Job this event resumes")
    add_event.add_argument(
        "--timeout", type=float, default=30.0, help="Seconds to wait for the reply"
    )

    poll = subparsers.add_parser("poll", help="Trigger events whose time has come (cron mode)")
    poll.add_argument(
        "--before", type=int, default=None, help="Cutoff (epoch seconds); defaults to now"
    )

    return parser


def build_context(settings: EngineSettings, transport: RabbitMQTransport) -> EngineContext:
    """Connect every collaborator; raises when a mandatory one is unreachable."""

    events = CouchDBStore(
        url=settings.couch_url,
        db=settings.events_db,
        user=settings.couch_user,
        password=settings.couch_pass,
    )
    jobs = CouchDBStore(
        url=settings.couch_url,
        db=settings.jobqueue_db,
        user=settings.couch_user,
        password=settings.couch_pass,
    )
    events.ping()
    jobs.ping()

    cache = RedisCache.from_url(settings.redis_url)
    cache.ping()

    notifier = None
    if settings.notifications_enabled:
        notifier = HipChatNotifier(
            url=settings.hipchat_url,
            token=settings.hipchat_token,
            default_room=settings.hipchat_room,
        )

    metrics = None
    if settings.metrics_enabled:
        metrics = GraphiteMetrics(
            host=settings.graphite_host,
            port=settings.graphite_port,
            proto=settings.graphite_proto,
            debug=settings.debug,
        )

    pager = None
    if settings.paging_enabled:
        pager = PagerDutyPager(
            url=settings.pagerduty_url, service_key=settings.pagerduty_service_key
        )

    return EngineContext(
        settings=settings,
        events=events,
        jobs=jobs,
        cache=cache,
        transport=transport,
        notifier=notifier,
        metrics=metrics,
        pager=pager,
        workflows=load_templates(settings.workflow_templates_path),
    )


def run_poll(ctx: EngineContext, before: int | None = None) -> int:
    """One scheduler run under the cron lock; returns the CLI exit code."""

    cron_service = f"cron.{ctx.worker_name}"
    if not lock(ctx, expire=ctx.settings.cron_lock_expire):
        ctx.alert("cron_lock", "previous poll is still running")
        print("Another poll is still running", file=sys.stderr)
        return 3

    ctx.graph(cron_service, "started", 1)
    try:
        count = trigger_events(ctx, before)
    finally:
        unlock(ctx)
        ctx.graph(cron_service, "stopped", 1)

    print(f"Triggered {count} event(s)")
    return 0


def _event_add_frame(args: argparse.Namespace) -> dict[str, Any]:
    options: dict[str, Any] = {
        "backend": args.backend,
        "object": args.object,
        "action": args.action,
        "status": args.status,
    }
    if args.when is not None:
        options["when"] = args.when
    if args.parsed is not None:
        options["parsed"] = args.parsed
    if args.job_id:
        options["job_id"] = args.job_id
    return {"data": {"command": EVENT_ADD, "options": options}}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    transport = RabbitMQTransport(settings.rabbit_url, settings.rabbit_exchange)
    try:
        transport.connect()

        if args.command == "add-event":
            reply = transport.rpc(settings.queue, _event_add_frame(args), timeout=args.timeout)
            print(json.dumps(reply, indent=2, sort_keys=True))
            return 4 if reply.get("error") else 0

        ctx = build_context(settings, transport)

        if args.command == "worker":
            logger.info("Worker started", extra={"queue": settings.queue})
            transport.consume(settings.queue, FrameHandler(ctx))
            return 0

        if args.command == "poll":
            return run_poll(ctx, args.before)

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0

    except Exception:
        logger.exception("Command failed")
        return 1

    finally:
        transport.close()


if __name__ == "__main__":
    raise SystemExit(main())
