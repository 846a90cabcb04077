"""Cache helpers and cooperative locks on top of the TTL cache.

Locks are plain cache keys `lock:<name>` whose value identifies the holder
(`hostname:pid` by default). A holder may extend its own lock; anyone else
waits one sync delay, re-reads the lock and gives up if it is still taken.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from event_orchestrator.orchestrator.context import EngineContext
from event_orchestrator.orchestrator.errors import LockConflictError

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock:"


def cache_get(ctx: EngineContext, key: str) -> Any:
    """Return the value stored under `key`, decoding JSON when possible."""

    value = ctx.cache.get(key)
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError:
        # Plain text written by someone else.
        return value


def cache_set(ctx: EngineContext, key: str, data: Any, expire: int | None = None) -> bool:
    """Store `data` under `key`; plain strings are stored as they are."""

    value = data if isinstance(data, str) else json.dumps(data, sort_keys=True)
    ctx.cache.set(key, value, expire if expire is not None else ctx.settings.cache_default_expire)
    return True


def cache_del(ctx: EngineContext, key: str) -> bool:
    return ctx.cache.remove(key)


def lock_key(ctx: EngineContext, key: str | None = None) -> str:
    return LOCK_PREFIX + (key or ctx.worker_name)


def _extend_lock(ctx: EngineContext, lock: str, current: str, holder: str, ttl: int) -> bool:
    if current != holder:
        return False
    if not ctx.cache.replace(lock, holder, ttl):
        # Expired between read and replace; take it afresh.
        return ctx.cache.add(lock, holder, ttl)
    logger.debug("Lock time extended", extra={"lock": lock, "holder": holder})
    return True


def _try_lock(ctx: EngineContext, lock: str, holder: str, ttl: int) -> tuple[bool, str | None]:
    if ctx.cache.add(lock, holder, ttl):
        logger.debug("Lock acquired", extra={"lock": lock, "holder": holder})
        return True, None

    current = ctx.cache.get(lock)
    if current is None:
        # Released between add and get.
        return ctx.cache.add(lock, holder, ttl), None
    return _extend_lock(ctx, lock, current, holder, ttl), current


def lock(
    ctx: EngineContext,
    key: str | None = None,
    holder: str | None = None,
    *,
    expire: int | None = None,
) -> bool:
    """Acquire (or extend) the lock named `key`.

    Returns False when another holder keeps the lock after one retry.
    """

    lock_name = lock_key(ctx, key)
    holder = holder or ctx.lock_holder
    ttl = expire if expire is not None else ctx.settings.cache_default_expire

    acquired, current = _try_lock(ctx, lock_name, holder, ttl)
    if acquired:
        return True

    ctx.sleep(ctx.settings.cache_sync_delay)

    acquired, current = _try_lock(ctx, lock_name, holder, ttl)
    if acquired:
        return True

    conflict = LockConflictError(lock=lock_name, holder=current or "unknown")
    logger.warning(str(conflict), extra={"lock": lock_name, "holder": current})
    ctx.notify(str(conflict))
    return False


def unlock(ctx: EngineContext, key: str | None = None, holder: str | None = None) -> bool:
    """Release the lock named `key` if this holder owns it."""

    lock_name = lock_key(ctx, key)
    holder = holder or ctx.lock_holder

    current = ctx.cache.get(lock_name)
    if current is None:
        logger.debug("Lock was already released", extra={"lock": lock_name})
        return True

    if current != holder:
        logger.info(
            "Lock held by another holder, permission denied",
            extra={"lock": lock_name, "holder": current},
        )
        return False

    ctx.cache.remove(lock_name)
    logger.debug("Lock released", extra={"lock": lock_name})
    return True
