"""Redis-backed TTL cache used for locks and deduplication."""

from __future__ import annotations

import logging

import redis

logger = logging.getLogger(__name__)


class RedisCache:
    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCache:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def ping(self) -> None:
        self._client.ping()

    def get(self, key: str) -> str | None:
        return self._client.get(key)

    def ttl(self, key: str) -> int | None:
        """Remaining lifetime in seconds; None when absent or not expiring."""

        remaining = self._client.ttl(key)
        return remaining if remaining is not None and remaining >= 0 else None

    def set(self, key: str, value: str, ttl: int) -> None:
        self._client.set(key, value, ex=ttl)

    def add(self, key: str, value: str, ttl: int) -> bool:
        return bool(self._client.set(key, value, ex=ttl, nx=True))

    def replace(self, key: str, value: str, ttl: int) -> bool:
        return bool(self._client.set(key, value, ex=ttl, xx=True))

    def remove(self, key: str) -> bool:
        return bool(self._client.delete(key))

    def close(self) -> None:
        self._client.close()
