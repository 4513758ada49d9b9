from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import redis


class Cache:
    def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        raise NotImplementedError

    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def forget(self, key: str) -> None:
        raise NotImplementedError


@dataclass
class SimpleCache(Cache):
    """Process-local cache. Entries expire lazily on read."""

    _items: dict[str, tuple[str, float | None]] = field(default_factory=dict)

    def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._items[key] = (value, expires_at)

    def get(self, key: str) -> str | None:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at < time.monotonic():
            self._items.pop(key, None)
            return None
        return value

    def forget(self, key: str) -> None:
        self._items.pop(key, None)


@dataclass(frozen=True)
class RedisCache(Cache):
    url: str

    def _client(self) -> Any:
        return redis.Redis.from_url(self.url, socket_timeout=5, decode_responses=True)

    def put(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._client().set(key, value, ex=ttl_seconds)

    def get(self, key: str) -> str | None:
        return self._client().get(key)

    def forget(self, key: str) -> None:
        self._client().delete(key)


_simple_cache = SimpleCache()


def cache_from_config(config: dict) -> Cache:
    backend = (config.get("CACHE_BACKEND") or "simple").strip().lower()
    if backend == "redis":
        url = (config.get("REDIS_URL") or "").strip()
        if not url:
            raise RuntimeError("CACHE_BACKEND=redis requires REDIS_URL.")
        return RedisCache(url=url)
    return _simple_cache
