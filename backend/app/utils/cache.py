"""Key/value cache used for provider responses, traffic segments, quota and
rate-limit counters.

Two backends share one interface:
  - MemoryCache — single-process dict guarded by a lock (dev, tests, CLI)
  - RedisCache  — redis-py client, shared across API workers

Values are JSON-serialisable. ``incr`` is atomic on both backends and is the
only primitive counters may use (increment-and-compare, never read-then-write).
"""
from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any

import redis

from app.config import settings

logger = logging.getLogger(__name__)


class Cache(ABC):
    @abstractmethod
    def get(self, key: str) -> Any | None:
        ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def incr(self, key: str, amount: int = 1, ttl: float | None = None) -> int:
        """Atomically add ``amount``; ``ttl`` is applied only when the key is created."""

    @abstractmethod
    def ttl(self, key: str) -> float | None:
        """Seconds until expiry, or None when the key is absent or never expires."""

    @abstractmethod
    def keys(self, prefix: str) -> list[str]:
        ...

    def get_or_set(self, key: str, ttl: float | None, compute) -> Any:
        value = self.get(key)
        if value is None:
            value = compute()
            self.set(key, value, ttl)
        return value


class MemoryCache(Cache):
    def __init__(self, clock=time.monotonic) -> None:
        self._data: dict[str, tuple[Any, float | None]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, key: str) -> tuple[Any, float | None] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live(key)
            return None if entry is None else json.loads(entry[0])

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._data[key] = (json.dumps(value), expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def incr(self, key: str, amount: int = 1, ttl: float | None = None) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                value = amount
                expires_at = self._clock() + ttl if ttl else None
            else:
                value = int(json.loads(entry[0])) + amount
                expires_at = entry[1]
            self._data[key] = (json.dumps(value), expires_at)
            return value

    def ttl(self, key: str) -> float | None:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return max(0.0, entry[1] - self._clock())

    def keys(self, prefix: str) -> list[str]:
        with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisCache(Cache):
    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCache:
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return cls(client)

    def get(self, key: str) -> Any | None:
        raw = self.client.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        if ttl:
            self.client.set(key, json.dumps(value), px=int(ttl * 1000))
        else:
            self.client.set(key, json.dumps(value))

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def incr(self, key: str, amount: int = 1, ttl: float | None = None) -> int:
        pipe = self.client.pipeline()
        pipe.incrby(key, amount)
        if ttl:
            # NX: only set expiry on first creation so the window is fixed
            pipe.pexpire(key, int(ttl * 1000), nx=True)
        value = pipe.execute()[0]
        return int(value)

    def ttl(self, key: str) -> float | None:
        remaining = self.client.pttl(key)
        if remaining is None or remaining < 0:
            return None
        return remaining / 1000.0

    def keys(self, prefix: str) -> list[str]:
        return list(self.client.scan_iter(match=f"{prefix}*"))


def create_cache(url: str) -> Cache:
    if url.startswith("memory://"):
        return MemoryCache()
    if url.startswith(("redis://", "rediss://", "unix://")):
        logger.info("Using Redis cache at %s", url.split("@")[-1])
        return RedisCache.from_url(url)
    raise ValueError(f"Unsupported CACHE_URL scheme: {url}")


@lru_cache
def get_cache() -> Cache:
    return create_cache(settings.CACHE_URL)
