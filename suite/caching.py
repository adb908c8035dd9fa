"""Read-through cache with an in-process map and an optional Redis tier.

Values are stored as JSON so the same entries can be shared with Redis.
Every entry carries its own expiry; Redis errors are logged and the cache
keeps working from memory alone.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import time
from typing import Any, Callable

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class TTLCache:
    def __init__(self, redis_client: Redis | None = None, default_ttl: int = 300, clock=time.monotonic):
        self.redis = redis_client
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    @classmethod
    def from_url(cls, url: str | None, default_ttl: int = 300) -> "TTLCache":
        client = Redis.from_url(url) if url else None
        return cls(client, default_ttl=default_ttl)

    def get(self, key: str, default=None, ttl: int | None = None):
        """Return the cached value for ``key``.

        A value pulled from Redis is kept in memory for ``ttl`` seconds at
        most, so an entry never outlives the lifetime it was written with.
        """
        entry = self._entries.get(key)
        if entry is not None:
            expires, value = entry
            if expires > self._clock():
                return value
            self._entries.pop(key, None)

        if self.redis is not None:
            try:
                raw = self.redis.get(key)
            except RedisError as exc:
                logger.warning("Redis get failed for %s: %s", key, exc)
                raw = None
            if raw is not None:
                value = json.loads(raw)
                lifetime = self.default_ttl if ttl is None else ttl
                self._entries[key] = (self._clock() + lifetime, value)
                return value
        return default

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._entries[key] = (self._clock() + ttl, value)
        if self.redis is not None:
            try:
                self.redis.setex(key, ttl, json.dumps(value, default=str))
            except RedisError as exc:
                logger.warning("Redis set failed for %s: %s", key, exc)

    def get_or_set(self, key: str, fn: Callable[[], Any], ttl: int | None = None):
        missing = object()
        value = self.get(key, missing, ttl)
        if value is missing:
            value = fn()
            self.set(key, value, ttl)
        return value

    def invalidate(self, pattern: str | None = None) -> None:
        """Drop every key containing ``pattern`` (all keys when omitted)."""
        if pattern is None:
            self._entries.clear()
        else:
            for key in [k for k in self._entries if pattern in k]:
                del self._entries[key]

        if self.redis is not None:
            match = f"*{pattern}*" if pattern else "*"
            try:
                keys = list(self.redis.scan_iter(match=match))
                if keys:
                    self.redis.delete(*keys)
            except RedisError as exc:
                logger.warning("Redis invalidate failed for %s: %s", match, exc)

    def keys(self, pattern: str = "*") -> list[str]:
        return [k for k in self._entries if fnmatch.fnmatch(k, pattern)]
