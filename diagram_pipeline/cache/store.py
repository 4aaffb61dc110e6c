"""Key-value backends for the content cache."""

from __future__ import annotations

import fnmatch
import logging
import time
from collections.abc import Callable
from typing import Protocol

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class CacheStore(Protocol):
  """Minimal key-value contract the content cache needs from a backend."""

  async def get(self, key: str) -> bytes | None:
    """Return the raw stored value or None when absent/expired."""

  async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
    """Upsert a value with a time-to-live."""

  async def delete_pattern(self, pattern: str) -> int:
    """Delete keys matching a glob pattern and return the count."""

  async def ping(self) -> bool:
    """Return True when the backend is reachable."""

  async def close(self) -> None:
    """Release backend resources."""


class InMemoryCacheStore:
  """Process-local TTL store used in development and tests."""

  def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
    self._clock = clock
    self._entries: dict[str, tuple[bytes, float]] = {}

  async def get(self, key: str) -> bytes | None:
    entry = self._entries.get(key)
    if entry is None:
      return None
    value, expires_at = entry
    # Expired entries are evicted passively on read.
    if self._clock() >= expires_at:
      self._entries.pop(key, None)
      return None
    return value

  async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
    self._entries[key] = (value, self._clock() + ttl_seconds)

  async def delete_pattern(self, pattern: str) -> int:
    matched = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
    for key in matched:
      del self._entries[key]
    return len(matched)

  async def ping(self) -> bool:
    return True

  async def close(self) -> None:
    self._entries.clear()


class NullCacheStore:
  """Pass-through store used when caching is disabled."""

  async def get(self, key: str) -> bytes | None:
    return None

  async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
    return None

  async def delete_pattern(self, pattern: str) -> int:
    return 0

  async def ping(self) -> bool:
    return False

  async def close(self) -> None:
    return None


class RedisCacheStore:
  """Shared cache backed by Redis; values are written with SETEX."""

  def __init__(self, url: str, *, socket_timeout: float = 1.0) -> None:
    # Don't enable decode_responses; entries are stored as JSON bytes.
    self._client = redis.from_url(url, decode_responses=False, socket_timeout=socket_timeout, socket_connect_timeout=socket_timeout)

  async def get(self, key: str) -> bytes | None:
    return await self._client.get(key)

  async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
    await self._client.setex(key, ttl_seconds, value)

  async def delete_pattern(self, pattern: str) -> int:
    deleted = 0
    # SCAN rather than KEYS so invalidation never blocks a shared Redis.
    async for key in self._client.scan_iter(match=pattern, count=500):
      deleted += int(await self._client.delete(key))
    return deleted

  async def ping(self) -> bool:
    try:
      return bool(await self._client.ping())
    except redis.RedisError as exc:
      logger.warning("Redis ping failed: %s", exc)
      return False

  async def close(self) -> None:
    await self._client.aclose()
