"""Best-effort content cache for rendered diagrams.

Caching is an optimization: every backend failure or timeout degrades to a miss (on read) or a
``CacheWriteResult`` with ``stored=False`` (on write). Nothing here raises into the caller.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from diagram_pipeline.cache.keys import fingerprint
from diagram_pipeline.cache.store import CacheStore
from diagram_pipeline.utils.compression import compress_bytes, decompress_bytes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedDiagram:
  """A cache hit: decoded payload bytes plus the stored metadata."""

  data: bytes
  metadata: dict[str, Any]


@dataclass(frozen=True)
class CacheWriteResult:
  """Explicit outcome of a best-effort cache write."""

  stored: bool
  reason: str | None = None


@dataclass
class CacheStats:
  hits: int = 0
  misses: int = 0
  sets: int = 0
  errors: int = 0
  deletes: int = 0


def _short(key: str) -> str:
  return key[:24] + "..."


class ContentCache:
  """Fingerprint-keyed cache with TTL and hit/miss accounting."""

  def __init__(self, store: CacheStore, *, default_ttl_seconds: int = 3600, timeout_seconds: float = 0.5, compress_min_bytes: int = 4096) -> None:
    self._store = store
    self._default_ttl_seconds = default_ttl_seconds
    self._timeout_seconds = timeout_seconds
    self._compress_min_bytes = compress_min_bytes
    self._stats = CacheStats()
    self._connected = True

  @staticmethod
  def key(content: str, format: str, options: Mapping[str, Any] | None = None) -> str:
    """Return the deterministic fingerprint for a request."""
    return fingerprint(content, format, options)

  async def get(self, key: str) -> CachedDiagram | None:
    """Return the cached entry or None; counts a hit or a miss."""
    try:
      raw = await asyncio.wait_for(self._store.get(key), timeout=self._timeout_seconds)
    except TimeoutError:
      logger.warning("Cache read timed out key=%s timeout=%ss", _short(key), self._timeout_seconds)
      self._record_error()
      self._stats.misses += 1
      return None
    except Exception as exc:  # noqa: BLE001
      logger.warning("Cache read failed key=%s error=%s", _short(key), exc)
      self._record_error()
      self._stats.misses += 1
      return None

    self._connected = True
    if raw is None:
      self._stats.misses += 1
      return None

    try:
      entry = _decode_entry(raw)
    except (ValueError, KeyError, TypeError) as exc:
      # A corrupt entry is treated as absent; the next write overwrites it.
      logger.warning("Discarding unreadable cache entry key=%s error=%s", _short(key), exc)
      self._stats.misses += 1
      return None

    self._stats.hits += 1
    logger.debug("Cache hit key=%s size=%s cached_at=%s", _short(key), len(entry.data), entry.metadata.get("cached_at"))
    return entry

  async def put(self, key: str, data: bytes, metadata: Mapping[str, Any] | None = None, ttl: int | None = None) -> CacheWriteResult:
    """Upsert an entry; failures are reported in the result, never raised."""
    ttl_seconds = self._default_ttl_seconds if ttl is None else ttl
    if ttl_seconds <= 0:
      logger.warning("Cache write skipped for non-positive ttl key=%s ttl=%s", _short(key), ttl_seconds)
      return CacheWriteResult(stored=False, reason="invalid_ttl")

    try:
      encoded = _encode_entry(data, dict(metadata or {}), compress_min_bytes=self._compress_min_bytes)
    except (TypeError, ValueError) as exc:
      logger.warning("Cache entry could not be serialized key=%s error=%s", _short(key), exc)
      return CacheWriteResult(stored=False, reason=f"serialization_error: {exc}")

    try:
      await asyncio.wait_for(self._store.set(key, encoded, ttl_seconds), timeout=self._timeout_seconds)
    except TimeoutError:
      logger.warning("Cache write timed out key=%s", _short(key))
      self._record_error()
      return CacheWriteResult(stored=False, reason="timeout")
    except Exception as exc:  # noqa: BLE001
      logger.warning("Cache write failed key=%s error=%s", _short(key), exc)
      self._record_error()
      return CacheWriteResult(stored=False, reason=f"backend_error: {exc}")

    self._connected = True
    self._stats.sets += 1
    logger.debug("Diagram cached key=%s size=%s ttl=%s", _short(key), len(data), ttl_seconds)
    return CacheWriteResult(stored=True)

  async def invalidate(self, pattern: str) -> int:
    """Delete entries matching a glob pattern; returns 0 on backend failure."""
    try:
      deleted = await self._store.delete_pattern(pattern)
    except Exception as exc:  # noqa: BLE001
      logger.warning("Cache invalidation failed pattern=%s error=%s", pattern, exc)
      self._record_error()
      return 0
    self._stats.deletes += deleted
    if deleted:
      logger.info("Cache invalidated pattern=%s count=%s", pattern, deleted)
    return deleted

  async def ping(self) -> bool:
    try:
      self._connected = await asyncio.wait_for(self._store.ping(), timeout=self._timeout_seconds)
    except Exception:  # noqa: BLE001
      self._connected = False
    return self._connected

  def stats(self) -> dict[str, Any]:
    total = self._stats.hits + self._stats.misses
    hit_ratio = (self._stats.hits / total) if total else 0.0
    return {
      "hits": self._stats.hits,
      "misses": self._stats.misses,
      "sets": self._stats.sets,
      "deletes": self._stats.deletes,
      "errors": self._stats.errors,
      "total": total,
      "hit_ratio": round(hit_ratio, 4),
      "connected": self._connected,
    }

  def reset_stats(self) -> None:
    self._stats = CacheStats()

  async def close(self) -> None:
    await self._store.close()

  def _record_error(self) -> None:
    self._stats.errors += 1
    self._connected = False


def _encode_entry(data: bytes, metadata: dict[str, Any], *, compress_min_bytes: int) -> bytes:
  """Serialize as {"data": <base64>, "metadata": {...}}."""
  payload = data
  encoding = "identity"
  if len(data) >= compress_min_bytes:
    compressed = compress_bytes(data)
    # Only keep compression when it actually pays off (PNG/WEBP rarely shrink).
    if len(compressed) < len(data):
      payload = compressed
      encoding = "br"

  entry_metadata = {**metadata, "cached_at": datetime.now(UTC).isoformat(), "size": len(data), "format": metadata.get("format", "png"), "encoding": encoding}
  return json.dumps({"data": base64.b64encode(payload).decode("ascii"), "metadata": entry_metadata}, separators=(",", ":"), default=str).encode("utf-8")


def _decode_entry(raw: bytes | str) -> CachedDiagram:
  entry = json.loads(raw)
  metadata = dict(entry["metadata"])
  data = base64.b64decode(entry["data"], validate=True)
  if metadata.get("encoding") == "br":
    try:
      data = decompress_bytes(data)
    except Exception as exc:  # noqa: BLE001
      raise ValueError(f"brotli payload is corrupt: {exc}") from exc
  return CachedDiagram(data=data, metadata=metadata)
