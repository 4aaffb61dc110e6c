from __future__ import annotations

import asyncio
import os

import pytest

from diagram_pipeline.cache.keys import KEY_PREFIX, fingerprint
from diagram_pipeline.cache.service import ContentCache
from diagram_pipeline.cache.store import InMemoryCacheStore, NullCacheStore


class FlakyStore(InMemoryCacheStore):
  """Store whose reads and writes blow up, like an unreachable Redis."""

  async def get(self, key: str) -> bytes | None:
    raise ConnectionError("redis down")

  async def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
    raise ConnectionError("redis down")


class SlowStore(InMemoryCacheStore):
  async def get(self, key: str) -> bytes | None:
    await asyncio.sleep(1)
    return None


def test_fingerprint_is_deterministic_and_normalized() -> None:
  first = fingerprint("  @startuml\nA -> B\n@enduml\n", "PNG", {"b": 1, "a": {"y": 2, "x": 1}})
  second = fingerprint("@startuml\nA -> B\n@enduml", "png", {"a": {"x": 1, "y": 2}, "b": 1})
  assert first == second
  assert first.startswith(KEY_PREFIX)
  assert len(first) == len(KEY_PREFIX) + 64


def test_fingerprint_distinguishes_content_format_and_options() -> None:
  base = fingerprint("A -> B", "png", {"quality": "high"})
  assert base != fingerprint("A -> C", "png", {"quality": "high"})
  assert base != fingerprint("A -> B", "svg", {"quality": "high"})
  assert base != fingerprint("A -> B", "png", {"quality": "balanced"})


@pytest.mark.anyio
async def test_put_then_get_is_idempotent_and_counted() -> None:
  cache = ContentCache(InMemoryCacheStore())
  key = ContentCache.key("A -> B", "png")

  assert await cache.get(key) is None
  first = await cache.put(key, b"payload", {"format": "png", "mime_type": "image/png"})
  second = await cache.put(key, b"payload", {"format": "png", "mime_type": "image/png"})
  entry = await cache.get(key)

  assert first.stored and second.stored
  assert entry is not None
  assert entry.data == b"payload"
  assert entry.metadata["format"] == "png"
  assert entry.metadata["size"] == len(b"payload")
  stats = cache.stats()
  assert stats["hits"] == 1
  assert stats["misses"] == 1
  assert stats["sets"] == 2
  assert stats["hit_ratio"] == 0.5


@pytest.mark.anyio
async def test_entries_expire_after_ttl() -> None:
  now = [1000.0]
  cache = ContentCache(InMemoryCacheStore(clock=lambda: now[0]), default_ttl_seconds=60)
  await cache.put("diagram:k", b"x", {"format": "svg"})

  now[0] += 59
  assert await cache.get("diagram:k") is not None
  now[0] += 2
  assert await cache.get("diagram:k") is None


@pytest.mark.anyio
async def test_explicit_ttl_overrides_default_and_non_positive_is_refused() -> None:
  now = [1000.0]
  cache = ContentCache(InMemoryCacheStore(clock=lambda: now[0]), default_ttl_seconds=60)

  assert (await cache.put("diagram:short", b"x", ttl=5)).stored
  for ttl in (0, -1):
    write = await cache.put("diagram:never", b"x", ttl=ttl)
    assert write.stored is False
    assert write.reason == "invalid_ttl"

  now[0] += 6
  assert await cache.get("diagram:short") is None
  assert await cache.get("diagram:never") is None
  assert cache.stats()["sets"] == 1


@pytest.mark.anyio
async def test_large_payloads_are_stored_compressed() -> None:
  store = InMemoryCacheStore()
  cache = ContentCache(store, compress_min_bytes=1024)
  payload = b"<svg>" + b"<rect/>" * 2000 + b"</svg>"

  await cache.put("diagram:big", payload, {"format": "svg"})
  raw = await store.get("diagram:big")
  entry = await cache.get("diagram:big")

  assert raw is not None and len(raw) < len(payload)
  assert entry is not None
  assert entry.metadata["encoding"] == "br"
  assert entry.data == payload


@pytest.mark.anyio
async def test_incompressible_payloads_stay_identity() -> None:
  cache = ContentCache(InMemoryCacheStore(), compress_min_bytes=16)
  payload = os.urandom(2048)
  await cache.put("diagram:rand", payload, {"format": "png"})
  entry = await cache.get("diagram:rand")
  assert entry is not None
  assert entry.metadata["encoding"] == "identity"
  assert entry.data == payload


@pytest.mark.anyio
async def test_backend_failures_degrade_to_miss_and_unstored_write() -> None:
  cache = ContentCache(FlakyStore())

  assert await cache.get("diagram:k") is None
  result = await cache.put("diagram:k", b"x", {"format": "png"})

  assert result.stored is False
  assert result.reason is not None and result.reason.startswith("backend_error")
  stats = cache.stats()
  assert stats["errors"] == 2
  assert stats["misses"] == 1
  assert stats["connected"] is False


@pytest.mark.anyio
async def test_slow_backend_read_times_out_as_miss() -> None:
  cache = ContentCache(SlowStore(), timeout_seconds=0.01)
  assert await cache.get("diagram:k") is None
  assert cache.stats()["errors"] == 1


@pytest.mark.anyio
async def test_corrupt_entry_is_a_miss() -> None:
  store = InMemoryCacheStore()
  await store.set("diagram:bad", b"not json", 60)
  cache = ContentCache(store)
  assert await cache.get("diagram:bad") is None
  assert cache.stats()["misses"] == 1


@pytest.mark.anyio
async def test_invalidate_and_reset_stats() -> None:
  cache = ContentCache(InMemoryCacheStore())
  await cache.put("diagram:a", b"1", {"format": "png"})
  await cache.put("diagram:b", b"2", {"format": "png"})
  await cache.put("other:c", b"3", {"format": "png"})

  assert await cache.invalidate("diagram:*") == 2
  assert await cache.get("other:c") is not None
  assert cache.stats()["deletes"] == 2

  cache.reset_stats()
  assert cache.stats()["hits"] == 0
  assert cache.stats()["deletes"] == 0


@pytest.mark.anyio
async def test_null_store_never_hits() -> None:
  cache = ContentCache(NullCacheStore())
  await cache.put("diagram:a", b"1", {"format": "png"})
  assert await cache.get("diagram:a") is None
