"""Shared fixtures: settings, a fake renderer and sample image bytes."""

from __future__ import annotations

import io
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from PIL import Image

from diagram_pipeline.config import QueueSettings, Settings


@pytest.fixture
def anyio_backend():
  return "asyncio"


def make_png(width: int = 8, height: int = 8, color: tuple[int, int, int, int] = (30, 120, 200, 255)) -> bytes:
  buffer = io.BytesIO()
  Image.new("RGBA", (width, height), color).save(buffer, format="PNG")
  return buffer.getvalue()


SVG_BYTES = b'<svg xmlns="http://www.w3.org/2000/svg" width="10" height="10"><rect width="10" height="10"/></svg>'
PDF_BYTES = b"%PDF-1.4\n%fake\n"


@pytest.fixture
def png_bytes() -> bytes:
  return make_png()


class FakeRenderer:
  """MockTransport handler that answers like the renderer and records every call."""

  def __init__(self) -> None:
    self.calls: list[tuple[str, str]] = []
    self.overrides: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
    self.png = make_png()

  def __call__(self, request: httpx.Request) -> httpx.Response:
    path = request.url.path
    self.calls.append((path, request.content.decode("utf-8")))
    if path in self.overrides:
      return self.overrides[path](request)

    endpoint = path.rsplit("/", 1)[-1]
    if endpoint == "png":
      return httpx.Response(200, content=self.png, headers={"content-type": "image/png"})
    if endpoint == "svg":
      return httpx.Response(200, content=SVG_BYTES, headers={"content-type": "image/svg+xml"})
    if endpoint == "pdf":
      return httpx.Response(200, content=PDF_BYTES, headers={"content-type": "application/pdf"})
    return httpx.Response(404, text="unknown endpoint")

  def transport(self) -> httpx.MockTransport:
    return httpx.MockTransport(self)


@pytest.fixture
def fake_renderer() -> FakeRenderer:
  return FakeRenderer()


class ManualClock:
  """Controllable UTC clock for lease and backoff tests."""

  def __init__(self) -> None:
    self.now = datetime(2025, 1, 1, tzinfo=UTC)

  def __call__(self) -> datetime:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> ManualClock:
  return ManualClock()


@pytest.fixture
def settings() -> Settings:
  return Settings(
    environment="test",
    debug=False,
    log_level="INFO",
    log_file=None,
    log_max_bytes=5242880,
    log_backup_count=1,
    renderer_url="http://renderer.test",
    renderer_timeout_seconds=5.0,
    max_content_bytes=100000,
    redis_url=None,
    cache_enabled=True,
    cache_ttl_seconds=3600,
    cache_timeout_seconds=0.5,
    cache_compress_min_bytes=4096,
    pg_dsn=None,
    pg_connect_timeout=5,
    diagram_queue=QueueSettings(concurrency=2, max_attempts=3, backoff_seconds=2.0),
    batch_queue=QueueSettings(concurrency=1, max_attempts=2, backoff_seconds=5.0),
    webhook_queue=QueueSettings(concurrency=1, max_attempts=5, backoff_seconds=1.0),
    job_lease_seconds=5.0,
    job_poll_seconds=0.02,
    job_retention_seconds=86400,
    batch_item_concurrency=4,
    webhook_timeout_seconds=5.0,
    webhook_max_retries=3,
    webhook_retry_delays=(1.0, 5.0, 15.0),
    webhook_signing_secret="test-secret",
    system_alert_webhooks=(),
  )


@pytest.fixture
def production_settings(settings: Settings) -> Settings:
  return replace(settings, environment="production")
