"""Per-format generation: cache lookup, render, validate, post-process, compress, write-through."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from starlette.concurrency import run_in_threadpool

from diagram_pipeline.cache.service import ContentCache
from diagram_pipeline.core.errors import ClientError, PipelineError
from diagram_pipeline.formats import catalog
from diagram_pipeline.formats.catalog import FormatSpec
from diagram_pipeline.formats.contracts import BatchResult, FormatResult, InvalidRenderOutputError, UnsupportedFormatError
from diagram_pipeline.formats.imaging import check_options, compress_image, convert_png
from diagram_pipeline.render.client import RenderClient

logger = logging.getLogger(__name__)

Checkpoint = Callable[[str], Awaitable[None]]


def _elapsed_ms(started: float) -> float:
  return round((time.perf_counter() - started) * 1000, 2)


class FormatOrchestrator:
  """Produces validated artifacts in a requested format, consulting the content cache first."""

  def __init__(self, *, render_client: RenderClient, cache: ContentCache | None = None, cache_ttl_seconds: int | None = None) -> None:
    self._render_client = render_client
    self._cache = cache
    self._cache_ttl_seconds = cache_ttl_seconds

  def is_supported(self, diagram_kind: str, format: str) -> bool:
    return catalog.is_supported(diagram_kind, format)

  def recommend(self, use_case: str, diagram_kind: str) -> str:
    return catalog.recommend(use_case, diagram_kind)

  def recommendations(self, diagram_kind: str) -> dict[str, object]:
    return catalog.recommendations(diagram_kind)

  def cache_key(self, content: str, diagram_kind: str, format: str, options: Mapping[str, Any] | None = None) -> str:
    """Fingerprint used for this request; the diagram kind participates as an option."""
    return ContentCache.key(content, catalog.normalize_format(format), {"diagram_kind": diagram_kind.strip().lower(), **dict(options or {})})

  def _resolve(self, diagram_kind: str, format: str) -> FormatSpec:
    spec = catalog.get_format_spec(format)
    if spec is None:
      raise UnsupportedFormatError(f"Unsupported format: {format}")
    if not catalog.is_supported(diagram_kind, format):
      raise UnsupportedFormatError(f"Format {format} not supported for diagram type {diagram_kind}")
    return spec

  async def generate(self, content: str, diagram_kind: str, format: str, options: Mapping[str, Any] | None = None, *, checkpoint: Checkpoint | None = None) -> FormatResult:
    """Generate one format; failures come back as a FormatResult with error detail.

    ``checkpoint`` is awaited after the cache lookup and before the renderer call so a job worker
    can report progress and observe cancellation at that safe point.
    """
    started = time.perf_counter()
    format_name = catalog.normalize_format(format)
    kind = diagram_kind.strip().lower()
    options = dict(options or {})

    # Client errors are reported synchronously and never reach the renderer or cache.
    try:
      spec = self._resolve(kind, format_name)
      check_options(options)
      self._render_client.check_content_size(content)
    except ClientError as exc:
      logger.info("Rejected generation request kind=%s format=%s reason=%s", kind, format_name, exc)
      return FormatResult.failure(format_name, exc, duration_ms=_elapsed_ms(started))

    key = self.cache_key(content, kind, format_name, options)
    if self._cache is not None:
      cached = await self._cache.get(key)
      if cached is not None:
        return FormatResult(success=True, format=format_name, data=cached.data, mime_type=str(cached.metadata.get("mime_type") or spec.mime_type), size=len(cached.data), duration_ms=_elapsed_ms(started), cached=True, metadata=dict(cached.metadata))

    if checkpoint is not None:
      await checkpoint("cache_miss")

    logger.info("Generating diagram kind=%s format=%s endpoint=%s content_length=%s", kind, format_name, spec.endpoint, len(content))
    try:
      data, mime_type = await self._produce(content, kind, spec, options)
    except PipelineError as exc:
      logger.error("Diagram generation failed kind=%s format=%s error_kind=%s error=%s", kind, format_name, getattr(exc, "kind", "internal_error"), exc)
      return FormatResult.failure(format_name, exc, duration_ms=_elapsed_ms(started))

    duration_ms = _elapsed_ms(started)
    metadata: dict[str, Any] = {**options, "size": len(data), "duration_ms": duration_ms, "diagram_kind": kind, "format": format_name, "mime_type": mime_type, "generated_at": datetime.now(UTC).isoformat()}

    if self._cache is not None:
      write = await self._cache.put(key, data, metadata, ttl=self._cache_ttl_seconds)
      metadata["cache_stored"] = write.stored

    logger.info("Diagram generated kind=%s format=%s size=%s duration_ms=%s", kind, format_name, len(data), duration_ms)
    return FormatResult(success=True, format=format_name, data=data, mime_type=mime_type, size=len(data), duration_ms=duration_ms, cached=False, metadata=metadata)

  async def _produce(self, content: str, diagram_kind: str, spec: FormatSpec, options: dict[str, Any]) -> tuple[bytes, str]:
    """Render the base representation, validate it, then derive and compress as configured."""
    base_spec = catalog.FORMATS[spec.endpoint]
    data = await self._render_client.render(content, diagram_kind, base_spec.endpoint, accept=base_spec.mime_type, max_response_bytes=base_spec.max_size)

    if not base_spec.validate(data):
      raise InvalidRenderOutputError(f"Invalid {base_spec.name.upper()} response from diagram service")

    if spec.derived:
      data = await run_in_threadpool(convert_png, data, spec.name, options)
      if not spec.validate(data):
        raise InvalidRenderOutputError(f"Conversion produced invalid {spec.name.upper()} output")

    if spec.compression and options.get("compress") is not False:
      data = await run_in_threadpool(compress_image, data, spec.name, options)

    if len(data) > spec.max_size:
      raise InvalidRenderOutputError(f"{spec.name.upper()} output of {len(data)} bytes exceeds {spec.max_size} bytes")

    return data, spec.mime_type

  async def generate_batch(self, content: str, diagram_kind: str, formats: Sequence[str], options: Mapping[str, Any] | None = None) -> BatchResult:
    """Generate each format concurrently; one failure never aborts the others."""
    outcomes = await asyncio.gather(*(self.generate(content, diagram_kind, format, options) for format in formats), return_exceptions=True)

    results: list[FormatResult] = []
    errors: dict[str, str] = {}
    for index, (format, outcome) in enumerate(zip(formats, outcomes, strict=True)):
      if isinstance(outcome, BaseException):
        if isinstance(outcome, asyncio.CancelledError):
          raise outcome
        logger.error("Unexpected batch generation failure format=%s", format, exc_info=outcome)
        outcome = FormatResult.failure(catalog.normalize_format(format), outcome)
      results.append(outcome)
      if not outcome.success and outcome.error is not None:
        # Repeated or aliased formats keep separate entries.
        key = outcome.format if outcome.format not in errors else f"{outcome.format}#{index}"
        errors[key] = outcome.error.message

    return BatchResult(results=results, errors=errors)
