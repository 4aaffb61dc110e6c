"""Queue processors: diagram generation, batch generation and webhook delivery."""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from diagram_pipeline.core.errors import PipelineError
from diagram_pipeline.formats.orchestrator import FormatOrchestrator
from diagram_pipeline.jobs.models import JobHandle, JobRecord
from diagram_pipeline.jobs.payloads import BatchItemResult, BatchJobResult, BatchPayload, DiagramItem, DiagramPayload, DiagramResult, WebhookPayload, WebhookResult
from diagram_pipeline.jobs.progress import JobProgressReporter
from diagram_pipeline.utils.ids import generate_request_id
from diagram_pipeline.webhooks.contracts import WebhookDeliveryError
from diagram_pipeline.webhooks.delivery import WebhookDeliverer
from diagram_pipeline.webhooks.events import WebhookEvent, batch_completed_event, batch_failed_event, diagram_completed_event

logger = logging.getLogger(__name__)

Enqueue = Callable[..., Awaitable[JobHandle]]


def _elapsed_ms(started: float) -> float:
  return round((time.perf_counter() - started) * 1000, 2)


async def enqueue_webhook_event(enqueue: Enqueue | None, url: str | None, event: WebhookEvent) -> JobHandle | None:
  """Queue a webhook delivery job; the request id is fixed here so every retry reuses it."""
  if enqueue is None or not url:
    return None

  payload = WebhookPayload(url=url, event_type=event.event_type, request_id=generate_request_id(), event_timestamp=datetime.now(UTC).isoformat(), data=event.data, metadata=event.metadata)
  try:
    return await enqueue("webhook", payload)
  except PipelineError as exc:
    # Notification failure does not undo the work already done.
    logger.error("Failed to enqueue webhook event=%s url=%s: %s", event.event_type, url, exc)
    return None


class DiagramJobProcessor:
  """Generate one diagram, reporting progress 10/30/80/100."""

  def __init__(self, *, orchestrator: FormatOrchestrator, enqueue: Enqueue | None = None) -> None:
    self._orchestrator = orchestrator
    self._enqueue = enqueue

  async def process(self, job: JobRecord, reporter: JobProgressReporter) -> DiagramResult:
    payload: DiagramPayload = job.payload
    logger.info("Processing diagram job job_id=%s kind=%s format=%s attempt=%s", job.job_id, payload.diagram_kind, payload.format, job.attempts)
    await reporter.report(10)

    async def _after_cache_miss(stage: str) -> None:
      await reporter.report(30)
      await reporter.checkpoint(stage)

    result = await self._orchestrator.generate(payload.content, payload.diagram_kind, payload.format, payload.options, checkpoint=_after_cache_miss)
    result.raise_for_error()
    await reporter.report(80)

    job_result = DiagramResult(
      data_b64=base64.b64encode(result.data or b"").decode("ascii"),
      mime_type=result.mime_type or "",
      format=result.format,
      size=result.size,
      duration_ms=result.duration_ms,
      cached=result.cached,
      request_id=payload.request_id,
    )
    await reporter.report(100)
    return job_result

  async def on_complete(self, job: JobRecord, result: DiagramResult) -> None:
    payload: DiagramPayload = job.payload
    await enqueue_webhook_event(self._enqueue, payload.webhook_url, diagram_completed_event(job.job_id, payload, result))


class BatchJobProcessor:
  """Generate every batch item with bounded concurrency; item failures are recorded, not raised."""

  def __init__(self, *, orchestrator: FormatOrchestrator, item_concurrency: int = 4, enqueue: Enqueue | None = None) -> None:
    self._orchestrator = orchestrator
    self._item_concurrency = max(1, item_concurrency)
    self._enqueue = enqueue

  async def process(self, job: JobRecord, reporter: JobProgressReporter) -> BatchJobResult:
    payload: BatchPayload = job.payload
    started = time.perf_counter()
    total = len(payload.items)
    logger.info("Processing batch job job_id=%s batch_id=%s size=%s attempt=%s", job.job_id, payload.batch_id, total, job.attempts)

    items = await self._run_items(payload, reporter)
    succeeded = sum(1 for item in items if item.success)
    result = BatchJobResult(batch_id=payload.batch_id, total=total, succeeded=succeeded, failed=total - succeeded, duration_ms=_elapsed_ms(started), items=items)
    logger.info("Batch job completed job_id=%s batch_id=%s total=%s succeeded=%s failed=%s", job.job_id, payload.batch_id, total, succeeded, result.failed)

    await reporter.report(100)
    return result

  async def on_complete(self, job: JobRecord, result: BatchJobResult) -> None:
    payload: BatchPayload = job.payload
    await enqueue_webhook_event(self._enqueue, payload.webhook_url, batch_completed_event(job.job_id, payload, result))

  async def on_failed(self, job: JobRecord, exc: BaseException) -> None:
    payload: BatchPayload = job.payload
    await enqueue_webhook_event(self._enqueue, payload.webhook_url, batch_failed_event(job.job_id, payload, exc))

  async def _run_items(self, payload: BatchPayload, reporter: JobProgressReporter) -> list[BatchItemResult]:
    total = len(payload.items)
    semaphore = asyncio.Semaphore(self._item_concurrency)
    done = 0

    async def _run(index: int, item: DiagramItem) -> BatchItemResult:
      nonlocal done
      async with semaphore:
        await reporter.checkpoint(f"batch_item_{index}")
        result = await self._orchestrator.generate(item.content, item.diagram_kind, item.format, item.options)
      done += 1
      await reporter.report(round(done / total * 90))

      if not result.success:
        error = {"kind": result.error.kind, "message": result.error.message} if result.error else {"kind": "internal_error", "message": "generation failed"}
        return BatchItemResult(index=index, diagram_kind=item.diagram_kind, format=result.format, success=False, error=error)
      return BatchItemResult(
        index=index,
        diagram_kind=item.diagram_kind,
        format=result.format,
        success=True,
        size=result.size,
        mime_type=result.mime_type,
        cached=result.cached,
        data_b64=base64.b64encode(result.data or b"").decode("ascii"),
      )

    tasks = [asyncio.create_task(_run(index, item)) for index, item in enumerate(payload.items)]
    try:
      return list(await asyncio.gather(*tasks))
    except BaseException:
      for task in tasks:
        task.cancel()
      await asyncio.gather(*tasks, return_exceptions=True)
      raise


class WebhookJobProcessor:
  """Deliver one queued event; a retryable failed outcome becomes a job-level retry."""

  def __init__(self, *, deliverer: WebhookDeliverer) -> None:
    self._deliverer = deliverer

  async def process(self, job: JobRecord, reporter: JobProgressReporter) -> WebhookResult:
    payload: WebhookPayload = job.payload
    await reporter.report(10)

    outcome = await self._deliverer.deliver(payload.url, payload.data, payload.event_type, request_id=payload.request_id, metadata=payload.metadata, timestamp=payload.event_timestamp)
    if not outcome.delivered:
      raise WebhookDeliveryError(f"Webhook delivery to {payload.url} failed: {outcome.error}", retryable=outcome.retryable, status_code=outcome.status_code)

    await reporter.report(100)
    return WebhookResult(request_id=outcome.request_id, delivered=True, attempts=outcome.attempts, status_code=outcome.status_code)
