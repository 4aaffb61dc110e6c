"""Builders for the events the pipeline emits to subscribers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from diagram_pipeline.jobs.payloads import BatchJobResult, BatchPayload, DiagramPayload, DiagramResult


@dataclass(frozen=True)
class WebhookEvent:
  event_type: str
  data: dict[str, Any]
  metadata: dict[str, Any] = field(default_factory=dict)


def diagram_completed_event(job_id: str, payload: DiagramPayload, result: DiagramResult) -> WebhookEvent:
  """Summarize a finished diagram job; artifact bytes stay with the job result."""
  data = {
    "job_id": job_id,
    "request_id": payload.request_id,
    "job_type": "diagram_generation",
    "status": "completed",
    "diagram": {"format": result.format, "diagram_kind": payload.diagram_kind, "size": result.size},
    "result": {"size": result.size, "mime_type": result.mime_type, "duration_ms": result.duration_ms, "cached": result.cached},
    "error": None,
    "callback_data": payload.callback_data,
  }
  return WebhookEvent("diagram.completed", data, {"job_type": "diagram", "diagram_kind": payload.diagram_kind, "format": result.format})


def batch_completed_event(job_id: str, payload: BatchPayload, result: BatchJobResult) -> WebhookEvent:
  data = {
    "job_id": job_id,
    "batch_id": payload.batch_id,
    "job_type": "batch_processing",
    "status": result.status,
    "summary": {"total": result.total, "successful": result.succeeded, "failed": result.failed, "duration_ms": result.duration_ms},
    "results": [
      {"index": item.index, "success": item.success, "error": item.error, "metadata": {"size": item.size, "format": item.format} if item.success else None}
      for item in result.items
    ],
    "callback_data": payload.callback_data,
  }
  return WebhookEvent("batch.completed", data, {"job_type": "batch", "batch_size": result.total})


def batch_failed_event(job_id: str, payload: BatchPayload, error: BaseException) -> WebhookEvent:
  data = {"job_id": job_id, "batch_id": payload.batch_id, "job_type": "batch_processing", "status": "failed", "error": str(error) or type(error).__name__, "callback_data": payload.callback_data}
  return WebhookEvent("batch.failed", data, {"job_type": "batch", "batch_size": len(payload.items)})
