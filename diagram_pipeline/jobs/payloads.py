"""Tagged-union payloads and results for each queue, encoded with msgspec."""

from __future__ import annotations

from typing import Annotated, Any

import msgspec

from diagram_pipeline.jobs.models import InvalidJobPayloadError, UnknownQueueError

MAX_BATCH_ITEMS = 50
MAX_CONTENT_LENGTH = 100_000

Content = Annotated[str, msgspec.Meta(min_length=1, max_length=MAX_CONTENT_LENGTH)]
Identifier = Annotated[str, msgspec.Meta(min_length=1, max_length=64)]


class DiagramItem(msgspec.Struct, frozen=True, forbid_unknown_fields=True):
  content: Content
  diagram_kind: Identifier
  format: Identifier = "png"
  options: dict[str, Any] = msgspec.field(default_factory=dict)


class JobPayloadBase(msgspec.Struct, frozen=True, tag_field="kind", forbid_unknown_fields=True):
  pass


class DiagramPayload(JobPayloadBase, tag="diagram"):
  content: Content
  diagram_kind: Identifier
  format: Identifier = "png"
  options: dict[str, Any] = msgspec.field(default_factory=dict)
  request_id: str | None = None
  webhook_url: str | None = None
  callback_data: dict[str, Any] | None = None


class BatchPayload(JobPayloadBase, tag="batch"):
  batch_id: Identifier
  items: Annotated[list[DiagramItem], msgspec.Meta(min_length=1, max_length=MAX_BATCH_ITEMS)]
  webhook_url: str | None = None
  callback_data: dict[str, Any] | None = None


class WebhookPayload(JobPayloadBase, tag="webhook"):
  url: Annotated[str, msgspec.Meta(min_length=1)]
  event_type: Identifier
  request_id: Identifier
  event_timestamp: str
  data: dict[str, Any] = msgspec.field(default_factory=dict)
  metadata: dict[str, Any] = msgspec.field(default_factory=dict)


JobPayload = DiagramPayload | BatchPayload | WebhookPayload

QUEUE_PAYLOAD_TYPES: dict[str, type[JobPayloadBase]] = {"diagram": DiagramPayload, "batch": BatchPayload, "webhook": WebhookPayload}


class JobResultBase(msgspec.Struct, frozen=True, tag_field="kind"):
  pass


class DiagramResult(JobResultBase, tag="diagram"):
  data_b64: str
  mime_type: str
  format: str
  size: int
  duration_ms: float
  cached: bool
  request_id: str | None = None


class BatchItemResult(msgspec.Struct, frozen=True):
  index: int
  diagram_kind: str
  format: str
  success: bool
  size: int = 0
  mime_type: str | None = None
  cached: bool = False
  data_b64: str | None = None
  error: dict[str, Any] | None = None


class BatchJobResult(JobResultBase, tag="batch"):
  batch_id: str
  total: int
  succeeded: int
  failed: int
  duration_ms: float
  items: list[BatchItemResult]

  @property
  def status(self) -> str:
    return "completed" if self.failed == 0 else "partial"


class WebhookResult(JobResultBase, tag="webhook"):
  request_id: str
  delivered: bool
  attempts: int
  status_code: int | None = None


JobResult = DiagramResult | BatchJobResult | WebhookResult


def validate_payload(queue: str, raw: Any) -> JobPayloadBase:
  """Validate a raw mapping (or struct) against the queue's payload variant."""
  payload_type = QUEUE_PAYLOAD_TYPES.get(queue)
  if payload_type is None:
    raise UnknownQueueError(f"Unknown queue: {queue}")

  # Round-trip structs through builtins so field constraints are enforced either way.
  if isinstance(raw, msgspec.Struct):
    raw = msgspec.to_builtins(raw)
  if not isinstance(raw, dict):
    raise InvalidJobPayloadError(f"Payload for queue {queue} must be an object")

  expected_tag = payload_type.__struct_config__.tag
  tag = raw.get("kind", expected_tag)
  if tag != expected_tag:
    raise InvalidJobPayloadError(f"Payload kind {tag!r} does not match queue {queue}")

  try:
    return msgspec.convert({**raw, "kind": expected_tag}, type=payload_type)
  except msgspec.ValidationError as exc:
    raise InvalidJobPayloadError(f"Invalid {queue} payload: {exc}") from exc


def encode_payload(payload: JobPayloadBase) -> dict[str, Any]:
  return msgspec.to_builtins(payload)


def decode_payload(raw: dict[str, Any]) -> JobPayloadBase:
  return msgspec.convert(raw, type=JobPayload)


def encode_result(result: JobResultBase | None) -> dict[str, Any] | None:
  return msgspec.to_builtins(result) if result is not None else None


def decode_result(raw: dict[str, Any] | None) -> JobResultBase | None:
  return msgspec.convert(raw, type=JobResult) if raw else None
