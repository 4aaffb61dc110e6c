from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from diagram_pipeline.jobs.models import MAX_PRIORITY, MIN_PRIORITY
from diagram_pipeline.jobs.payloads import MAX_BATCH_ITEMS, MAX_CONTENT_LENGTH


class DiagramSource(BaseModel):
  """Shared request fields describing one diagram to generate."""

  content: StrictStr = Field(min_length=1, max_length=MAX_CONTENT_LENGTH, description="Diagram source text.", examples=["@startuml\nA -> B: hello\n@enduml"])
  diagram_kind: StrictStr = Field(default="plantuml", min_length=1, max_length=64, description="Diagram language, e.g. plantuml, mermaid, graphviz.")
  format: StrictStr = Field(default="png", min_length=1, max_length=16, description="Output format: png, svg, pdf, jpeg or webp.")
  options: dict[str, Any] = Field(default_factory=dict, description="Generation options such as quality or compress.")
  model_config = ConfigDict(extra="forbid")


class DiagramJobRequest(DiagramSource):
  """Request payload for an asynchronous single-diagram job."""

  priority: int = Field(default=0, ge=MIN_PRIORITY, le=MAX_PRIORITY)
  delay_seconds: float = Field(default=0.0, ge=0, le=86400)
  webhook_url: StrictStr | None = Field(default=None, description="Optional URL notified with diagram.completed.")
  callback_data: dict[str, Any] | None = None


class BatchJobRequest(BaseModel):
  """Request payload for an asynchronous batch job."""

  items: list[DiagramSource] = Field(min_length=1, max_length=MAX_BATCH_ITEMS)
  batch_id: StrictStr | None = Field(default=None, min_length=1, max_length=64)
  priority: int = Field(default=0, ge=MIN_PRIORITY, le=MAX_PRIORITY)
  webhook_url: StrictStr | None = None
  callback_data: dict[str, Any] | None = None
  model_config = ConfigDict(extra="forbid")


class JobCreateResponse(BaseModel):
  job_id: str
  queue: str
  status: str
  status_url: str
  batch_id: str | None = None
  request_id: str | None = None


class JobErrorResponse(BaseModel):
  kind: str
  message: str


class JobStatusResponse(BaseModel):
  """Polling view of one job."""

  job_id: str
  queue: str
  state: str
  progress: int
  priority: int
  attempts: int
  max_attempts: int
  cancel_requested: bool
  created_at: str
  started_at: str | None = None
  finished_at: str | None = None
  result: dict[str, Any] | None = None
  error: JobErrorResponse | None = None


class JobCancelResponse(BaseModel):
  job_id: str
  canceled: bool


class GenerateRequest(DiagramSource):
  """Synchronous generation; ``use_case`` picks the format when given."""

  use_case: StrictStr | None = Field(default=None, description="web, print, email, mobile, documentation, presentation, thumbnail or archival.")


class FormatSupportResponse(BaseModel):
  diagram_kind: str
  supported: list[str]
  recommendations: dict[str, str]
  default: str


class WebhookTestRequest(BaseModel):
  url: StrictStr = Field(min_length=1)
  timeout_seconds: float = Field(default=10.0, gt=0, le=30)
  model_config = ConfigDict(extra="forbid")


class WebhookTestResponse(BaseModel):
  success: bool
  status_code: int | None = None
  attempts: int
  request_id: str
  error: str | None = None


class WebhookValidateRequest(BaseModel):
  url: StrictStr = Field(min_length=1)
  payload: StrictStr | None = Field(default=None, description="Raw body received from a webhook, for signature checks.")
  signature: StrictStr | None = None
  secret: StrictStr | None = Field(default=None, description="Secret to verify with; defaults to the service signing secret.")
  model_config = ConfigDict(extra="forbid")


class WebhookValidateResponse(BaseModel):
  url: str
  valid_destination: bool
  signature_valid: bool | None = None
