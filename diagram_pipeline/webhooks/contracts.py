"""Contracts for outbound webhook delivery."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from diagram_pipeline.core.errors import ClientError, TransportError


class InvalidDestinationError(ClientError):
  """Webhook URL is malformed, not http(s), or points at a private network in production."""

  kind = "invalid_destination"


class WebhookDeliveryError(TransportError):
  """Delivery exhausted its retries; raised by the webhook job processor for job-level retry."""

  def __init__(self, message: str, *, retryable: bool, status_code: int | None = None) -> None:
    super().__init__(message)
    self.retryable = retryable
    self.status_code = status_code


@dataclass(frozen=True)
class DeliveryOutcome:
  """Structured result of one delivery attempt-series."""

  request_id: str
  url: str
  event_type: str
  delivered: bool
  attempts: int
  status_code: int | None = None
  error: str | None = None
  error_kind: str | None = None
  retryable: bool = False
  attempt_times: list[str] = field(default_factory=list)
  delays: list[float] = field(default_factory=list)

  @property
  def status(self) -> str:
    return "delivered" if self.delivered else "failed"


@dataclass(frozen=True)
class WebhookDeliveryLogEntry:
  """Audit row written for every terminal delivery outcome."""

  url: str
  event_type: str
  request_id: str
  payload: dict[str, Any]
  status: str
  status_code: int | None
  attempts: int
  error_message: str | None
  metadata: dict[str, Any]
  created_at: datetime


class WebhookDeliveryLogRepository(Protocol):
  """Persistence contract for delivery audit records."""

  async def insert(self, entry: WebhookDeliveryLogEntry) -> None:
    """Persist one delivery outcome."""

  async def summarize(self, *, since: datetime, until: datetime) -> dict[str, dict[str, float]]:
    """Aggregate outcomes by status within a time window."""
