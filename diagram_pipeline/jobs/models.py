"""Domain models for pipeline jobs."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Literal

from diagram_pipeline.core.errors import ClientError, PipelineError

JobState = Literal["queued", "active", "completed", "failed", "canceled"]

TERMINAL_STATES = frozenset({"completed", "failed", "canceled"})
MIN_PRIORITY = -10
MAX_PRIORITY = 10


class PipelineNotReadyError(PipelineError):
  """Submission attempted before the pipeline was started (or after shutdown)."""

  kind = "not_ready"


class UnknownQueueError(ClientError):
  kind = "unknown_queue"


class InvalidJobPayloadError(ClientError):
  kind = "invalid_payload"


class JobNotFoundError(ClientError):
  kind = "not_found"


class JobCanceledError(PipelineError):
  """Raised inside a processor when the job was canceled while active."""

  kind = "canceled"
  retryable = False


class JobStalledError(PipelineError):
  """A worker's lease expired before the job finished."""

  kind = "stalled"


class LeaseLostError(PipelineError):
  """The worker no longer owns the job; its work must be discarded."""

  kind = "lease_lost"


@dataclass(frozen=True)
class JobError:
  kind: str
  message: str

  def to_dict(self) -> dict[str, str]:
    return {"kind": self.kind, "message": self.message}

  @classmethod
  def from_dict(cls, raw: dict[str, Any] | None) -> JobError | None:
    if not raw:
      return None
    return cls(kind=str(raw.get("kind") or "internal_error"), message=str(raw.get("message") or ""))

  @classmethod
  def from_exception(cls, exc: BaseException) -> JobError:
    return cls(kind=getattr(exc, "kind", None) or "internal_error", message=str(exc) or type(exc).__name__)


@dataclass
class JobRecord:
  """Represents one unit of queued work and its lifecycle state."""

  job_id: str
  queue: str
  payload: Any
  priority: int
  created_at: datetime
  available_at: datetime
  max_attempts: int
  backoff_base_seconds: float
  sequence: int = 0
  state: JobState = "queued"
  attempts: int = 0
  progress: int = 0
  result: Any = None
  error: JobError | None = None
  lease_owner: str | None = None
  lease_expires_at: datetime | None = None
  cancel_requested: bool = False
  started_at: datetime | None = None
  finished_at: datetime | None = None

  @property
  def is_terminal(self) -> bool:
    return self.state in TERMINAL_STATES

  def copy(self) -> JobRecord:
    return replace(self)

  def display_state(self, now: datetime) -> str:
    """Return the externally visible state; a queued job gated in the future is ``delayed``."""
    if self.state == "queued" and self.available_at > now:
      return "delayed"
    return self.state


@dataclass(frozen=True)
class JobView:
  """Read-only status snapshot returned to pollers."""

  job_id: str
  queue: str
  state: str
  progress: int
  priority: int
  attempts: int
  max_attempts: int
  cancel_requested: bool
  created_at: datetime
  started_at: datetime | None
  finished_at: datetime | None
  result: dict[str, Any] | None
  error: JobError | None

  def to_dict(self) -> dict[str, Any]:
    return {
      "job_id": self.job_id,
      "queue": self.queue,
      "state": self.state,
      "progress": self.progress,
      "priority": self.priority,
      "attempts": self.attempts,
      "max_attempts": self.max_attempts,
      "cancel_requested": self.cancel_requested,
      "created_at": self.created_at.isoformat(),
      "started_at": self.started_at.isoformat() if self.started_at else None,
      "finished_at": self.finished_at.isoformat() if self.finished_at else None,
      "result": self.result,
      "error": self.error.to_dict() if self.error else None,
    }


@dataclass(frozen=True)
class JobHandle:
  job_id: str
  queue: str
  state: str
