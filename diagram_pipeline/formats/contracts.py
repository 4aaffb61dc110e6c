"""Result types and failures for format orchestration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from diagram_pipeline.core.errors import ClientError, OutputValidationError, PipelineError


class UnsupportedFormatError(ClientError):
  """The requested output format is unknown or not available for the diagram kind."""

  kind = "unsupported_format"


class InvalidOptionsError(ClientError):
  """A generation option has the wrong type or is out of range."""

  kind = "invalid_options"


class InvalidRenderOutputError(OutputValidationError):
  """Renderer bytes failed the format's signature check."""


class GenerationFailedError(PipelineError):
  """Re-raised form of a failed FormatResult, preserving kind and retryability."""

  def __init__(self, message: str, *, kind: str, retryable: bool) -> None:
    super().__init__(message)
    self.kind = kind
    self.retryable = retryable


@dataclass(frozen=True)
class FormatErrorDetail:
  kind: str
  message: str
  retryable: bool


@dataclass(frozen=True)
class FormatResult:
  """Outcome of generating one (content, format) pair."""

  success: bool
  format: str
  data: bytes | None = None
  mime_type: str | None = None
  size: int = 0
  duration_ms: float = 0.0
  cached: bool = False
  metadata: dict[str, Any] = field(default_factory=dict)
  error: FormatErrorDetail | None = None

  @classmethod
  def failure(cls, format: str, exc: BaseException, *, duration_ms: float = 0.0) -> FormatResult:
    detail = FormatErrorDetail(kind=getattr(exc, "kind", "internal_error"), message=str(exc) or type(exc).__name__, retryable=bool(getattr(exc, "retryable", True)))
    return cls(success=False, format=format, duration_ms=duration_ms, error=detail)

  def raise_for_error(self) -> FormatResult:
    """Raise GenerationFailedError for a failed result; return self otherwise."""
    if self.success:
      return self
    detail = self.error or FormatErrorDetail(kind="internal_error", message="generation failed", retryable=True)
    raise GenerationFailedError(detail.message, kind=detail.kind, retryable=detail.retryable)


@dataclass(frozen=True)
class BatchResult:
  """Per-format results in the caller's order plus summary counts."""

  results: list[FormatResult]
  errors: dict[str, str]

  @property
  def total(self) -> int:
    return len(self.results)

  @property
  def succeeded(self) -> int:
    return sum(1 for result in self.results if result.success)

  @property
  def failed(self) -> int:
    return self.total - self.succeeded
