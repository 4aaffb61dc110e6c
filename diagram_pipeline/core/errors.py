"""Error taxonomy shared by the pipeline components.

Every domain exception carries a machine-readable ``kind`` and a ``retryable`` flag so the job
pipeline can decide between re-queueing and terminal failure without inspecting messages.
"""

from __future__ import annotations


class PipelineError(Exception):
  """Base class for all orchestration-layer failures."""

  kind = "internal_error"
  retryable = True


class ClientError(PipelineError):
  """Caller-correctable failure; reported synchronously and never retried."""

  kind = "client_error"
  retryable = False


class TransportError(PipelineError):
  """A remote collaborator was unreachable, timed out, or answered with a transient status."""

  kind = "transport_error"
  retryable = True


class OutputValidationError(PipelineError):
  """A collaborator answered successfully but with bytes that fail validation."""

  kind = "validation_error"
  retryable = True


def error_kind(exc: BaseException) -> str:
  """Return the taxonomy kind for an arbitrary exception."""
  return getattr(exc, "kind", None) or "internal_error"


def is_retryable(exc: BaseException) -> bool:
  """Return whether the exception permits another attempt."""
  return bool(getattr(exc, "retryable", True))
