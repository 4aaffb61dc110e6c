"""Per-queue concurrency and retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from diagram_pipeline.config import QueueSettings


@dataclass(frozen=True)
class QueuePolicy:
  name: str
  concurrency: int
  max_attempts: int
  backoff_base_seconds: float

  @classmethod
  def from_settings(cls, name: str, settings: QueueSettings) -> QueuePolicy:
    return cls(name=name, concurrency=settings.concurrency, max_attempts=settings.max_attempts, backoff_base_seconds=settings.backoff_seconds)


def backoff_delay(base_seconds: float, attempts: int) -> float:
  """Exponential job backoff: ``base * 2**(attempts - 1)`` for the attempt that just failed."""
  return base_seconds * (2 ** max(attempts - 1, 0))


DEFAULT_POLICIES: dict[str, QueuePolicy] = {
  "diagram": QueuePolicy(name="diagram", concurrency=5, max_attempts=3, backoff_base_seconds=2.0),
  "batch": QueuePolicy(name="batch", concurrency=2, max_attempts=2, backoff_base_seconds=5.0),
  "webhook": QueuePolicy(name="webhook", concurrency=3, max_attempts=5, backoff_base_seconds=1.0),
}
