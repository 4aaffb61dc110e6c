"""Queue-name to processor dispatch."""

from __future__ import annotations

from typing import Protocol

from diagram_pipeline.jobs.models import JobRecord, UnknownQueueError
from diagram_pipeline.jobs.payloads import JobResultBase
from diagram_pipeline.jobs.progress import JobProgressReporter


class JobProcessor(Protocol):
  """Processor contract for one queue.

  A processor may also define ``on_complete(job, result)`` and ``on_failed(job, exc)``. The pipeline
  awaits them only after the job has been recorded as completed or finally failed.
  """

  async def process(self, job: JobRecord, reporter: JobProgressReporter) -> JobResultBase:
    """Run one claimed job and return its result."""


class JobProcessorRegistry:
  """Registry mapping queue names to processors."""

  def __init__(self, handlers: dict[str, JobProcessor] | None = None) -> None:
    self._handlers: dict[str, JobProcessor] = dict(handlers or {})

  def register(self, queue: str, handler: JobProcessor) -> None:
    self._handlers[queue] = handler

  def resolve(self, queue: str) -> JobProcessor:
    handler = self._handlers.get(queue)
    if handler is None:
      raise UnknownQueueError(f"No processor registered for queue: {queue}")
    return handler

  def __contains__(self, queue: object) -> bool:
    return queue in self._handlers

  @property
  def queues(self) -> tuple[str, ...]:
    return tuple(self._handlers)
