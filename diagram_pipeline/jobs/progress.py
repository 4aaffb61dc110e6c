"""Progress reporting and cancellation checkpoints for an active job."""

from __future__ import annotations

import logging

from diagram_pipeline.jobs.models import JobCanceledError, LeaseLostError
from diagram_pipeline.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)


class JobProgressReporter:
  """Tracks progress for one attempt; values never decrease within the attempt."""

  def __init__(self, *, jobs_repo: JobsRepository, job_id: str, worker_id: str) -> None:
    self._jobs_repo = jobs_repo
    self._job_id = job_id
    self._worker_id = worker_id
    self._progress = 0
    self._cancel_requested = False
    self._lease_lost = False

  @property
  def job_id(self) -> str:
    return self._job_id

  @property
  def progress(self) -> int:
    return self._progress

  @property
  def cancel_requested(self) -> bool:
    return self._cancel_requested

  @property
  def lease_lost(self) -> bool:
    return self._lease_lost

  def mark_cancel_requested(self) -> None:
    self._cancel_requested = True

  def mark_lease_lost(self) -> None:
    self._lease_lost = True

  async def report(self, progress: int) -> None:
    """Persist a new progress value; lower values than the current one are ignored."""
    progress = max(0, min(100, int(progress)))
    if progress <= self._progress:
      return

    self._progress = progress
    record = await self._jobs_repo.update_progress(self._job_id, worker_id=self._worker_id, progress=progress)
    if record is None:
      self._lease_lost = True
      return
    if record.cancel_requested:
      self._cancel_requested = True

  async def checkpoint(self, stage: str) -> None:
    """Safe point: raise if the job was canceled or another worker took it over."""
    record = await self._jobs_repo.get_job(self._job_id)
    if record is None or record.state != "active" or record.lease_owner != self._worker_id:
      self._lease_lost = True
    elif record.cancel_requested:
      self._cancel_requested = True

    if self._lease_lost:
      raise LeaseLostError(f"Job {self._job_id} is no longer owned by {self._worker_id} at {stage}")
    if self._cancel_requested:
      logger.info("Cancellation observed job_id=%s stage=%s", self._job_id, stage)
      raise JobCanceledError(f"Job {self._job_id} was canceled.")
