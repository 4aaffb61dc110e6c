"""Storage interfaces for pipeline jobs, plus the in-process implementation."""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timedelta
from typing import Any, Protocol

from diagram_pipeline.jobs.models import TERMINAL_STATES, JobError, JobRecord

STATE_COUNT_KEYS = ("waiting", "delayed", "active", "completed", "failed", "canceled")


class JobsRepository(Protocol):
  """Repository contract for job persistence.

  Every mutation of an active job names the worker that expects to own it; the write is rejected
  (``False``/``None``) when the lease moved elsewhere, so at most one worker's outcome lands.
  """

  async def create_job(self, record: JobRecord) -> JobRecord:
    """Persist a new queued job and return it with its sequence assigned."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def claim_next(self, queue: str, *, worker_id: str, lease_seconds: float, now: datetime) -> JobRecord | None:
    """Atomically activate the highest-priority, oldest available job of a queue."""

  async def heartbeat(self, job_id: str, *, worker_id: str, lease_seconds: float, now: datetime) -> JobRecord | None:
    """Extend the lease; None when the worker no longer owns the job."""

  async def update_progress(self, job_id: str, *, worker_id: str, progress: int) -> JobRecord | None:
    """Raise stored progress (never lowers it); None when the worker no longer owns the job."""

  async def complete(self, job_id: str, *, worker_id: str, result: Any, now: datetime) -> bool:
    """Mark an owned active job completed."""

  async def fail(self, job_id: str, *, worker_id: str, error: JobError, now: datetime, expired_before: datetime | None = None) -> bool:
    """Mark an owned active job failed."""

  async def requeue(self, job_id: str, *, worker_id: str, error: JobError, available_at: datetime, expired_before: datetime | None = None) -> bool:
    """Return an owned active job to the queue for another attempt."""

  async def cancel(self, job_id: str, *, now: datetime, worker_id: str | None = None) -> bool:
    """Cancel a queued job, or an active one owned by ``worker_id``."""

  async def request_cancel(self, job_id: str) -> bool:
    """Flag an active job for cooperative cancellation."""

  async def find_expired_leases(self, *, now: datetime, limit: int = 100) -> list[JobRecord]:
    """Return active jobs whose lease expired before ``now``."""

  async def count_by_state(self, queue: str, *, now: datetime) -> dict[str, int]:
    """Return counts keyed by ``STATE_COUNT_KEYS``."""

  async def purge_finished(self, *, queue: str | None, older_than: datetime) -> int:
    """Delete terminal jobs finished before ``older_than``; return the number removed."""


def holds_lease(record: Any, worker_id: str, expired_before: datetime | None = None) -> bool:
  if record is None or record.state != "active" or record.lease_owner != worker_id:
    return False
  if expired_before is not None and (record.lease_expires_at is None or record.lease_expires_at > expired_before):
    return False
  return True


class InMemoryJobsRepository:
  """Single-process repository used for development and tests.

  A lock serializes mutations so claims are atomic across worker tasks.
  """

  def __init__(self) -> None:
    self._jobs: dict[str, JobRecord] = {}
    self._sequence = itertools.count(1)
    self._lock = asyncio.Lock()

  async def create_job(self, record: JobRecord) -> JobRecord:
    async with self._lock:
      stored = record.copy()
      stored.sequence = next(self._sequence)
      self._jobs[stored.job_id] = stored
      return stored.copy()

  async def get_job(self, job_id: str) -> JobRecord | None:
    record = self._jobs.get(job_id)
    return record.copy() if record else None

  async def claim_next(self, queue: str, *, worker_id: str, lease_seconds: float, now: datetime) -> JobRecord | None:
    async with self._lock:
      candidates = [job for job in self._jobs.values() if job.queue == queue and job.state == "queued" and job.available_at <= now]
      if not candidates:
        return None

      # Highest priority first; FIFO by submission sequence within a priority.
      job = min(candidates, key=lambda item: (-item.priority, item.sequence))
      job.state = "active"
      job.attempts += 1
      job.progress = 0
      job.lease_owner = worker_id
      job.lease_expires_at = now + timedelta(seconds=lease_seconds)
      job.started_at = now
      return job.copy()

  async def heartbeat(self, job_id: str, *, worker_id: str, lease_seconds: float, now: datetime) -> JobRecord | None:
    async with self._lock:
      job = self._jobs.get(job_id)
      if not holds_lease(job, worker_id):
        return None
      job.lease_expires_at = now + timedelta(seconds=lease_seconds)
      return job.copy()

  async def update_progress(self, job_id: str, *, worker_id: str, progress: int) -> JobRecord | None:
    async with self._lock:
      job = self._jobs.get(job_id)
      if not holds_lease(job, worker_id):
        return None
      job.progress = max(job.progress, progress)
      return job.copy()

  async def complete(self, job_id: str, *, worker_id: str, result: Any, now: datetime) -> bool:
    async with self._lock:
      job = self._jobs.get(job_id)
      if not holds_lease(job, worker_id):
        return False
      job.state = "completed"
      job.progress = 100
      job.result = result
      job.error = None
      job.finished_at = now
      job.lease_owner = None
      job.lease_expires_at = None
      return True

  async def fail(self, job_id: str, *, worker_id: str, error: JobError, now: datetime, expired_before: datetime | None = None) -> bool:
    async with self._lock:
      job = self._jobs.get(job_id)
      if not holds_lease(job, worker_id, expired_before):
        return False
      job.state = "failed"
      job.error = error
      job.finished_at = now
      job.lease_owner = None
      job.lease_expires_at = None
      return True

  async def requeue(self, job_id: str, *, worker_id: str, error: JobError, available_at: datetime, expired_before: datetime | None = None) -> bool:
    async with self._lock:
      job = self._jobs.get(job_id)
      if not holds_lease(job, worker_id, expired_before):
        return False
      job.state = "queued"
      job.error = error
      job.progress = 0
      job.available_at = available_at
      job.lease_owner = None
      job.lease_expires_at = None
      return True

  async def cancel(self, job_id: str, *, now: datetime, worker_id: str | None = None) -> bool:
    async with self._lock:
      job = self._jobs.get(job_id)
      if job is None:
        return False
      if job.state == "queued" or (worker_id is not None and holds_lease(job, worker_id)):
        job.state = "canceled"
        job.finished_at = now
        job.lease_owner = None
        job.lease_expires_at = None
        return True
      return False

  async def request_cancel(self, job_id: str) -> bool:
    async with self._lock:
      job = self._jobs.get(job_id)
      if job is None or job.state != "active":
        return False
      job.cancel_requested = True
      return True

  async def find_expired_leases(self, *, now: datetime, limit: int = 100) -> list[JobRecord]:
    expired = [job.copy() for job in self._jobs.values() if job.state == "active" and job.lease_expires_at is not None and job.lease_expires_at <= now]
    return sorted(expired, key=lambda item: item.sequence)[:limit]

  async def count_by_state(self, queue: str, *, now: datetime) -> dict[str, int]:
    counts = dict.fromkeys(STATE_COUNT_KEYS, 0)
    for job in self._jobs.values():
      if job.queue != queue:
        continue
      state = job.display_state(now)
      counts["waiting" if state == "queued" else state] += 1
    return counts

  async def purge_finished(self, *, queue: str | None, older_than: datetime) -> int:
    async with self._lock:
      doomed = [job_id for job_id, job in self._jobs.items() if job.state in TERMINAL_STATES and (queue is None or job.queue == queue) and job.finished_at is not None and job.finished_at < older_than]
      for job_id in doomed:
        del self._jobs[job_id]
      return len(doomed)
