"""Prioritized, lease-based job pipeline.

Workers are asyncio tasks, ``concurrency`` per queue. Each worker claims the next available job
through the repository, renews the lease while the processor runs, and records the outcome only
while it still owns the lease. A periodic sweep returns jobs with expired leases to the queue (or
fails them once their attempts are exhausted).
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import msgspec

from diagram_pipeline.core.errors import PipelineError, is_retryable
from diagram_pipeline.jobs.dispatch import JobProcessor, JobProcessorRegistry
from diagram_pipeline.jobs.models import MAX_PRIORITY, MIN_PRIORITY, InvalidJobPayloadError, JobCanceledError, JobError, JobHandle, JobRecord, JobStalledError, JobView, LeaseLostError, PipelineNotReadyError, UnknownQueueError
from diagram_pipeline.jobs.payloads import DiagramPayload, encode_result, validate_payload
from diagram_pipeline.jobs.policies import DEFAULT_POLICIES, QueuePolicy, backoff_delay
from diagram_pipeline.jobs.progress import JobProgressReporter
from diagram_pipeline.storage.jobs_repo import JobsRepository
from diagram_pipeline.utils.ids import generate_job_id, generate_request_id

logger = logging.getLogger(__name__)

_CLEAN_INTERVAL_SECONDS = 60.0


def _utc_now() -> datetime:
  return datetime.now(UTC)


@dataclass
class PipelineCounters:
  processed: int = 0
  completed: int = 0
  failed: int = 0
  retried: int = 0
  stalled: int = 0
  canceled: int = 0


class JobPipeline:
  """Accepts jobs for named queues and runs them through registered processors."""

  def __init__(
    self,
    *,
    jobs_repo: JobsRepository,
    policies: Mapping[str, QueuePolicy] | None = None,
    registry: JobProcessorRegistry | None = None,
    lease_seconds: float = 30.0,
    poll_seconds: float = 1.0,
    retention_seconds: float = 86400.0,
    sweep_interval_seconds: float | None = None,
    clock: Callable[[], datetime] = _utc_now,
  ) -> None:
    self._jobs_repo = jobs_repo
    self._policies = dict(policies or DEFAULT_POLICIES)
    self._registry = registry or JobProcessorRegistry()
    self._lease_seconds = lease_seconds
    self._poll_seconds = poll_seconds
    self._retention_seconds = retention_seconds
    self._sweep_interval_seconds = sweep_interval_seconds or max(lease_seconds / 2, poll_seconds)
    self._clock = clock
    self._counters = PipelineCounters()
    self._paused: set[str] = set()
    self._wakeups: dict[str, asyncio.Event] = {}
    self._tasks: list[asyncio.Task[None]] = []
    self._stopping = asyncio.Event()
    self._started = False
    self._instance = f"{os.getpid()}-{uuid.uuid4().hex[:6]}"

  @property
  def started(self) -> bool:
    return self._started

  @property
  def queues(self) -> tuple[str, ...]:
    return tuple(self._policies)

  def register_processor(self, queue: str, processor: JobProcessor) -> None:
    if queue not in self._policies:
      raise UnknownQueueError(f"Unknown queue: {queue}")
    self._registry.register(queue, processor)

  def policy(self, queue: str) -> QueuePolicy:
    policy = self._policies.get(queue)
    if policy is None:
      raise UnknownQueueError(f"Unknown queue: {queue}")
    return policy

  def new_worker_id(self, queue: str) -> str:
    return f"{queue}-{self._instance}-{uuid.uuid4().hex[:8]}"

  # Lifecycle

  async def start(self, *, spawn_workers: bool = True) -> None:
    """Mark the pipeline ready; unless ``spawn_workers`` is False, spawn workers and the stall sweep."""
    if self._started:
      return

    self._stopping = asyncio.Event()
    self._started = True
    for queue in self._policies:
      self._wakeups[queue] = asyncio.Event()
    if not spawn_workers:
      logger.info("Job pipeline accepting jobs without local workers queues=%s", ",".join(self._policies))
      return

    for queue, policy in self._policies.items():
      if queue not in self._registry:
        logger.warning("No processor registered queue=%s; jobs will wait", queue)
        continue
      for _ in range(policy.concurrency):
        self._tasks.append(asyncio.create_task(self._worker_loop(queue, self.new_worker_id(queue)), name=f"pipeline-worker-{queue}"))
    self._tasks.append(asyncio.create_task(self._sweep_loop(), name="pipeline-sweep"))
    logger.info("Job pipeline started queues=%s workers=%s", ",".join(self._policies), len(self._tasks) - 1)

  async def shutdown(self, timeout: float = 10.0) -> None:
    """Stop accepting jobs and wait (bounded) for in-flight work; leftovers are recovered by the stall sweep."""
    if not self._started:
      return

    self._started = False
    self._stopping.set()
    for wakeup in self._wakeups.values():
      wakeup.set()

    tasks, self._tasks = self._tasks, []
    if tasks:
      _, pending = await asyncio.wait(tasks, timeout=timeout)
      for task in pending:
        task.cancel()
      await asyncio.gather(*pending, return_exceptions=True)
    logger.info("Job pipeline stopped")

  # Public operations

  async def submit(self, queue: str, payload: Any, *, priority: int = 0, delay: float = 0.0) -> JobHandle:
    """Validate and enqueue a job; returns immediately with its handle."""
    if not self._started:
      raise PipelineNotReadyError("Job pipeline is not started.")

    policy = self.policy(queue)
    if isinstance(priority, bool) or not isinstance(priority, int) or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
      raise InvalidJobPayloadError(f"Priority must be an integer between {MIN_PRIORITY} and {MAX_PRIORITY}.")
    if delay < 0:
      raise InvalidJobPayloadError("Delay must not be negative.")

    validated = validate_payload(queue, payload)
    if isinstance(validated, DiagramPayload) and not validated.request_id:
      validated = msgspec.structs.replace(validated, request_id=generate_request_id())

    now = self._clock()
    record = JobRecord(
      job_id=generate_job_id(),
      queue=queue,
      payload=validated,
      priority=priority,
      created_at=now,
      available_at=now + timedelta(seconds=delay),
      max_attempts=policy.max_attempts,
      backoff_base_seconds=policy.backoff_base_seconds,
    )
    stored = await self._jobs_repo.create_job(record)
    logger.info("Job queued job_id=%s queue=%s priority=%s delay=%ss", stored.job_id, queue, priority, delay)

    wakeup = self._wakeups.get(queue)
    if wakeup is not None:
      wakeup.set()
    return JobHandle(job_id=stored.job_id, queue=queue, state=stored.display_state(now))

  async def status(self, queue: str, job_id: str) -> JobView | None:
    """Return a status snapshot, or None when the job does not exist in that queue."""
    self.policy(queue)
    record = await self._jobs_repo.get_job(job_id)
    if record is None or record.queue != queue:
      return None
    return JobView(
      job_id=record.job_id,
      queue=record.queue,
      state=record.display_state(self._clock()),
      progress=record.progress,
      priority=record.priority,
      attempts=record.attempts,
      max_attempts=record.max_attempts,
      cancel_requested=record.cancel_requested,
      created_at=record.created_at,
      started_at=record.started_at,
      finished_at=record.finished_at,
      result=encode_result(record.result),
      error=record.error,
    )

  async def cancel(self, job_id: str) -> bool:
    """Cancel a queued job, or flag an active one; False for terminal or unknown jobs."""
    record = await self._jobs_repo.get_job(job_id)
    if record is None or record.is_terminal:
      return False

    if record.state == "queued":
      if await self._jobs_repo.cancel(job_id, now=self._clock()):
        self._counters.canceled += 1
        logger.info("Job canceled job_id=%s queue=%s", job_id, record.queue)
        return True
      # Claimed between the read and the cancel; fall through to a cooperative request.

    requested = await self._jobs_repo.request_cancel(job_id)
    if requested:
      logger.info("Cancellation requested job_id=%s queue=%s", job_id, record.queue)
    return requested

  async def stats(self) -> dict[str, Any]:
    now = self._clock()
    queues: dict[str, dict[str, Any]] = {}
    for queue in self._policies:
      counts: dict[str, Any] = await self._jobs_repo.count_by_state(queue, now=now)
      counts["total"] = sum(counts.values())
      counts["paused"] = queue in self._paused
      queues[queue] = counts
    return {"queues": queues, "counters": asdict(self._counters)}

  def pause(self, queue: str | None = None) -> None:
    """Stop claiming new jobs from one queue (or all); in-flight jobs finish."""
    targets = [queue] if queue else list(self._policies)
    for name in targets:
      self.policy(name)
      self._paused.add(name)
    logger.info("Queues paused queues=%s", ",".join(targets))

  def resume(self, queue: str | None = None) -> None:
    targets = [queue] if queue else list(self._policies)
    for name in targets:
      self.policy(name)
      self._paused.discard(name)
      wakeup = self._wakeups.get(name)
      if wakeup is not None:
        wakeup.set()
    logger.info("Queues resumed queues=%s", ",".join(targets))

  def is_paused(self, queue: str) -> bool:
    return queue in self._paused

  async def clean(self, queue: str | None = None, grace_seconds: float | None = None) -> int:
    """Purge terminal jobs finished more than ``grace_seconds`` ago (default: retention)."""
    if queue is not None:
      self.policy(queue)
    grace = self._retention_seconds if grace_seconds is None else grace_seconds
    removed = await self._jobs_repo.purge_finished(queue=queue, older_than=self._clock() - timedelta(seconds=grace))
    if removed:
      logger.info("Purged finished jobs queue=%s removed=%s", queue or "*", removed)
    return removed

  async def recover_stalled(self) -> int:
    """Return expired-lease jobs to the queue, or fail them when attempts are exhausted."""
    now = self._clock()
    recovered = 0
    for job in await self._jobs_repo.find_expired_leases(now=now):
      owner = job.lease_owner or ""
      stalled = JobStalledError(f"Lease held by {owner} expired")
      error = JobError.from_exception(stalled)
      if job.cancel_requested:
        changed = await self._jobs_repo.cancel(job.job_id, now=now, worker_id=owner)
      elif job.attempts < job.max_attempts:
        available_at = now + timedelta(seconds=backoff_delay(job.backoff_base_seconds, job.attempts))
        changed = await self._jobs_repo.requeue(job.job_id, worker_id=owner, error=error, available_at=available_at, expired_before=now)
      else:
        changed = await self._jobs_repo.fail(job.job_id, worker_id=owner, error=error, now=now, expired_before=now)
        if changed and job.queue in self._registry:
          await self._run_hook(self._registry.resolve(job.queue), "on_failed", job, stalled)

      if changed:
        recovered += 1
        self._counters.stalled += 1
        logger.warning("Stalled job recovered job_id=%s queue=%s attempts=%s/%s", job.job_id, job.queue, job.attempts, job.max_attempts)
    return recovered

  async def run_once(self, queue: str, *, worker_id: str | None = None) -> bool:
    """Claim and fully process one job from ``queue``; False when nothing was available."""
    worker_id = worker_id or self.new_worker_id(queue)
    processor = self._registry.resolve(queue)
    record = await self._jobs_repo.claim_next(queue, worker_id=worker_id, lease_seconds=self._lease_seconds, now=self._clock())
    if record is None:
      return False
    await self._execute(record, worker_id, processor)
    return True

  # Internals

  async def _execute(self, record: JobRecord, worker_id: str, processor: JobProcessor) -> None:
    reporter = JobProgressReporter(jobs_repo=self._jobs_repo, job_id=record.job_id, worker_id=worker_id)
    heartbeat = asyncio.create_task(self._heartbeat_loop(record.job_id, worker_id, reporter))
    started = time.perf_counter()
    self._counters.processed += 1

    try:
      result = await processor.process(record, reporter)
    except LeaseLostError:
      logger.warning("Lease lost; discarding attempt job_id=%s worker=%s", record.job_id, worker_id)
      return
    except JobCanceledError:
      await self._finish_canceled(record, worker_id)
      return
    except Exception as exc:  # noqa: BLE001
      await self._handle_failure(record, worker_id, exc, processor)
      return
    finally:
      heartbeat.cancel()
      await asyncio.gather(heartbeat, return_exceptions=True)

    # A cancel requested mid-flight discards the finished result.
    current = await self._jobs_repo.get_job(record.job_id)
    if current is not None and current.cancel_requested:
      await self._finish_canceled(record, worker_id)
      return

    if await self._jobs_repo.complete(record.job_id, worker_id=worker_id, result=result, now=self._clock()):
      self._counters.completed += 1
      logger.info("Job completed job_id=%s queue=%s attempt=%s duration_ms=%.2f", record.job_id, record.queue, record.attempts, (time.perf_counter() - started) * 1000)
      await self._run_hook(processor, "on_complete", record, result)
    else:
      logger.warning("Lease lost before completion; result discarded job_id=%s worker=%s", record.job_id, worker_id)

  async def _finish_canceled(self, record: JobRecord, worker_id: str) -> None:
    if await self._jobs_repo.cancel(record.job_id, now=self._clock(), worker_id=worker_id):
      self._counters.canceled += 1
      logger.info("Active job canceled job_id=%s queue=%s", record.job_id, record.queue)

  async def _handle_failure(self, record: JobRecord, worker_id: str, exc: Exception, processor: JobProcessor) -> None:
    error = JobError.from_exception(exc)
    if not isinstance(exc, PipelineError):
      logger.exception("Unexpected processor error job_id=%s queue=%s", record.job_id, record.queue)

    current = await self._jobs_repo.get_job(record.job_id)
    if current is not None and current.cancel_requested:
      await self._finish_canceled(record, worker_id)
      return

    now = self._clock()
    if is_retryable(exc) and record.attempts < record.max_attempts:
      delay = backoff_delay(record.backoff_base_seconds, record.attempts)
      if await self._jobs_repo.requeue(record.job_id, worker_id=worker_id, error=error, available_at=now + timedelta(seconds=delay)):
        self._counters.retried += 1
        logger.warning("Job attempt failed; retrying job_id=%s queue=%s attempt=%s/%s delay=%ss kind=%s error=%s", record.job_id, record.queue, record.attempts, record.max_attempts, delay, error.kind, error.message)
        wakeup = self._wakeups.get(record.queue)
        if wakeup is not None and delay <= 0:
          wakeup.set()
      return

    if await self._jobs_repo.fail(record.job_id, worker_id=worker_id, error=error, now=now):
      self._counters.failed += 1
      logger.error("Job failed job_id=%s queue=%s attempts=%s kind=%s error=%s", record.job_id, record.queue, record.attempts, error.kind, error.message)
      await self._run_hook(processor, "on_failed", record, exc)

  async def _run_hook(self, processor: JobProcessor, name: str, record: JobRecord, *args: Any) -> None:
    """Run an optional processor hook once the job reached its terminal state; hook errors never change that state."""
    hook = getattr(processor, name, None)
    if hook is None:
      return
    try:
      await hook(record, *args)
    except Exception:  # noqa: BLE001
      logger.exception("Processor hook failed hook=%s job_id=%s queue=%s", name, record.job_id, record.queue)

  async def _heartbeat_loop(self, job_id: str, worker_id: str, reporter: JobProgressReporter) -> None:
    interval = max(self._lease_seconds / 3, 0.01)
    while True:
      await asyncio.sleep(interval)
      try:
        record = await self._jobs_repo.heartbeat(job_id, worker_id=worker_id, lease_seconds=self._lease_seconds, now=self._clock())
      except Exception:  # noqa: BLE001
        logger.exception("Heartbeat failed job_id=%s worker=%s", job_id, worker_id)
        continue
      if record is None:
        reporter.mark_lease_lost()
        return
      if record.cancel_requested:
        reporter.mark_cancel_requested()

  async def _wait_for_work(self, queue: str) -> None:
    wakeup = self._wakeups[queue]
    try:
      await asyncio.wait_for(wakeup.wait(), timeout=self._poll_seconds)
    except TimeoutError:
      return
    if not self._stopping.is_set():
      wakeup.clear()

  async def _worker_loop(self, queue: str, worker_id: str) -> None:
    while not self._stopping.is_set():
      if queue in self._paused:
        await self._wait_for_work(queue)
        continue
      try:
        claimed = await self.run_once(queue, worker_id=worker_id)
      except Exception:  # noqa: BLE001
        logger.exception("Worker iteration failed queue=%s worker=%s", queue, worker_id)
        claimed = False
      if not claimed:
        await self._wait_for_work(queue)

  async def _sweep_loop(self) -> None:
    last_clean = time.monotonic()
    while not self._stopping.is_set():
      try:
        await asyncio.wait_for(self._stopping.wait(), timeout=self._sweep_interval_seconds)
        return
      except TimeoutError:
        pass
      try:
        await self.recover_stalled()
        if time.monotonic() - last_clean >= _CLEAN_INTERVAL_SECONDS:
          last_clean = time.monotonic()
          await self.clean()
      except Exception:  # noqa: BLE001
        logger.exception("Pipeline sweep failed")
