from __future__ import annotations

from datetime import timedelta

import pytest

from diagram_pipeline.jobs.models import JobError, JobRecord
from diagram_pipeline.storage.jobs_repo import STATE_COUNT_KEYS, InMemoryJobsRepository


def _record(job_id: str, clock, *, queue: str = "diagram", priority: int = 0, delay: float = 0.0) -> JobRecord:
  now = clock()
  return JobRecord(job_id=job_id, queue=queue, payload={"content": job_id}, priority=priority, created_at=now, available_at=now + timedelta(seconds=delay), max_attempts=3, backoff_base_seconds=1.0)


@pytest.mark.anyio
async def test_claims_follow_priority_then_submission_order(clock) -> None:
  repo = InMemoryJobsRepository()
  for job_id, priority in (("p3-a", 3), ("low", -1), ("p3-b", 3), ("zero", 0)):
    await repo.create_job(_record(job_id, clock, priority=priority))

  claimed = []
  while (job := await repo.claim_next("diagram", worker_id="w1", lease_seconds=30, now=clock())) is not None:
    claimed.append(job.job_id)

  assert claimed == ["p3-a", "p3-b", "zero", "low"]


@pytest.mark.anyio
async def test_claim_activates_and_counts_attempt(clock) -> None:
  repo = InMemoryJobsRepository()
  created = await repo.create_job(_record("job-1", clock))
  assert created.sequence == 1

  job = await repo.claim_next("diagram", worker_id="w1", lease_seconds=30, now=clock())

  assert job.state == "active"
  assert job.attempts == 1
  assert job.lease_owner == "w1"
  assert job.lease_expires_at == clock() + timedelta(seconds=30)
  assert job.started_at == clock()
  assert await repo.claim_next("diagram", worker_id="w2", lease_seconds=30, now=clock()) is None


@pytest.mark.anyio
async def test_delayed_jobs_wait_until_available(clock) -> None:
  repo = InMemoryJobsRepository()
  await repo.create_job(_record("later", clock, delay=10))

  assert (await repo.count_by_state("diagram", now=clock()))["delayed"] == 1
  assert await repo.claim_next("diagram", worker_id="w1", lease_seconds=30, now=clock()) is None

  clock.advance(10)
  assert (await repo.count_by_state("diagram", now=clock()))["waiting"] == 1
  assert (await repo.claim_next("diagram", worker_id="w1", lease_seconds=30, now=clock())).job_id == "later"


@pytest.mark.anyio
async def test_queues_are_isolated(clock) -> None:
  repo = InMemoryJobsRepository()
  await repo.create_job(_record("batch-job", clock, queue="batch"))
  assert await repo.claim_next("diagram", worker_id="w1", lease_seconds=30, now=clock()) is None
  assert (await repo.claim_next("batch", worker_id="w1", lease_seconds=30, now=clock())).job_id == "batch-job"


@pytest.mark.anyio
async def test_writes_require_the_lease_holder(clock) -> None:
  repo = InMemoryJobsRepository()
  await repo.create_job(_record("job-1", clock))
  await repo.claim_next("diagram", worker_id="w1", lease_seconds=30, now=clock())
  error = JobError(kind="transport_error", message="boom")

  assert await repo.heartbeat("job-1", worker_id="w2", lease_seconds=30, now=clock()) is None
  assert await repo.update_progress("job-1", worker_id="w2", progress=50) is None
  assert not await repo.complete("job-1", worker_id="w2", result={"ok": True}, now=clock())
  assert not await repo.fail("job-1", worker_id="w2", error=error, now=clock())
  assert not await repo.cancel("job-1", now=clock(), worker_id="w2")

  updated = await repo.update_progress("job-1", worker_id="w1", progress=50)
  assert updated.progress == 50
  assert (await repo.update_progress("job-1", worker_id="w1", progress=20)).progress == 50

  assert await repo.complete("job-1", worker_id="w1", result={"ok": True}, now=clock())
  job = await repo.get_job("job-1")
  assert job.state == "completed"
  assert job.progress == 100
  assert job.lease_owner is None
  # Terminal jobs accept no further writes.
  assert not await repo.fail("job-1", worker_id="w1", error=error, now=clock())
  assert not await repo.cancel("job-1", now=clock())


@pytest.mark.anyio
async def test_expired_lease_writes_need_an_expired_lease(clock) -> None:
  repo = InMemoryJobsRepository()
  await repo.create_job(_record("job-1", clock))
  await repo.claim_next("diagram", worker_id="w1", lease_seconds=5, now=clock())
  error = JobError(kind="stalled", message="lease expired")

  assert await repo.find_expired_leases(now=clock()) == []
  # A heartbeat renewed the lease after the sweep observed it, so the recovery write is rejected.
  assert not await repo.requeue("job-1", worker_id="w1", error=error, available_at=clock(), expired_before=clock())

  clock.advance(6)
  expired = await repo.find_expired_leases(now=clock())
  assert [job.job_id for job in expired] == ["job-1"]
  assert await repo.requeue("job-1", worker_id="w1", error=error, available_at=clock() + timedelta(seconds=2), expired_before=clock())

  job = await repo.get_job("job-1")
  assert job.state == "queued"
  assert job.error == error
  assert job.display_state(clock()) == "delayed"


@pytest.mark.anyio
async def test_cancel_and_request_cancel(clock) -> None:
  repo = InMemoryJobsRepository()
  await repo.create_job(_record("queued", clock))
  await repo.create_job(_record("active", clock, priority=5))
  await repo.claim_next("diagram", worker_id="w1", lease_seconds=30, now=clock())

  assert not await repo.request_cancel("queued")
  assert await repo.cancel("queued", now=clock())
  assert not await repo.cancel("active", now=clock())
  assert await repo.request_cancel("active")
  assert (await repo.get_job("active")).cancel_requested
  assert await repo.cancel("active", now=clock(), worker_id="w1")
  assert not await repo.cancel("missing", now=clock())


@pytest.mark.anyio
async def test_count_by_state_and_purge(clock) -> None:
  repo = InMemoryJobsRepository()
  for index in range(3):
    await repo.create_job(_record(f"job-{index}", clock))
  await repo.claim_next("diagram", worker_id="w1", lease_seconds=30, now=clock())
  await repo.complete("job-0", worker_id="w1", result=None, now=clock())
  await repo.claim_next("diagram", worker_id="w1", lease_seconds=30, now=clock())
  await repo.create_job(_record("other-queue", clock, queue="batch"))

  counts = await repo.count_by_state("diagram", now=clock())
  assert tuple(counts) == STATE_COUNT_KEYS
  assert counts == {"waiting": 1, "delayed": 0, "active": 1, "completed": 1, "failed": 0, "canceled": 0}

  assert await repo.purge_finished(queue="diagram", older_than=clock()) == 0
  clock.advance(1)
  assert await repo.purge_finished(queue="batch", older_than=clock()) == 0
  assert await repo.purge_finished(queue=None, older_than=clock()) == 1
  assert await repo.get_job("job-0") is None
  assert await repo.get_job("job-1") is not None
