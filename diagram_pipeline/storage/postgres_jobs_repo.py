"""Postgres-backed repository for pipeline jobs using SQLAlchemy."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from diagram_pipeline.jobs.models import TERMINAL_STATES, JobError, JobRecord
from diagram_pipeline.jobs.payloads import decode_payload, decode_result, encode_payload, encode_result
from diagram_pipeline.schema.jobs import PipelineJob
from diagram_pipeline.storage.jobs_repo import STATE_COUNT_KEYS, JobsRepository, holds_lease


class PostgresJobsRepository(JobsRepository):
  """Persist jobs to Postgres; claims use ``FOR UPDATE SKIP LOCKED`` so concurrent workers never share a job."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    self._session_factory = session_factory

  async def create_job(self, record: JobRecord) -> JobRecord:
    async with self._session_factory() as session:
      row = PipelineJob(
        job_id=record.job_id,
        queue=record.queue,
        payload_json=encode_payload(record.payload),
        priority=record.priority,
        state=record.state,
        attempts=record.attempts,
        max_attempts=record.max_attempts,
        backoff_base_seconds=record.backoff_base_seconds,
        progress=record.progress,
        available_at=record.available_at,
        created_at=record.created_at,
      )
      session.add(row)
      await session.commit()
      await session.refresh(row)
      return self._model_to_record(row)

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(PipelineJob, job_id)
      return self._model_to_record(row) if row is not None else None

  async def claim_next(self, queue: str, *, worker_id: str, lease_seconds: float, now: datetime) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = (
        select(PipelineJob)
        .where(PipelineJob.queue == queue, PipelineJob.state == "queued", PipelineJob.available_at <= now)
        .order_by(PipelineJob.priority.desc(), PipelineJob.sequence.asc())
        .with_for_update(skip_locked=True)
        .limit(1)
      )
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      row.state = "active"
      row.attempts += 1
      row.progress = 0
      row.lease_owner = worker_id
      row.lease_expires_at = now + timedelta(seconds=lease_seconds)
      row.started_at = now
      await session.commit()
      await session.refresh(row)
      return self._model_to_record(row)

  async def heartbeat(self, job_id: str, *, worker_id: str, lease_seconds: float, now: datetime) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await self._locked_row(session, job_id)
      if not holds_lease(row, worker_id):
        await session.rollback()
        return None
      row.lease_expires_at = now + timedelta(seconds=lease_seconds)
      await session.commit()
      await session.refresh(row)
      return self._model_to_record(row)

  async def update_progress(self, job_id: str, *, worker_id: str, progress: int) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await self._locked_row(session, job_id)
      if not holds_lease(row, worker_id):
        await session.rollback()
        return None
      row.progress = max(row.progress, progress)
      await session.commit()
      await session.refresh(row)
      return self._model_to_record(row)

  async def complete(self, job_id: str, *, worker_id: str, result: Any, now: datetime) -> bool:
    async with self._session_factory() as session:
      row = await self._locked_row(session, job_id)
      if not holds_lease(row, worker_id):
        await session.rollback()
        return False
      row.state = "completed"
      row.progress = 100
      row.result_json = encode_result(result)
      row.error_json = None
      row.finished_at = now
      row.lease_owner = None
      row.lease_expires_at = None
      await session.commit()
      return True

  async def fail(self, job_id: str, *, worker_id: str, error: JobError, now: datetime, expired_before: datetime | None = None) -> bool:
    async with self._session_factory() as session:
      row = await self._locked_row(session, job_id)
      if not holds_lease(row, worker_id, expired_before):
        await session.rollback()
        return False
      row.state = "failed"
      row.error_json = error.to_dict()
      row.finished_at = now
      row.lease_owner = None
      row.lease_expires_at = None
      await session.commit()
      return True

  async def requeue(self, job_id: str, *, worker_id: str, error: JobError, available_at: datetime, expired_before: datetime | None = None) -> bool:
    async with self._session_factory() as session:
      row = await self._locked_row(session, job_id)
      if not holds_lease(row, worker_id, expired_before):
        await session.rollback()
        return False
      row.state = "queued"
      row.error_json = error.to_dict()
      row.progress = 0
      row.available_at = available_at
      row.lease_owner = None
      row.lease_expires_at = None
      await session.commit()
      return True

  async def cancel(self, job_id: str, *, now: datetime, worker_id: str | None = None) -> bool:
    async with self._session_factory() as session:
      row = await self._locked_row(session, job_id)
      if row is None or not (row.state == "queued" or (worker_id is not None and holds_lease(row, worker_id))):
        await session.rollback()
        return False
      row.state = "canceled"
      row.finished_at = now
      row.lease_owner = None
      row.lease_expires_at = None
      await session.commit()
      return True

  async def request_cancel(self, job_id: str) -> bool:
    async with self._session_factory() as session:
      row = await self._locked_row(session, job_id)
      if row is None or row.state != "active":
        await session.rollback()
        return False
      row.cancel_requested = True
      await session.commit()
      return True

  async def find_expired_leases(self, *, now: datetime, limit: int = 100) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(PipelineJob).where(PipelineJob.state == "active", PipelineJob.lease_expires_at <= now).order_by(PipelineJob.sequence.asc()).limit(limit)
      rows = (await session.execute(stmt)).scalars().all()
      return [self._model_to_record(row) for row in rows]

  async def count_by_state(self, queue: str, *, now: datetime) -> dict[str, int]:
    # Queued rows gated in the future are reported as delayed.
    bucket = case((PipelineJob.state != "queued", PipelineJob.state), (PipelineJob.available_at > now, "delayed"), else_="waiting")
    stmt = select(bucket, func.count()).where(PipelineJob.queue == queue).group_by(bucket)
    async with self._session_factory() as session:
      rows = (await session.execute(stmt)).all()

    counts = dict.fromkeys(STATE_COUNT_KEYS, 0)
    for state, count in rows:
      counts[state] = int(count)
    return counts

  async def purge_finished(self, *, queue: str | None, older_than: datetime) -> int:
    stmt = delete(PipelineJob).where(PipelineJob.state.in_(tuple(TERMINAL_STATES)), PipelineJob.finished_at < older_than)
    if queue is not None:
      stmt = stmt.where(PipelineJob.queue == queue)
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      await session.commit()
      return int(result.rowcount or 0)

  async def _locked_row(self, session: AsyncSession, job_id: str) -> PipelineJob | None:
    stmt = select(PipelineJob).where(PipelineJob.job_id == job_id).with_for_update()
    return (await session.execute(stmt)).scalar_one_or_none()

  def _model_to_record(self, row: PipelineJob) -> JobRecord:
    return JobRecord(
      job_id=row.job_id,
      queue=row.queue,
      payload=decode_payload(row.payload_json),
      priority=row.priority,
      sequence=row.sequence,
      created_at=row.created_at,
      available_at=row.available_at,
      state=row.state,
      attempts=row.attempts,
      max_attempts=row.max_attempts,
      backoff_base_seconds=row.backoff_base_seconds,
      progress=row.progress,
      result=decode_result(row.result_json),
      error=JobError.from_dict(row.error_json),
      lease_owner=row.lease_owner,
      lease_expires_at=row.lease_expires_at,
      cancel_requested=row.cancel_requested,
      started_at=row.started_at,
      finished_at=row.finished_at,
    )
