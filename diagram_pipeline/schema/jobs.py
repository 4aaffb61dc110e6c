from __future__ import annotations

import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Float, Index, Integer, Sequence, String, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from diagram_pipeline.core.database import Base


class PipelineJob(Base):
  __tablename__ = "pipeline_jobs"
  __table_args__ = (
    # Claim order: highest priority first, then submission order, within one queue.
    Index("ix_pipeline_jobs_claim", "queue", "state", text("priority DESC"), "sequence"),
    Index("ix_pipeline_jobs_lease", "state", "lease_expires_at"),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  queue: Mapped[str] = mapped_column(String, nullable=False, index=True)
  payload_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  sequence: Mapped[int] = mapped_column(BigInteger, Sequence("pipeline_jobs_sequence_seq"), nullable=False, unique=True)
  state: Mapped[str] = mapped_column(String, nullable=False)
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
  backoff_base_seconds: Mapped[float] = mapped_column(Float, nullable=False)
  progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  result_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  error_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  lease_owner: Mapped[str | None] = mapped_column(String, nullable=True)
  lease_expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
  available_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  started_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  finished_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
