"""SQLAlchemy model for webhook delivery audit rows."""

from __future__ import annotations

import datetime

from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from diagram_pipeline.core.database import Base


class WebhookDelivery(Base):
  """One row per terminal delivery outcome (delivered or failed after retries)."""

  __tablename__ = "webhook_deliveries"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  url: Mapped[str] = mapped_column(Text, nullable=False)
  event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
  request_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  payload_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
  attempts: Mapped[int] = mapped_column(Integer, nullable=False)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  metadata_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
