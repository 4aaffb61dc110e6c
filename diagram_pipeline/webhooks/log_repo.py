"""Repositories for webhook delivery audit logs."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from diagram_pipeline.schema.webhooks import WebhookDelivery
from diagram_pipeline.webhooks.contracts import WebhookDeliveryLogEntry

logger = logging.getLogger(__name__)


def _summary_row(count: int, attempts_total: float, retried: int) -> dict[str, float]:
  return {"count": count, "avg_attempts": round(attempts_total / count, 2) if count else 0.0, "retried_count": retried}


class PostgresWebhookDeliveryLogRepository:
  """Persist webhook delivery logs to Postgres using SQLAlchemy."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    self._session_factory = session_factory

  async def insert(self, entry: WebhookDeliveryLogEntry) -> None:
    """Insert a new delivery log row."""
    async with self._session_factory() as session:
      record = WebhookDelivery(
        url=entry.url,
        event_type=entry.event_type,
        request_id=entry.request_id,
        payload_json=entry.payload,
        status=entry.status,
        status_code=entry.status_code,
        attempts=entry.attempts,
        error_message=entry.error_message,
        metadata_json=entry.metadata,
        created_at=entry.created_at,
      )
      session.add(record)
      await session.commit()

  async def summarize(self, *, since: datetime, until: datetime) -> dict[str, dict[str, float]]:
    """Aggregate delivery rows by status within [since, until)."""
    stmt = (
      select(WebhookDelivery.status, func.count(), func.avg(WebhookDelivery.attempts), func.sum(case((WebhookDelivery.attempts > 1, 1), else_=0)))
      .where(WebhookDelivery.created_at >= since, WebhookDelivery.created_at < until)
      .group_by(WebhookDelivery.status)
    )
    async with self._session_factory() as session:
      rows = (await session.execute(stmt)).all()

    summary: dict[str, dict[str, float]] = {}
    for status, count, avg_attempts, retried in rows:
      summary[status] = {"count": int(count), "avg_attempts": round(float(avg_attempts or 0), 2), "retried_count": int(retried or 0)}
    return summary


class InMemoryWebhookDeliveryLogRepository:
  """Process-local delivery log used in development and tests."""

  def __init__(self) -> None:
    self.entries: list[WebhookDeliveryLogEntry] = []

  async def insert(self, entry: WebhookDeliveryLogEntry) -> None:
    self.entries.append(entry)

  async def summarize(self, *, since: datetime, until: datetime) -> dict[str, dict[str, float]]:
    buckets: dict[str, list[WebhookDeliveryLogEntry]] = defaultdict(list)
    for entry in self.entries:
      if since <= entry.created_at < until:
        buckets[entry.status].append(entry)
    return {status: _summary_row(len(items), sum(item.attempts for item in items), sum(1 for item in items if item.attempts > 1)) for status, items in buckets.items()}


class NullWebhookDeliveryLogRepository:
  """No-op repository used when persistence is unavailable."""

  async def insert(self, entry: WebhookDeliveryLogEntry) -> None:
    logger.debug("Webhook delivery log persistence disabled; dropping event=%s status=%s", entry.event_type, entry.status)

  async def summarize(self, *, since: datetime, until: datetime) -> dict[str, dict[str, float]]:
    return {}
