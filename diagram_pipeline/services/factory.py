"""Factory helpers that assemble the pipeline services from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from diagram_pipeline.cache.service import ContentCache
from diagram_pipeline.cache.store import CacheStore, InMemoryCacheStore, NullCacheStore, RedisCacheStore
from diagram_pipeline.config import Settings
from diagram_pipeline.core.database import create_db_engine, create_schema, create_session_factory
from diagram_pipeline.formats.orchestrator import FormatOrchestrator
from diagram_pipeline.jobs.pipeline import JobPipeline
from diagram_pipeline.jobs.policies import QueuePolicy
from diagram_pipeline.jobs.processors import BatchJobProcessor, DiagramJobProcessor, WebhookJobProcessor
from diagram_pipeline.render.client import RenderClient
from diagram_pipeline.storage.jobs_repo import InMemoryJobsRepository, JobsRepository
from diagram_pipeline.storage.postgres_jobs_repo import PostgresJobsRepository
from diagram_pipeline.webhooks.contracts import WebhookDeliveryLogRepository
from diagram_pipeline.webhooks.delivery import WebhookDeliverer
from diagram_pipeline.webhooks.log_repo import NullWebhookDeliveryLogRepository, PostgresWebhookDeliveryLogRepository

logger = logging.getLogger(__name__)


@dataclass
class Services:
  """Everything the HTTP layer and the workers share; owned by the application lifespan."""

  settings: Settings
  cache: ContentCache
  render_client: RenderClient
  orchestrator: FormatOrchestrator
  deliverer: WebhookDeliverer
  pipeline: JobPipeline
  engine: AsyncEngine | None = None

  async def start(self, *, spawn_workers: bool = True) -> None:
    if self.engine is not None:
      await create_schema(self.engine)
    await self.pipeline.start(spawn_workers=spawn_workers)

  async def aclose(self) -> None:
    await self.pipeline.shutdown()
    await self.deliverer.aclose()
    await self.render_client.aclose()
    await self.cache.close()
    if self.engine is not None:
      await self.engine.dispose()


def _build_cache_store(settings: Settings) -> CacheStore:
  if not settings.cache_enabled:
    return NullCacheStore()
  if settings.redis_url:
    return RedisCacheStore(settings.redis_url, socket_timeout=max(settings.cache_timeout_seconds, 0.1))
  # Process-local cache when no Redis is configured.
  return InMemoryCacheStore()


def build_services(settings: Settings, *, renderer_transport: httpx.AsyncBaseTransport | None = None, webhook_transport: httpx.AsyncBaseTransport | None = None, jobs_repo: JobsRepository | None = None) -> Services:
  """Construct the service graph; transports and the jobs repository are injectable for tests."""
  cache = ContentCache(_build_cache_store(settings), default_ttl_seconds=settings.cache_ttl_seconds, timeout_seconds=settings.cache_timeout_seconds, compress_min_bytes=settings.cache_compress_min_bytes)
  render_client = RenderClient(base_url=settings.renderer_url, timeout_seconds=settings.renderer_timeout_seconds, max_content_bytes=settings.max_content_bytes, transport=renderer_transport)
  orchestrator = FormatOrchestrator(render_client=render_client, cache=cache, cache_ttl_seconds=settings.cache_ttl_seconds)

  # Persist jobs and delivery logs only when Postgres is configured.
  engine = create_db_engine(settings) if jobs_repo is None else None
  if engine is not None:
    session_factory = create_session_factory(engine)
    jobs_repo = PostgresJobsRepository(session_factory)
    delivery_log_repo: WebhookDeliveryLogRepository = PostgresWebhookDeliveryLogRepository(session_factory)
  else:
    jobs_repo = jobs_repo or InMemoryJobsRepository()
    delivery_log_repo = NullWebhookDeliveryLogRepository()
    logger.info("No Postgres DSN configured; using in-memory job storage")

  deliverer = WebhookDeliverer(
    signing_secret=settings.webhook_signing_secret,
    timeout_seconds=settings.webhook_timeout_seconds,
    max_retries=settings.webhook_max_retries,
    retry_delays=settings.webhook_retry_delays,
    production=settings.is_production,
    alert_urls=settings.system_alert_webhooks,
    log_repo=delivery_log_repo,
    transport=webhook_transport,
  )

  policies = {
    "diagram": QueuePolicy.from_settings("diagram", settings.diagram_queue),
    "batch": QueuePolicy.from_settings("batch", settings.batch_queue),
    "webhook": QueuePolicy.from_settings("webhook", settings.webhook_queue),
  }
  pipeline = JobPipeline(jobs_repo=jobs_repo, policies=policies, lease_seconds=settings.job_lease_seconds, poll_seconds=settings.job_poll_seconds, retention_seconds=settings.job_retention_seconds)
  pipeline.register_processor("diagram", DiagramJobProcessor(orchestrator=orchestrator, enqueue=pipeline.submit))
  pipeline.register_processor("batch", BatchJobProcessor(orchestrator=orchestrator, item_concurrency=settings.batch_item_concurrency, enqueue=pipeline.submit))
  pipeline.register_processor("webhook", WebhookJobProcessor(deliverer=deliverer))

  return Services(settings=settings, cache=cache, render_client=render_client, orchestrator=orchestrator, deliverer=deliverer, pipeline=pipeline, engine=engine)
