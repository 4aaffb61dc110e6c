"""Shared FastAPI dependencies resolving the lifespan-owned services."""

from __future__ import annotations

from fastapi import Depends, Request

from diagram_pipeline.cache.service import ContentCache
from diagram_pipeline.formats.orchestrator import FormatOrchestrator
from diagram_pipeline.jobs.models import PipelineNotReadyError
from diagram_pipeline.jobs.pipeline import JobPipeline
from diagram_pipeline.services.factory import Services
from diagram_pipeline.webhooks.delivery import WebhookDeliverer


def get_services(request: Request) -> Services:
  services = getattr(request.app.state, "services", None)
  if services is None:
    raise PipelineNotReadyError("Services are not initialized.")
  return services


def get_pipeline(services: Services = Depends(get_services)) -> JobPipeline:  # noqa: B008
  return services.pipeline


def get_orchestrator(services: Services = Depends(get_services)) -> FormatOrchestrator:  # noqa: B008
  return services.orchestrator


def get_deliverer(services: Services = Depends(get_services)) -> WebhookDeliverer:  # noqa: B008
  return services.deliverer


def get_cache(services: Services = Depends(get_services)) -> ContentCache:  # noqa: B008
  return services.cache
