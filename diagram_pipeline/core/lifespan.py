import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from diagram_pipeline.config import get_settings
from diagram_pipeline.core.logging import _initialize_logging
from diagram_pipeline.services.factory import build_services

logger = logging.getLogger("diagram_pipeline.core.lifespan")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Build (unless pre-seeded), start and finally tear down the service graph."""
  services = getattr(app.state, "services", None)
  settings = services.settings if services is not None else get_settings()
  _initialize_logging(settings)

  if services is None:
    services = build_services(settings)
    app.state.services = services

  await services.start()
  logger.info("Startup complete environment=%s renderer=%s", settings.environment, settings.renderer_url)

  try:
    yield
  finally:
    await services.aclose()
    logger.info("Shutdown complete")
