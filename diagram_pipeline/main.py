from __future__ import annotations

from fastapi import Depends, FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from diagram_pipeline import __version__
from diagram_pipeline.api.deps import get_services
from diagram_pipeline.api.routes import cache, formats, jobs, webhooks
from diagram_pipeline.core.errors import PipelineError
from diagram_pipeline.core.exceptions import global_exception_handler, http_exception_handler, pipeline_exception_handler, request_validation_exception_handler
from diagram_pipeline.core.lifespan import lifespan
from diagram_pipeline.core.middleware import RequestLoggingMiddleware
from diagram_pipeline.services.factory import Services


def create_app() -> FastAPI:
  """Build the HTTP application; services are attached by the lifespan (or pre-seeded on ``app.state``)."""
  app = FastAPI(title="diagram-pipeline", version=__version__, lifespan=lifespan)

  app.add_exception_handler(Exception, global_exception_handler)
  app.add_exception_handler(HTTPException, http_exception_handler)
  app.add_exception_handler(PipelineError, pipeline_exception_handler)
  app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

  app.add_middleware(RequestLoggingMiddleware)

  @app.get("/health", include_in_schema=False)
  async def health_check(services: Services = Depends(get_services)) -> dict[str, object]:  # noqa: B008
    """Report pipeline readiness and cache connectivity."""
    cache_connected = await services.cache.ping()
    pipeline_ready = services.pipeline.started
    return {"status": "ok" if pipeline_ready else "starting", "version": __version__, "pipeline": {"started": pipeline_ready}, "cache": {"connected": cache_connected}}

  app.include_router(jobs.router, prefix="/v1/jobs", tags=["jobs"])
  app.include_router(formats.router, prefix="/v1/formats", tags=["formats"])
  app.include_router(webhooks.router, prefix="/v1/webhooks", tags=["webhooks"])
  app.include_router(cache.router, prefix="/v1/cache", tags=["cache"])
  return app


app = create_app()
