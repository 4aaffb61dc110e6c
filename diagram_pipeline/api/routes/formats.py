import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, Response

from diagram_pipeline.api.deps import get_orchestrator
from diagram_pipeline.api.models import FormatSupportResponse, GenerateRequest
from diagram_pipeline.formats.catalog import DEFAULT_FORMAT
from diagram_pipeline.formats.orchestrator import FormatOrchestrator

router = APIRouter()
logger = logging.getLogger("diagram_pipeline.api.routes.formats")

_FAILURE_STATUS = {"unsupported_format": status.HTTP_400_BAD_REQUEST, "invalid_options": status.HTTP_400_BAD_REQUEST, "client_error": status.HTTP_400_BAD_REQUEST, "content_too_large": status.HTTP_413_REQUEST_ENTITY_TOO_LARGE}


@router.post("/generate", response_model=None)
async def generate_diagram(request: GenerateRequest, orchestrator: FormatOrchestrator = Depends(get_orchestrator)) -> Response:  # noqa: B008
  """Generate synchronously and return the artifact bytes."""
  format = orchestrator.recommend(request.use_case, request.diagram_kind) if request.use_case else request.format
  result = await orchestrator.generate(request.content, request.diagram_kind, format, request.options)

  if not result.success or result.data is None:
    error = result.error
    kind = error.kind if error else "internal_error"
    # Renderer-side failures surface as a bad gateway; their detail is safe to return.
    status_code = _FAILURE_STATUS.get(kind, status.HTTP_502_BAD_GATEWAY)
    return JSONResponse(status_code=status_code, content={"detail": error.message if error else "Generation failed", "kind": kind, "retryable": bool(error and error.retryable)})

  headers = {
    "X-Cache": "HIT" if result.cached else "MISS",
    "X-Generation-Time-Ms": f"{result.duration_ms:.2f}",
    "Content-Disposition": f'inline; filename="diagram.{result.format}"',
  }
  return Response(content=result.data, media_type=result.mime_type, headers=headers)


@router.get("/{diagram_kind}", response_model=FormatSupportResponse)
async def get_supported_formats(diagram_kind: str, orchestrator: FormatOrchestrator = Depends(get_orchestrator)) -> FormatSupportResponse:  # noqa: B008
  """List formats available for a diagram kind plus per-use-case recommendations."""
  info = orchestrator.recommendations(diagram_kind)
  return FormatSupportResponse(diagram_kind=diagram_kind.strip().lower(), supported=list(info["supported"]), recommendations=dict(info["recommendations"]), default=DEFAULT_FORMAT)
