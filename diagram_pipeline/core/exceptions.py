import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from diagram_pipeline.core.errors import ClientError, PipelineError
from diagram_pipeline.jobs.models import InvalidJobPayloadError, JobNotFoundError, PipelineNotReadyError, UnknownQueueError
from diagram_pipeline.render.client import ContentTooLargeError

logger = logging.getLogger("diagram_pipeline.core.exceptions")

_CLIENT_STATUS: tuple[tuple[type[ClientError], int], ...] = (
  (JobNotFoundError, status.HTTP_404_NOT_FOUND),
  (UnknownQueueError, status.HTTP_404_NOT_FOUND),
  (ContentTooLargeError, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE),
  (InvalidJobPayloadError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def _error_payload(detail: Any, *, request_id: str | None = None, kind: str | None = None) -> dict[str, Any]:
  """Build an error payload; ``requestId`` lets support correlate client reports with logs."""
  payload: dict[str, Any] = {"detail": detail}
  if kind:
    payload["kind"] = kind
  if request_id:
    payload["requestId"] = request_id
  return payload


def _request_id(request: Request) -> str | None:
  return getattr(request.state, "request_id", None)


def client_error_status(exc: ClientError) -> int:
  for error_type, status_code in _CLIENT_STATUS:
    if isinstance(exc, error_type):
      return status_code
  return status.HTTP_400_BAD_REQUEST


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key not in {"input", "ctx", "url"}}
    sanitized.append({key: (value if isinstance(value, str | int | float | bool | list | type(None)) else str(value)) for key, value in scrubbed.items()})
  return sanitized


async def pipeline_exception_handler(request: Request, exc: PipelineError) -> JSONResponse:
  """Map domain errors: client errors keep their message, everything else is sanitized."""
  request_id = _request_id(request)
  if isinstance(exc, ClientError):
    status_code = client_error_status(exc)
    logger.info("Client error request_id=%s path=%s status=%s kind=%s error=%s", request_id, request.url.path, status_code, exc.kind, exc)
    return JSONResponse(status_code=status_code, content=_error_payload(str(exc), request_id=request_id, kind=exc.kind))

  if isinstance(exc, PipelineNotReadyError):
    logger.warning("Pipeline not ready request_id=%s path=%s", request_id, request.url.path)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=_error_payload("Service is starting or shutting down", request_id=request_id, kind=exc.kind))

  logger.error("Pipeline error request_id=%s path=%s kind=%s", request_id, request.url.path, exc.kind, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Catch unhandled errors without leaking internals."""
  request_id = _request_id(request)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  request_id = _request_id(request)
  sanitized_errors = _sanitize_validation_errors(list(exc.errors()))
  # 422s are client-correctable and expected; keep the log concise.
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  request_id = _request_id(request)
  if exc.status_code >= 500:
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id))
  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id), headers=getattr(exc, "headers", None))
