import logging
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends

from diagram_pipeline.api.deps import get_deliverer
from diagram_pipeline.api.models import WebhookTestRequest, WebhookTestResponse, WebhookValidateRequest, WebhookValidateResponse
from diagram_pipeline.webhooks.delivery import WebhookDeliverer
from diagram_pipeline.webhooks.signing import verify

router = APIRouter()
logger = logging.getLogger("diagram_pipeline.api.routes.webhooks")


@router.post("/test", response_model=WebhookTestResponse)
async def test_webhook(request: WebhookTestRequest, deliverer: WebhookDeliverer = Depends(get_deliverer)) -> WebhookTestResponse:  # noqa: B008
  """Send one unretried test event to a URL."""
  outcome = await deliverer.test_endpoint(request.url, timeout=request.timeout_seconds)
  return WebhookTestResponse(success=outcome.delivered, status_code=outcome.status_code, attempts=outcome.attempts, request_id=outcome.request_id, error=outcome.error)


@router.post("/validate", response_model=WebhookValidateResponse)
async def validate_webhook(request: WebhookValidateRequest, deliverer: WebhookDeliverer = Depends(get_deliverer)) -> WebhookValidateResponse:  # noqa: B008
  """Check a destination URL and, optionally, a received signature."""
  signature_valid: bool | None = None
  if request.payload is not None and request.signature is not None:
    signature_valid = verify(request.payload, request.signature, request.secret or deliverer.signing_secret)
  return WebhookValidateResponse(url=request.url, valid_destination=deliverer.is_valid_destination(request.url), signature_valid=signature_valid)


@router.get("/stats")
async def get_webhook_stats(deliverer: WebhookDeliverer = Depends(get_deliverer)) -> dict:  # noqa: B008
  """Return in-process counters and the persisted 24h delivery summary."""
  until = datetime.now(UTC)
  summary = await deliverer.delivery_summary(since=until - timedelta(hours=24), until=until)
  return {"delivery": deliverer.stats(), "last_24h": summary}
