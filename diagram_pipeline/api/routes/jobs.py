import logging

from fastapi import APIRouter, Depends, status

from diagram_pipeline.api.deps import get_deliverer, get_pipeline
from diagram_pipeline.api.models import BatchJobRequest, DiagramJobRequest, JobCancelResponse, JobCreateResponse, JobStatusResponse
from diagram_pipeline.jobs.models import JobNotFoundError
from diagram_pipeline.jobs.pipeline import JobPipeline
from diagram_pipeline.utils.ids import generate_batch_id, generate_request_id
from diagram_pipeline.webhooks.contracts import InvalidDestinationError
from diagram_pipeline.webhooks.delivery import WebhookDeliverer

router = APIRouter()
logger = logging.getLogger("diagram_pipeline.api.routes.jobs")


def _check_webhook_url(url: str | None, deliverer: WebhookDeliverer) -> None:
  if url is not None and not deliverer.is_valid_destination(url):
    raise InvalidDestinationError(f"Invalid webhook destination: {url}")


@router.post("/diagram", response_model=JobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_diagram_job(  # noqa: B008
  request: DiagramJobRequest,
  pipeline: JobPipeline = Depends(get_pipeline),  # noqa: B008
  deliverer: WebhookDeliverer = Depends(get_deliverer),  # noqa: B008
) -> JobCreateResponse:
  """Queue a single diagram generation job."""
  _check_webhook_url(request.webhook_url, deliverer)
  request_id = generate_request_id()
  payload = {
    "content": request.content,
    "diagram_kind": request.diagram_kind,
    "format": request.format,
    "options": request.options,
    "request_id": request_id,
    "webhook_url": request.webhook_url,
    "callback_data": request.callback_data,
  }
  handle = await pipeline.submit("diagram", payload, priority=request.priority, delay=request.delay_seconds)
  return JobCreateResponse(job_id=handle.job_id, queue=handle.queue, status=handle.state, status_url=f"/v1/jobs/{handle.queue}/{handle.job_id}", request_id=request_id)


@router.post("/batch", response_model=JobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_batch_job(  # noqa: B008
  request: BatchJobRequest,
  pipeline: JobPipeline = Depends(get_pipeline),  # noqa: B008
  deliverer: WebhookDeliverer = Depends(get_deliverer),  # noqa: B008
) -> JobCreateResponse:
  """Queue a batch of diagrams processed as one job."""
  _check_webhook_url(request.webhook_url, deliverer)
  batch_id = request.batch_id or generate_batch_id()
  payload = {
    "batch_id": batch_id,
    "items": [item.model_dump() for item in request.items],
    "webhook_url": request.webhook_url,
    "callback_data": request.callback_data,
  }
  handle = await pipeline.submit("batch", payload, priority=request.priority)
  return JobCreateResponse(job_id=handle.job_id, queue=handle.queue, status=handle.state, status_url=f"/v1/jobs/{handle.queue}/{handle.job_id}", batch_id=batch_id)


@router.get("/stats")
async def get_job_stats(pipeline: JobPipeline = Depends(get_pipeline)) -> dict:  # noqa: B008
  """Return per-queue state counts and worker counters."""
  return await pipeline.stats()


@router.get("/{queue}/{job_id}", response_model=JobStatusResponse)
async def get_job_status(queue: str, job_id: str, pipeline: JobPipeline = Depends(get_pipeline)) -> JobStatusResponse:  # noqa: B008
  """Poll the status and result of a job."""
  view = await pipeline.status(queue, job_id)
  if view is None:
    raise JobNotFoundError(f"Job {job_id} not found in queue {queue}")
  return JobStatusResponse.model_validate(view.to_dict())


@router.post("/{job_id}/cancel", response_model=JobCancelResponse)
async def cancel_job(job_id: str, pipeline: JobPipeline = Depends(get_pipeline)) -> JobCancelResponse:  # noqa: B008
  """Cancel a queued job or request cancellation of an active one."""
  canceled = await pipeline.cancel(job_id)
  return JobCancelResponse(job_id=job_id, canceled=canceled)
