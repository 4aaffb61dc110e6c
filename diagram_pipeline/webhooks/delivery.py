"""Signed webhook delivery with bounded retries.

``deliver`` never raises for delivery failures: it returns a ``DeliveryOutcome`` describing the
attempt series. Callers that need exception semantics (the webhook job processor) translate the
outcome themselves.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from diagram_pipeline import __version__
from diagram_pipeline.utils.ids import generate_request_id
from diagram_pipeline.webhooks.contracts import DeliveryOutcome, InvalidDestinationError, WebhookDeliveryLogEntry, WebhookDeliveryLogRepository
from diagram_pipeline.webhooks.destinations import is_valid_destination
from diagram_pipeline.webhooks.log_repo import NullWebhookDeliveryLogRepository
from diagram_pipeline.webhooks.signing import canonical_payload, sign

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 429}
_USER_AGENT = f"diagram-pipeline-webhooks/{__version__}"

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class _DeliveryStats:
  sent: int = 0
  successful: int = 0
  failed: int = 0
  retried: int = 0


def _is_retryable_status(status_code: int) -> bool:
  return status_code >= 500 or status_code in _RETRYABLE_STATUS


def _utc_now_iso() -> str:
  return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class WebhookDeliverer:
  """POST signed event envelopes to subscriber URLs."""

  def __init__(
    self,
    *,
    signing_secret: str | None,
    timeout_seconds: float = 30.0,
    max_retries: int = 3,
    retry_delays: Sequence[float] = (1.0, 5.0, 15.0),
    production: bool = False,
    alert_urls: Sequence[str] = (),
    log_repo: WebhookDeliveryLogRepository | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: Sleep = asyncio.sleep,
  ) -> None:
    if not retry_delays:
      raise ValueError("retry_delays must not be empty.")

    if not signing_secret:
      if production:
        raise ValueError("A webhook signing secret is required in production.")
      # Development fallback; signatures are only verifiable within this process.
      signing_secret = secrets.token_hex(32)
      logger.warning("No webhook signing secret configured; generated an ephemeral secret")

    self._signing_secret = signing_secret
    self._timeout_seconds = timeout_seconds
    self._max_retries = max_retries
    self._retry_delays = tuple(retry_delays)
    self._production = production
    self._alert_urls = tuple(alert_urls)
    self._log_repo = log_repo or NullWebhookDeliveryLogRepository()
    self._sleep = sleep
    self._stats = _DeliveryStats()
    self._client = httpx.AsyncClient(transport=transport, trust_env=False, follow_redirects=False, headers={"User-Agent": _USER_AGENT})

  @property
  def signing_secret(self) -> str:
    return self._signing_secret

  @property
  def production(self) -> bool:
    return self._production

  def is_valid_destination(self, url: str) -> bool:
    return is_valid_destination(url, production=self._production)

  def retry_delay(self, retry_number: int) -> float:
    """Return the wait before retry ``retry_number`` (1-based); the last step repeats."""
    index = min(max(retry_number, 1), len(self._retry_delays)) - 1
    return self._retry_delays[index]

  def build_envelope(self, *, event_type: str, data: Mapping[str, Any], request_id: str, timestamp: str, metadata: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Return the JSON envelope subscribers receive."""
    return {"event": event_type, "timestamp": timestamp, "requestId": request_id, "data": dict(data), "metadata": dict(metadata or {})}

  async def deliver(
    self,
    url: str,
    payload: Mapping[str, Any],
    event_type: str = "unknown",
    *,
    timeout: float | None = None,
    max_retries: int | None = None,
    request_id: str | None = None,
    metadata: Mapping[str, Any] | None = None,
    timestamp: str | None = None,
  ) -> DeliveryOutcome:
    """Send one event with up to ``max_retries`` retries and return the outcome."""
    request_id = request_id or generate_request_id()
    retries_allowed = self._max_retries if max_retries is None else max(0, max_retries)
    timeout_seconds = timeout or self._timeout_seconds

    if not self.is_valid_destination(url):
      logger.warning("Webhook destination rejected url=%s event=%s request_id=%s", url, event_type, request_id)
      outcome = DeliveryOutcome(request_id=request_id, url=url, event_type=event_type, delivered=False, attempts=0, error="Invalid webhook destination.", error_kind=InvalidDestinationError.kind)
      await self._record(outcome, payload, metadata)
      return outcome

    envelope = self.build_envelope(event_type=event_type, data=payload, request_id=request_id, timestamp=timestamp or _utc_now_iso(), metadata=metadata)
    body = canonical_payload(envelope)
    headers = {
      "Content-Type": "application/json",
      "X-Webhook-Signature": sign(body, self._signing_secret),
      "X-Webhook-Timestamp": envelope["timestamp"],
      "X-Webhook-Event": event_type,
      "X-Webhook-Request-ID": request_id,
    }

    attempt_times: list[str] = []
    delays: list[float] = []
    status_code: int | None = None
    error: str | None = None
    error_kind: str | None = None
    retryable = False
    delivered = False

    self._stats.sent += 1
    for attempt in range(1, retries_allowed + 2):
      if attempt > 1:
        delay = self.retry_delay(attempt - 1)
        delays.append(delay)
        self._stats.retried += 1
        logger.info("Retrying webhook url=%s event=%s request_id=%s attempt=%s delay=%ss", url, event_type, request_id, attempt, delay)
        await self._sleep(delay)

      attempt_times.append(_utc_now_iso())
      try:
        response = await self._client.post(url, content=body, headers=headers, timeout=timeout_seconds)
      except httpx.TransportError as exc:
        # Connection refused, DNS failure and timeouts all land here.
        status_code = None
        error = f"{type(exc).__name__}: {exc}"
        error_kind = "transport_error"
        retryable = True
        logger.warning("Webhook transport failure url=%s event=%s attempt=%s error=%s", url, event_type, attempt, error)
      else:
        status_code = response.status_code
        if 200 <= status_code < 300:
          delivered = True
          error = None
          error_kind = None
          retryable = False
          break
        error = f"HTTP {status_code}"
        error_kind = "http_error"
        retryable = _is_retryable_status(status_code)
        logger.warning("Webhook rejected url=%s event=%s attempt=%s status=%s", url, event_type, attempt, status_code)

      if not retryable:
        break

    if delivered:
      self._stats.successful += 1
      logger.info("Webhook delivered url=%s event=%s request_id=%s attempts=%s status=%s", url, event_type, request_id, len(attempt_times), status_code)
    else:
      self._stats.failed += 1
      logger.error("Webhook delivery failed url=%s event=%s request_id=%s attempts=%s error=%s", url, event_type, request_id, len(attempt_times), error)

    outcome = DeliveryOutcome(
      request_id=request_id,
      url=url,
      event_type=event_type,
      delivered=delivered,
      attempts=len(attempt_times),
      status_code=status_code,
      error=error,
      error_kind=error_kind,
      retryable=retryable,
      attempt_times=attempt_times,
      delays=delays,
    )
    await self._record(outcome, envelope, metadata)
    return outcome

  async def test_endpoint(self, url: str, *, timeout: float | None = None) -> DeliveryOutcome:
    """Send a single unretried ``webhook.test`` event."""
    if not self.is_valid_destination(url):
      raise InvalidDestinationError(f"Invalid webhook destination: {url}")
    data = {"message": "This is a test webhook from the diagram pipeline", "test": True}
    return await self.deliver(url, data, "webhook.test", timeout=timeout or 10.0, max_retries=0)

  async def send_system_alert(self, alert: Mapping[str, Any]) -> list[DeliveryOutcome]:
    """Fan an alert out to every configured alert URL."""
    if not self._alert_urls:
      logger.debug("No system alert webhooks configured; dropping alert type=%s", alert.get("type"))
      return []

    data = {"alert_type": alert.get("type", "system"), "severity": alert.get("severity", "info"), "message": alert.get("message", ""), "details": dict(alert.get("details") or {})}
    metadata = {"source": "diagram-pipeline", "alert": True}
    return list(await asyncio.gather(*(self.deliver(url, data, "system.alert", max_retries=1, metadata=metadata) for url in self._alert_urls)))

  def stats(self) -> dict[str, float]:
    """Return in-process delivery counters."""
    sent = self._stats.sent
    return {
      "sent": sent,
      "successful": self._stats.successful,
      "failed": self._stats.failed,
      "retried": self._stats.retried,
      "success_rate": round(self._stats.successful / sent * 100, 2) if sent else 0.0,
      "retry_rate": round(self._stats.retried / sent * 100, 2) if sent else 0.0,
    }

  def reset_stats(self) -> None:
    self._stats = _DeliveryStats()

  async def delivery_summary(self, *, since: datetime, until: datetime) -> dict[str, dict[str, float]]:
    """Aggregate persisted delivery outcomes for a time window."""
    return await self._log_repo.summarize(since=since, until=until)

  async def aclose(self) -> None:
    await self._client.aclose()

  async def _record(self, outcome: DeliveryOutcome, payload: Mapping[str, Any], metadata: Mapping[str, Any] | None) -> None:
    entry = WebhookDeliveryLogEntry(
      url=outcome.url,
      event_type=outcome.event_type,
      request_id=outcome.request_id,
      payload=dict(payload),
      status=outcome.status,
      status_code=outcome.status_code,
      attempts=outcome.attempts,
      error_message=outcome.error,
      metadata={**dict(metadata or {}), "attempt_times": outcome.attempt_times},
      created_at=datetime.now(UTC),
    )
    try:
      await self._log_repo.insert(entry)
    except Exception as exc:  # noqa: BLE001
      # Audit persistence must not change the delivery outcome.
      logger.error("Failed to persist webhook delivery log request_id=%s: %s", outcome.request_id, exc)
