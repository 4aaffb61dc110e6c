from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from diagram_pipeline.webhooks.contracts import InvalidDestinationError
from diagram_pipeline.webhooks.delivery import WebhookDeliverer
from diagram_pipeline.webhooks.destinations import is_valid_destination
from diagram_pipeline.webhooks.log_repo import InMemoryWebhookDeliveryLogRepository
from diagram_pipeline.webhooks.signing import canonical_payload, sign, verify

SECRET = "test-secret"


class RecordingSleep:
  def __init__(self) -> None:
    self.delays: list[float] = []

  async def __call__(self, seconds: float) -> None:
    self.delays.append(seconds)


class Subscriber:
  """Scripted webhook receiver: answers with the next status, or raises for ``None``."""

  def __init__(self, statuses: list[int | None]) -> None:
    self.statuses = list(statuses)
    self.requests: list[httpx.Request] = []

  def __call__(self, request: httpx.Request) -> httpx.Response:
    self.requests.append(request)
    status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
    if status is None:
      raise httpx.ConnectError("connection refused", request=request)
    return httpx.Response(status, json={"ok": status < 300})


def _deliverer(subscriber: Subscriber, sleep: RecordingSleep, **kwargs) -> WebhookDeliverer:
  return WebhookDeliverer(signing_secret=SECRET, transport=httpx.MockTransport(subscriber), sleep=sleep, **kwargs)


def test_signature_round_trip_and_tampering() -> None:
  payload = {"b": 2, "a": [1, 2]}
  signature = sign(payload, SECRET)

  assert signature.startswith("sha256=")
  assert canonical_payload(payload) == b'{"a":[1,2],"b":2}'
  assert verify(payload, signature, SECRET)
  assert verify(canonical_payload(payload), signature.removeprefix("sha256="), SECRET)
  assert not verify({"b": 3, "a": [1, 2]}, signature, SECRET)
  assert not verify(payload, signature, "other-secret")
  assert not verify(payload, "", SECRET)


@pytest.mark.parametrize(
  ("url", "production", "expected"),
  [
    ("https://hooks.example.com/in", True, True),
    ("http://localhost:8080/hook", False, True),
    ("http://localhost:8080/hook", True, False),
    ("http://api.localhost/hook", True, False),
    ("http://127.0.0.1/hook", True, False),
    ("http://10.1.2.3/hook", True, False),
    ("http://192.168.0.10/hook", True, False),
    ("http://169.254.169.254/latest/meta-data", True, False),
    ("http://[::1]/hook", True, False),
    ("http://[::ffff:10.0.0.1]/hook", True, False),
    ("http://0.0.0.0/hook", True, False),
    ("ftp://hooks.example.com/in", False, False),
    ("not a url", False, False),
  ],
)
def test_destination_guard(url: str, production: bool, expected: bool) -> None:
  assert is_valid_destination(url, production=production) is expected


def test_production_requires_signing_secret() -> None:
  with pytest.raises(ValueError):
    WebhookDeliverer(signing_secret="", production=True)
  assert len(WebhookDeliverer(signing_secret=None).signing_secret) == 64


def test_retry_delay_repeats_last_step() -> None:
  deliverer = WebhookDeliverer(signing_secret=SECRET)
  assert [deliverer.retry_delay(n) for n in (1, 2, 3, 4, 5)] == [1.0, 5.0, 15.0, 15.0, 15.0]


@pytest.mark.anyio
async def test_deliver_retries_transient_failures_then_succeeds() -> None:
  subscriber = Subscriber([503, 503, 200])
  sleep = RecordingSleep()
  log_repo = InMemoryWebhookDeliveryLogRepository()
  deliverer = _deliverer(subscriber, sleep, log_repo=log_repo)

  outcome = await deliverer.deliver("https://hooks.example.com/in", {"jobId": "job-1"}, "diagram.completed", request_id="req-1", timestamp="2025-01-01T00:00:00Z")

  assert outcome.delivered
  assert outcome.attempts == 3
  assert outcome.status_code == 200
  assert outcome.delays == [1.0, 5.0]
  assert sleep.delays == [1.0, 5.0]
  assert len(outcome.attempt_times) == 3

  request = subscriber.requests[-1]
  assert request.headers["X-Webhook-Event"] == "diagram.completed"
  assert request.headers["X-Webhook-Request-ID"] == "req-1"
  assert request.headers["X-Webhook-Timestamp"] == "2025-01-01T00:00:00Z"
  assert verify(request.content, request.headers["X-Webhook-Signature"], SECRET)
  envelope = json.loads(request.content)
  assert envelope == {"event": "diagram.completed", "timestamp": "2025-01-01T00:00:00Z", "requestId": "req-1", "data": {"jobId": "job-1"}, "metadata": {}}
  # Every retry carries the same signed body.
  assert len({r.content for r in subscriber.requests}) == 1

  assert [entry.status for entry in log_repo.entries] == ["delivered"]
  assert log_repo.entries[0].attempts == 3
  assert deliverer.stats() == {"sent": 1, "successful": 1, "failed": 0, "retried": 2, "success_rate": 100.0, "retry_rate": 200.0}
  await deliverer.aclose()


@pytest.mark.anyio
async def test_client_error_is_not_retried() -> None:
  subscriber = Subscriber([400])
  sleep = RecordingSleep()
  deliverer = _deliverer(subscriber, sleep)

  outcome = await deliverer.deliver("https://hooks.example.com/in", {"x": 1}, "diagram.completed")

  assert not outcome.delivered
  assert outcome.attempts == 1
  assert outcome.status_code == 400
  assert outcome.retryable is False
  assert outcome.status == "failed"
  assert sleep.delays == []


@pytest.mark.anyio
@pytest.mark.parametrize("status", [408, 429])
async def test_throttling_statuses_are_retried(status: int) -> None:
  subscriber = Subscriber([status, 204])
  deliverer = _deliverer(subscriber, RecordingSleep())
  outcome = await deliverer.deliver("https://hooks.example.com/in", {}, "diagram.completed")
  assert outcome.delivered
  assert outcome.attempts == 2


@pytest.mark.anyio
async def test_connection_failures_exhaust_retries_with_escalating_delays() -> None:
  subscriber = Subscriber([None])
  sleep = RecordingSleep()
  deliverer = _deliverer(subscriber, sleep, max_retries=4)

  outcome = await deliverer.deliver("https://hooks.example.com/in", {}, "batch.failed")

  assert not outcome.delivered
  assert outcome.attempts == 5
  assert outcome.status_code is None
  assert outcome.error_kind == "transport_error"
  assert outcome.retryable is True
  assert sleep.delays == [1.0, 5.0, 15.0, 15.0]
  assert deliverer.stats()["failed"] == 1


@pytest.mark.anyio
async def test_invalid_destination_in_production_makes_no_request() -> None:
  subscriber = Subscriber([200])
  log_repo = InMemoryWebhookDeliveryLogRepository()
  deliverer = _deliverer(subscriber, RecordingSleep(), production=True, log_repo=log_repo)

  outcome = await deliverer.deliver("http://10.0.0.5/hook", {}, "diagram.completed")

  assert outcome.attempts == 0
  assert outcome.error_kind == "invalid_destination"
  assert subscriber.requests == []
  assert log_repo.entries[0].status == "failed"


@pytest.mark.anyio
async def test_test_endpoint_sends_single_unretried_event() -> None:
  subscriber = Subscriber([500])
  sleep = RecordingSleep()
  deliverer = _deliverer(subscriber, sleep)

  outcome = await deliverer.test_endpoint("https://hooks.example.com/in")

  assert outcome.attempts == 1
  assert outcome.event_type == "webhook.test"
  assert json.loads(subscriber.requests[0].content)["data"]["test"] is True
  assert sleep.delays == []

  with pytest.raises(InvalidDestinationError):
    await deliverer.test_endpoint("file:///etc/passwd")


@pytest.mark.anyio
async def test_system_alert_fans_out_to_alert_urls() -> None:
  subscriber = Subscriber([200])
  deliverer = _deliverer(subscriber, RecordingSleep(), alert_urls=("https://a.example.com/alerts", "https://b.example.com/alerts"))

  outcomes = await deliverer.send_system_alert({"type": "queue_backlog", "severity": "warning", "message": "backlog growing"})

  assert [outcome.delivered for outcome in outcomes] == [True, True]
  assert {str(request.url) for request in subscriber.requests} == {"https://a.example.com/alerts", "https://b.example.com/alerts"}
  body = json.loads(subscriber.requests[0].content)
  assert body["event"] == "system.alert"
  assert body["data"]["severity"] == "warning"
  assert body["metadata"]["alert"] is True


@pytest.mark.anyio
async def test_system_alert_without_urls_is_dropped() -> None:
  deliverer = _deliverer(Subscriber([200]), RecordingSleep())
  assert await deliverer.send_system_alert({"type": "noop"}) == []


@pytest.mark.anyio
async def test_delivery_summary_and_log_failures() -> None:
  class BrokenLogRepo(InMemoryWebhookDeliveryLogRepository):
    async def insert(self, entry) -> None:
      raise RuntimeError("database unavailable")

  deliverer = _deliverer(Subscriber([200]), RecordingSleep(), log_repo=BrokenLogRepo())
  outcome = await deliverer.deliver("https://hooks.example.com/in", {}, "diagram.completed")
  assert outcome.delivered

  log_repo = InMemoryWebhookDeliveryLogRepository()
  deliverer = _deliverer(Subscriber([503, 200]), RecordingSleep(), log_repo=log_repo)
  await deliverer.deliver("https://hooks.example.com/in", {}, "diagram.completed")
  await deliverer.deliver("https://hooks.example.com/in", {}, "diagram.completed")

  now = datetime.now(UTC)
  summary = await deliverer.delivery_summary(since=now - timedelta(hours=1), until=now + timedelta(minutes=1))
  assert summary == {"delivered": {"count": 2, "avg_attempts": 1.5, "retried_count": 1}}
  deliverer.reset_stats()
  assert deliverer.stats()["sent"] == 0
