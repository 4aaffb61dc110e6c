"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class QueueSettings:
  """Concurrency and retry policy for one job queue."""

  concurrency: int
  max_attempts: int
  backoff_seconds: float


@dataclass(frozen=True)
class Settings:
  """Typed settings for the diagram pipeline service."""

  environment: str
  debug: bool
  log_level: str
  log_file: str | None
  log_max_bytes: int
  log_backup_count: int
  renderer_url: str
  renderer_timeout_seconds: float
  max_content_bytes: int
  redis_url: str | None
  cache_enabled: bool
  cache_ttl_seconds: int
  cache_timeout_seconds: float
  cache_compress_min_bytes: int
  pg_dsn: str | None
  pg_connect_timeout: int
  diagram_queue: QueueSettings
  batch_queue: QueueSettings
  webhook_queue: QueueSettings
  job_lease_seconds: float
  job_poll_seconds: float
  job_retention_seconds: int
  batch_item_concurrency: int
  webhook_timeout_seconds: float
  webhook_max_retries: int
  webhook_retry_delays: tuple[float, ...]
  webhook_signing_secret: str | None
  system_alert_webhooks: tuple[str, ...]

  @property
  def is_production(self) -> bool:
    """Return True when running with production posture (SSRF guard, strict config)."""
    return self.environment in {"production", "prod"}


def _parse_bool(raw: str | None, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


def _parse_delays(raw: str | None, default: tuple[float, ...]) -> tuple[float, ...]:
  """Parse a comma-separated list of retry delays in seconds."""
  if not raw:
    return default

  delays = tuple(float(item.strip()) for item in raw.split(",") if item.strip())
  if not delays:
    raise ValueError("DIAGRAM_WEBHOOK_RETRY_DELAYS must include at least one delay.")

  if any(delay < 0 for delay in delays):
    raise ValueError("DIAGRAM_WEBHOOK_RETRY_DELAYS must not include negative delays.")

  return delays


def _parse_urls(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ()
  return tuple(url.strip() for url in raw.split(",") if url.strip())


def _queue_settings(prefix: str, *, concurrency: str, attempts: str, backoff: str) -> QueueSettings:
  """Read the per-queue policy block for one queue category."""
  return QueueSettings(
    concurrency=_positive_int(f"DIAGRAM_{prefix}_CONCURRENCY", concurrency),
    max_attempts=_positive_int(f"DIAGRAM_{prefix}_MAX_ATTEMPTS", attempts),
    backoff_seconds=_positive_float(f"DIAGRAM_{prefix}_BACKOFF_SECONDS", backoff),
  )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("DIAGRAM_ENV", "development").strip().lower()
  debug = _parse_bool(os.getenv("DIAGRAM_DEBUG"))

  log_max_bytes = int(os.getenv("DIAGRAM_LOG_MAX_BYTES", "5242880"))  # 5MB default
  if log_max_bytes <= 0:
    raise ValueError("DIAGRAM_LOG_MAX_BYTES must be a positive integer.")

  log_backup_count = int(os.getenv("DIAGRAM_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("DIAGRAM_LOG_BACKUP_COUNT must be zero or a positive integer.")

  renderer_url = (os.getenv("DIAGRAM_RENDERER_URL") or "http://kroki-service:8000").strip().rstrip("/")
  if not renderer_url.startswith(("http://", "https://")):
    raise ValueError("DIAGRAM_RENDERER_URL must be an http(s) URL.")

  cache_ttl_seconds = _positive_int("DIAGRAM_CACHE_TTL_SECONDS", "3600")

  webhook_max_retries = int(os.getenv("DIAGRAM_WEBHOOK_MAX_RETRIES", "3"))
  if webhook_max_retries < 0:
    raise ValueError("DIAGRAM_WEBHOOK_MAX_RETRIES must be zero or a positive integer.")

  # Signing secrets are mandatory in production so receivers can verify payloads across restarts.
  webhook_signing_secret = _optional_str(os.getenv("DIAGRAM_WEBHOOK_SIGNING_SECRET"))
  if environment in {"production", "prod"} and not webhook_signing_secret:
    raise ValueError("DIAGRAM_WEBHOOK_SIGNING_SECRET must be set in production.")

  return Settings(
    environment=environment,
    debug=debug,
    log_level=(os.getenv("DIAGRAM_LOG_LEVEL") or ("DEBUG" if debug else "INFO")).strip().upper(),
    log_file=_optional_str(os.getenv("DIAGRAM_LOG_FILE")),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    renderer_url=renderer_url,
    renderer_timeout_seconds=_positive_float("DIAGRAM_RENDERER_TIMEOUT_SECONDS", "30"),
    max_content_bytes=_positive_int("DIAGRAM_MAX_CONTENT_BYTES", "100000"),
    redis_url=_optional_str(os.getenv("DIAGRAM_REDIS_URL")),
    cache_enabled=_parse_bool(os.getenv("DIAGRAM_CACHE_ENABLED"), default=True),
    cache_ttl_seconds=cache_ttl_seconds,
    cache_timeout_seconds=_positive_float("DIAGRAM_CACHE_TIMEOUT_SECONDS", "0.5"),
    cache_compress_min_bytes=_positive_int("DIAGRAM_CACHE_COMPRESS_MIN_BYTES", "4096"),
    pg_dsn=_optional_str(os.getenv("DIAGRAM_PG_DSN")) or _optional_str(os.getenv("DATABASE_URL")),
    pg_connect_timeout=_positive_int("DIAGRAM_PG_CONNECT_TIMEOUT", "5"),
    diagram_queue=_queue_settings("DIAGRAM", concurrency="5", attempts="3", backoff="2"),
    batch_queue=_queue_settings("BATCH", concurrency="2", attempts="2", backoff="5"),
    webhook_queue=_queue_settings("WEBHOOK", concurrency="3", attempts="5", backoff="1"),
    job_lease_seconds=_positive_float("DIAGRAM_JOB_LEASE_SECONDS", "30"),
    job_poll_seconds=_positive_float("DIAGRAM_JOB_POLL_SECONDS", "1"),
    job_retention_seconds=_positive_int("DIAGRAM_JOB_RETENTION_SECONDS", "86400"),
    batch_item_concurrency=_positive_int("DIAGRAM_BATCH_ITEM_CONCURRENCY", "4"),
    webhook_timeout_seconds=_positive_float("DIAGRAM_WEBHOOK_TIMEOUT_SECONDS", "30"),
    webhook_max_retries=webhook_max_retries,
    webhook_retry_delays=_parse_delays(os.getenv("DIAGRAM_WEBHOOK_RETRY_DELAYS"), (1.0, 5.0, 15.0)),
    webhook_signing_secret=webhook_signing_secret,
    system_alert_webhooks=_parse_urls(os.getenv("DIAGRAM_SYSTEM_ALERT_WEBHOOKS")),
  )
