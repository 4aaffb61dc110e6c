"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_job_id() -> str:
  """Return a new job identifier."""
  return str(uuid.uuid4())


def generate_request_id() -> str:
  """Return a new request identifier used for webhook deduplication."""
  return str(uuid.uuid4())


def generate_batch_id() -> str:
  """Return a new batch identifier."""
  return f"batch_{uuid.uuid4().hex}"
