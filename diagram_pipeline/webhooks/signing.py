"""HMAC signing for webhook payloads."""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Mapping
from typing import Any

SIGNATURE_PREFIX = "sha256="


def canonical_payload(payload: Mapping[str, Any] | bytes | str) -> bytes:
  """Return the exact bytes that are signed and sent on the wire."""
  if isinstance(payload, bytes):
    return payload
  if isinstance(payload, str):
    return payload.encode("utf-8")
  return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def sign(payload: Mapping[str, Any] | bytes | str, secret: str) -> str:
  """Return ``sha256=<hex>`` for the canonical payload bytes."""
  digest = hmac.new(secret.encode("utf-8"), canonical_payload(payload), hashlib.sha256).hexdigest()
  return SIGNATURE_PREFIX + digest


def verify(payload: Mapping[str, Any] | bytes | str, signature: str, secret: str) -> bool:
  """Constant-time comparison of a received signature against the expected one."""
  if not signature:
    return False
  expected = sign(payload, secret)
  candidate = signature.strip()
  if not candidate.startswith(SIGNATURE_PREFIX):
    candidate = SIGNATURE_PREFIX + candidate
  return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))
