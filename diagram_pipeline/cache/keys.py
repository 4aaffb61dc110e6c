"""Deterministic fingerprints for rendered diagram results."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

KEY_PREFIX = "diagram:"


def _canonical(value: Any) -> Any:
  """Normalize nested options so logically equal inputs serialize identically."""
  if isinstance(value, Mapping):
    return {str(key): _canonical(item) for key, item in sorted(value.items(), key=lambda pair: str(pair[0]))}
  if isinstance(value, list | tuple):
    return [_canonical(item) for item in value]
  if isinstance(value, set | frozenset):
    return sorted(_canonical(item) for item in value)
  return value


def fingerprint(content: str, format: str, options: Mapping[str, Any] | None = None) -> str:
  """Return the cache key for (content, format, options).

  Leading and trailing whitespace in the content is insignificant; options are order-independent.
  """
  document = {"content": content.strip(), "format": format.strip().lower(), "options": _canonical(options or {})}
  serialized = json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
  return KEY_PREFIX + hashlib.sha256(serialized.encode("utf-8")).hexdigest()
