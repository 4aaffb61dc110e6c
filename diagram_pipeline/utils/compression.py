"""Compression utilities for cached render payloads."""

import brotli

BROTLI_QUALITY = 5


def compress_bytes(raw: bytes) -> bytes:
  """Compress a payload with Brotli."""
  return brotli.compress(raw, quality=BROTLI_QUALITY)


def decompress_bytes(blob: bytes) -> bytes:
  """Decompress a Brotli-compressed payload."""
  return brotli.decompress(blob)
