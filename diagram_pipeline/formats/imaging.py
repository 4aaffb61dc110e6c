"""Pillow-based raster post-processing (PNG -> JPEG/WEBP, re-encoding for size)."""

from __future__ import annotations

import io
import logging
from collections.abc import Mapping
from typing import Any

from PIL import Image, UnidentifiedImageError

from diagram_pipeline.core.errors import OutputValidationError
from diagram_pipeline.formats.catalog import optimization_options
from diagram_pipeline.formats.contracts import InvalidOptionsError

logger = logging.getLogger(__name__)

_PIL_FORMATS = {"png": "PNG", "jpeg": "JPEG", "webp": "WEBP"}
_BOOL_OPTIONS = ("compress", "lossless", "progressive")
_COMPRESSION_LEVELS = ("balanced", "high")


class ImageConversionError(OutputValidationError):
  """Renderer bytes could not be decoded or re-encoded."""


def check_options(options: Mapping[str, Any] | None) -> None:
  """Reject encoder options Pillow cannot use; unknown keys pass through untouched."""
  options = options or {}
  quality = options.get("quality")
  if quality is not None and (isinstance(quality, bool) or not isinstance(quality, int) or not 1 <= quality <= 100):
    raise InvalidOptionsError(f"Option 'quality' must be an integer between 1 and 100, got {quality!r}")
  for name in _BOOL_OPTIONS:
    value = options.get(name)
    if value is not None and not isinstance(value, bool):
      raise InvalidOptionsError(f"Option '{name}' must be a boolean, got {value!r}")
  level = options.get("compression_level")
  if level is not None and level not in _COMPRESSION_LEVELS:
    raise InvalidOptionsError(f"Option 'compression_level' must be one of {', '.join(_COMPRESSION_LEVELS)}, got {level!r}")


def _flatten_alpha(image: Image.Image) -> Image.Image:
  """JPEG has no alpha channel; composite onto white like a browser would."""
  if image.mode in {"RGBA", "LA"} or (image.mode == "P" and "transparency" in image.info):
    rgba = image.convert("RGBA")
    background = Image.new("RGB", rgba.size, (255, 255, 255))
    background.paste(rgba, mask=rgba.getchannel("A"))
    return background
  return image.convert("RGB")


def _encode(image: Image.Image, target: str, params: Mapping[str, Any]) -> bytes:
  buffer = io.BytesIO()
  if target == "jpeg":
    image = _flatten_alpha(image)
  image.save(buffer, format=_PIL_FORMATS[target], **params)
  return buffer.getvalue()


def convert_png(data: bytes, target: str, options: Mapping[str, Any] | None = None) -> bytes:
  """Re-encode PNG renderer output into a derived raster format."""
  options = options or {}
  check_options(options)
  if target == "jpeg":
    params: dict[str, Any] = {"quality": options.get("quality") or 85, "progressive": options.get("progressive") is not False, "optimize": True}
  elif target == "webp":
    lossless = options.get("lossless") is True
    params = {"lossless": lossless, "method": 6}
    if not lossless:
      params["quality"] = options.get("quality") or 80
  else:
    raise ImageConversionError(f"No PNG conversion to {target}")

  try:
    with Image.open(io.BytesIO(data)) as image:
      image.load()
      return _encode(image, target, params)
  except (UnidentifiedImageError, OSError, ValueError) as exc:
    logger.error("PNG to %s conversion failed: %s", target.upper(), exc)
    raise ImageConversionError(f"Failed to convert PNG to {target.upper()}") from exc


def compress_image(data: bytes, format: str, options: Mapping[str, Any] | None = None) -> bytes:
  """Re-encode a raster image for size; returns the original bytes when that fails or does not help."""
  if format not in _PIL_FORMATS:
    return data

  options = options or {}
  level = "high" if options.get("compression_level") == "high" else "balanced"
  params = optimization_options(format, level)
  try:
    with Image.open(io.BytesIO(data)) as image:
      image.load()
      compressed = _encode(image, format, params)
  except (UnidentifiedImageError, OSError, ValueError) as exc:
    logger.warning("Image compression failed, using original format=%s error=%s", format, exc)
    return data

  if len(compressed) >= len(data):
    return data
  return compressed
