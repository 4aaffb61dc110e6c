"""Static format and diagram-kind compatibility tables."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from diagram_pipeline.formats import validators

MB = 1024 * 1024


@dataclass(frozen=True)
class FormatSpec:
  """How one output format is produced and checked."""

  name: str
  mime_type: str
  endpoint: str
  max_size: int
  compression: bool
  validate: Callable[[bytes], bool]
  derived: bool = False


FORMATS: dict[str, FormatSpec] = {
  "png": FormatSpec(name="png", mime_type="image/png", endpoint="png", max_size=10 * MB, compression=True, validate=validators.validate_png),
  "svg": FormatSpec(name="svg", mime_type="image/svg+xml", endpoint="svg", max_size=5 * MB, compression=False, validate=validators.validate_svg),
  "pdf": FormatSpec(name="pdf", mime_type="application/pdf", endpoint="pdf", max_size=20 * MB, compression=False, validate=validators.validate_pdf),
  # Raster formats the renderer does not emit directly: render PNG, then re-encode.
  "jpeg": FormatSpec(name="jpeg", mime_type="image/jpeg", endpoint="png", max_size=8 * MB, compression=True, validate=validators.validate_jpeg, derived=True),
  "webp": FormatSpec(name="webp", mime_type="image/webp", endpoint="png", max_size=6 * MB, compression=True, validate=validators.validate_webp, derived=True),
}

FORMAT_ALIASES = {"jpg": "jpeg"}

_PNG_SVG_PDF = ("png", "svg", "pdf")
_PNG_AND_SVG = ("png", "svg")

DIAGRAM_KINDS: dict[str, tuple[str, ...]] = {
  "plantuml": _PNG_SVG_PDF,
  "mermaid": _PNG_SVG_PDF,
  "graphviz": _PNG_SVG_PDF,
  "c4plantuml": _PNG_SVG_PDF,
  "ditaa": _PNG_AND_SVG,
  "blockdiag": _PNG_AND_SVG,
  "bpmn": _PNG_AND_SVG,
  "bytefield": _PNG_AND_SVG,
  "seqdiag": _PNG_AND_SVG,
  "actdiag": _PNG_AND_SVG,
  "nwdiag": _PNG_AND_SVG,
  "packetdiag": _PNG_AND_SVG,
  "rackdiag": _PNG_AND_SVG,
}

USE_CASE_FORMATS = {
  "web": "webp",
  "print": "pdf",
  "email": "png",
  "mobile": "webp",
  "documentation": "svg",
  "presentation": "png",
  "thumbnail": "jpeg",
  "archival": "pdf",
}

DEFAULT_FORMAT = "png"

_QUALITY_LEVELS = {
  "high": {"quality": 95, "compression": 9, "effort": 6},
  "balanced": {"quality": 85, "compression": 6, "effort": 4},
  "fast": {"quality": 75, "compression": 3, "effort": 2},
}


def normalize_format(format: str) -> str:
  lowered = format.strip().lower()
  return FORMAT_ALIASES.get(lowered, lowered)


def get_format_spec(format: str) -> FormatSpec | None:
  return FORMATS.get(normalize_format(format))


def supported_formats(diagram_kind: str) -> tuple[str, ...]:
  """Return every output format available for a diagram kind, derived formats included."""
  base = DIAGRAM_KINDS.get(diagram_kind.strip().lower())
  if base is None:
    return ()
  derived = tuple(name for name, spec in FORMATS.items() if spec.derived and spec.endpoint in base)
  return base + derived


def is_supported(diagram_kind: str, format: str) -> bool:
  return normalize_format(format) in supported_formats(diagram_kind)


def recommend(use_case: str, diagram_kind: str) -> str:
  """Map an abstract use case to a format the diagram kind can produce."""
  suggested = USE_CASE_FORMATS.get(use_case.strip().lower(), DEFAULT_FORMAT)
  if is_supported(diagram_kind, suggested):
    return suggested
  return DEFAULT_FORMAT


def recommendations(diagram_kind: str) -> dict[str, object]:
  supported = list(supported_formats(diagram_kind)) or [DEFAULT_FORMAT]
  return {"supported": supported, "recommendations": {use_case: recommend(use_case, diagram_kind) for use_case in ("web", "print", "documentation", "mobile")}}


def optimization_options(format: str, quality: str = "balanced") -> dict[str, object]:
  """Return encoder settings for a raster format at a quality level."""
  level = _QUALITY_LEVELS.get(quality, _QUALITY_LEVELS["balanced"])
  normalized = normalize_format(format)
  if normalized == "png":
    return {"compress_level": level["compression"], "optimize": True}
  if normalized == "jpeg":
    return {"quality": level["quality"], "progressive": True, "optimize": True}
  if normalized == "webp":
    return {"quality": level["quality"], "method": level["effort"], "lossless": quality == "high"}
  return {}
