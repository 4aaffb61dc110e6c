"""Magic-byte checks for renderer output."""

from __future__ import annotations

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
PDF_SIGNATURE = b"%PDF"
JPEG_SIGNATURE = b"\xff\xd8\xff"


def validate_png(data: bytes) -> bool:
  return len(data) >= 8 and data[:8] == PNG_SIGNATURE


def validate_svg(data: bytes) -> bool:
  if len(data) < 5:
    return False
  text = data.decode("utf-8", errors="ignore")
  return "<svg" in text and "</svg>" in text


def validate_pdf(data: bytes) -> bool:
  return len(data) >= 4 and data[:4] == PDF_SIGNATURE


def validate_jpeg(data: bytes) -> bool:
  return len(data) >= 3 and data[:3] == JPEG_SIGNATURE


def validate_webp(data: bytes) -> bool:
  return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP"
