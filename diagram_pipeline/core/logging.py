"""Logging bootstrap for the service and worker processes."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from diagram_pipeline.config import Settings

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_CONFIGURED_MARKER = "_diagram_pipeline_handler"


def _initialize_logging(settings: Settings) -> None:
  """Configure root logging once; repeated calls only adjust the level."""
  root = logging.getLogger()
  root.setLevel(settings.log_level)

  # Avoid stacking handlers when the lifespan runs more than once (tests, reloads).
  if any(getattr(handler, _CONFIGURED_MARKER, False) for handler in root.handlers):
    return

  formatter = logging.Formatter(_LOG_FORMAT)
  console = logging.StreamHandler(sys.stdout)
  console.setFormatter(formatter)
  setattr(console, _CONFIGURED_MARKER, True)
  root.addHandler(console)

  if settings.log_file:
    log_path = Path(settings.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(log_path, maxBytes=settings.log_max_bytes, backupCount=settings.log_backup_count, encoding="utf-8")
    file_handler.setFormatter(formatter)
    setattr(file_handler, _CONFIGURED_MARKER, True)
    root.addHandler(file_handler)

  # httpx logs every request at INFO; keep renderer and webhook chatter at WARNING unless debugging.
  if not settings.debug:
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
