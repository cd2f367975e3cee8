"""Process-wide logging setup."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from recipe_engine.config import Settings

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_HANDLER_MARKER = "_recipe_engine_handler"


def initialize_logging(settings: Settings) -> logging.Logger:
  """Attach console and optional rotating file handlers to the package logger."""
  logger = logging.getLogger("recipe_engine")
  level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level, logging.INFO)
  logger.setLevel(level)

  # Re-initialization replaces our own handlers without touching ones installed by the host process.
  for handler in list(logger.handlers):
    if getattr(handler, _HANDLER_MARKER, False):
      logger.removeHandler(handler)
      handler.close()

  formatter = logging.Formatter(_LOG_FORMAT)
  console = logging.StreamHandler(sys.stderr)
  console.setFormatter(formatter)
  setattr(console, _HANDLER_MARKER, True)
  logger.addHandler(console)

  if settings.log_file:
    log_path = Path(settings.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(log_path, maxBytes=settings.log_max_bytes, backupCount=settings.log_backup_count, encoding="utf-8")
    file_handler.setFormatter(formatter)
    setattr(file_handler, _HANDLER_MARKER, True)
    logger.addHandler(file_handler)

  logger.propagate = False
  logger.debug("Logging initialized level=%s file=%s", logging.getLevelName(level), settings.log_file or "<none>")
  return logger
