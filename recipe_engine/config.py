"""Application configuration loaded from environment variables."""

from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from recipe_engine.core.exceptions import ConfigurationError

RECIPE_CATEGORIES: tuple[str, ...] = ("breakfast", "lunch", "dinner", "snack", "dessert", "other")
DEFAULT_PLACEHOLDER_ASSETS: dict[str, str] = {category: f"static/placeholders/{category}.webp" for category in RECIPE_CATEGORIES}
DEFAULT_FALLBACK_ASSETS: dict[str, str] = {category: f"static/fallbacks/{category}.webp" for category in RECIPE_CATEGORIES}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the recipe batch engine."""

  environment: str = "development"
  debug: bool = False
  log_level: str = "INFO"
  log_file: str | None = None
  log_max_bytes: int = 5242880
  log_backup_count: int = 10
  chunk_size: int = 5
  max_requested_count: int = 500
  chunk_concurrency: int = 3
  image_concurrency: int = 3
  content_timeout_seconds: float = 120.0
  image_timeout_seconds: float = 60.0
  upload_timeout_seconds: float = 15.0
  content_max_retries: int = 3
  image_max_attempts: int = 3
  persist_max_attempts: int = 3
  backoff_base_seconds: float = 1.0
  backoff_max_seconds: float = 30.0
  backoff_jitter: bool = True
  job_soft_deadline_seconds: float = 900.0
  image_backlog_threshold: int = 50
  eta_window: int = 20
  gemini_api_key: str | None = None
  content_model: str = "gemini-2.5-flash"
  image_model: str = "imagen-4.0-generate-001"
  asset_bucket: str = "recipe-images"
  asset_object_prefix: str = "recipes"
  asset_public_base_url: str | None = None
  gcs_storage_host: str | None = None
  gcp_project_id: str | None = None
  pg_dsn: str | None = None
  pg_connect_timeout: int = 5
  placeholder_assets: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PLACEHOLDER_ASSETS), hash=False)
  fallback_assets: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_FALLBACK_ASSETS), hash=False)

  def __post_init__(self) -> None:
    # Every external call runs under a finite bound.
    for name in ("content_timeout_seconds", "image_timeout_seconds", "upload_timeout_seconds"):
      if not getattr(self, name) > 0:
        raise ConfigurationError(f"{name} must be greater than zero.")

  def placeholder_for(self, category: str) -> str:
    """Return the placeholder reference shown while a category's image is pending."""
    return self.placeholder_assets.get(category) or self.placeholder_assets["other"]

  def fallback_for(self, category: str) -> str:
    """Return the category-specific fallback asset used after image generation gives up."""
    return self.fallback_assets.get(category) or self.fallback_assets["other"]

  def with_overrides(self, **overrides: Any) -> Settings:
    """Return a copy with selected fields replaced."""
    return dataclasses.replace(self, **overrides)


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _positive_int(name: str, default: str, *, allow_zero: bool = False) -> int:
  raw = os.getenv(name, default)
  try:
    value = int(raw)
  except ValueError as exc:
    raise ConfigurationError(f"{name} must be an integer.") from exc
  if value < 0 or (value == 0 and not allow_zero):
    qualifier = "zero or a positive integer" if allow_zero else "a positive integer"
    raise ConfigurationError(f"{name} must be {qualifier}.")
  return value


def _non_negative_float(name: str, default: str) -> float:
  raw = os.getenv(name, default)
  try:
    value = float(raw)
  except ValueError as exc:
    raise ConfigurationError(f"{name} must be a number.") from exc
  if value < 0:
    raise ConfigurationError(f"{name} must not be negative.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = _non_negative_float(name, default)
  if value == 0:
    raise ConfigurationError(f"{name} must be greater than zero.")
  return value


def _parse_asset_map(name: str, defaults: dict[str, str]) -> dict[str, str]:
  """Merge a JSON object of category -> asset reference over the defaults."""
  raw = os.getenv(name)
  merged = dict(defaults)
  if not raw:
    return merged
  try:
    parsed = json.loads(raw)
  except json.JSONDecodeError as exc:
    raise ConfigurationError(f"{name} must be a JSON object of category to asset reference.") from exc
  if not isinstance(parsed, dict):
    raise ConfigurationError(f"{name} must be a JSON object of category to asset reference.")
  for category, reference in parsed.items():
    if not isinstance(reference, str) or not reference.strip():
      raise ConfigurationError(f"{name} entry '{category}' must be a non-empty string.")
    merged[str(category).strip().lower()] = reference.strip()
  return merged


def _require_distinct_fallbacks(fallback_assets: dict[str, str]) -> None:
  """Reject configurations where two categories share one fallback asset."""
  seen: dict[str, str] = {}
  for category, reference in fallback_assets.items():
    if reference in seen:
      raise ConfigurationError(f"Fallback asset '{reference}' is shared by categories '{seen[reference]}' and '{category}'.")
    seen[reference] = category
  if "other" not in fallback_assets:
    raise ConfigurationError("Fallback assets must define an 'other' category.")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("RECIPE_ENGINE_ENV", "development").lower()
  debug = _parse_bool(os.getenv("RECIPE_ENGINE_DEBUG"))

  # Pipeline sizing; the planner and coordinator read these once per job.
  chunk_size = _positive_int("RECIPE_ENGINE_CHUNK_SIZE", "5")
  max_requested_count = _positive_int("RECIPE_ENGINE_MAX_REQUESTED_COUNT", "500")
  chunk_concurrency = _positive_int("RECIPE_ENGINE_CHUNK_CONCURRENCY", "3")
  image_concurrency = _positive_int("RECIPE_ENGINE_IMAGE_CONCURRENCY", "3")

  # Per-call bounds and retry budgets.
  content_timeout_seconds = _positive_float("RECIPE_ENGINE_CONTENT_TIMEOUT_SECONDS", "120")
  image_timeout_seconds = _positive_float("RECIPE_ENGINE_IMAGE_TIMEOUT_SECONDS", "60")
  upload_timeout_seconds = _positive_float("RECIPE_ENGINE_UPLOAD_TIMEOUT_SECONDS", "15")
  content_max_retries = _positive_int("RECIPE_ENGINE_CONTENT_MAX_RETRIES", "3", allow_zero=True)
  image_max_attempts = _positive_int("RECIPE_ENGINE_IMAGE_MAX_ATTEMPTS", "3")
  persist_max_attempts = _positive_int("RECIPE_ENGINE_PERSIST_MAX_ATTEMPTS", "3")

  placeholder_assets = _parse_asset_map("RECIPE_ENGINE_PLACEHOLDER_ASSETS", DEFAULT_PLACEHOLDER_ASSETS)
  fallback_assets = _parse_asset_map("RECIPE_ENGINE_FALLBACK_ASSETS", DEFAULT_FALLBACK_ASSETS)
  _require_distinct_fallbacks(fallback_assets)
  if "other" not in placeholder_assets:
    raise ConfigurationError("Placeholder assets must define an 'other' category.")

  return Settings(
    environment=environment,
    debug=debug,
    log_level=(os.getenv("RECIPE_ENGINE_LOG_LEVEL") or "INFO").strip().upper(),
    log_file=_optional_str(os.getenv("RECIPE_ENGINE_LOG_FILE")),
    log_max_bytes=_positive_int("RECIPE_ENGINE_LOG_MAX_BYTES", "5242880"),
    log_backup_count=_positive_int("RECIPE_ENGINE_LOG_BACKUP_COUNT", "10", allow_zero=True),
    chunk_size=chunk_size,
    max_requested_count=max_requested_count,
    chunk_concurrency=chunk_concurrency,
    image_concurrency=image_concurrency,
    content_timeout_seconds=content_timeout_seconds,
    image_timeout_seconds=image_timeout_seconds,
    upload_timeout_seconds=upload_timeout_seconds,
    content_max_retries=content_max_retries,
    image_max_attempts=image_max_attempts,
    persist_max_attempts=persist_max_attempts,
    backoff_base_seconds=_non_negative_float("RECIPE_ENGINE_BACKOFF_BASE_SECONDS", "1"),
    backoff_max_seconds=_non_negative_float("RECIPE_ENGINE_BACKOFF_MAX_SECONDS", "30"),
    backoff_jitter=not _parse_bool(os.getenv("RECIPE_ENGINE_BACKOFF_DISABLE_JITTER")),
    job_soft_deadline_seconds=_non_negative_float("RECIPE_ENGINE_JOB_SOFT_DEADLINE_SECONDS", "900"),
    image_backlog_threshold=_positive_int("RECIPE_ENGINE_IMAGE_BACKLOG_THRESHOLD", "50"),
    eta_window=_positive_int("RECIPE_ENGINE_ETA_WINDOW", "20"),
    gemini_api_key=_optional_str(os.getenv("GEMINI_API_KEY")),
    content_model=(os.getenv("RECIPE_ENGINE_CONTENT_MODEL") or "gemini-2.5-flash").strip(),
    image_model=(os.getenv("RECIPE_ENGINE_IMAGE_MODEL") or "imagen-4.0-generate-001").strip(),
    asset_bucket=(os.getenv("RECIPE_ENGINE_ASSET_BUCKET") or "recipe-images").strip(),
    asset_object_prefix=(os.getenv("RECIPE_ENGINE_ASSET_OBJECT_PREFIX") or "recipes").strip().strip("/"),
    asset_public_base_url=_optional_str(os.getenv("RECIPE_ENGINE_ASSET_PUBLIC_BASE_URL")),
    gcs_storage_host=_optional_str(os.getenv("GCS_STORAGE_HOST")),
    gcp_project_id=_optional_str(os.getenv("GCP_PROJECT_ID")),
    pg_dsn=os.getenv("RECIPE_ENGINE_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("RECIPE_ENGINE_PG_CONNECT_TIMEOUT", "5"),
    placeholder_assets=placeholder_assets,
    fallback_assets=fallback_assets,
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring the AI and storage configuration."""
  debug = _parse_bool(os.getenv("RECIPE_ENGINE_DEBUG"))
  pg_connect_timeout = _positive_int("RECIPE_ENGINE_PG_CONNECT_TIMEOUT", "5")

  # Support fallback to DATABASE_URL for hosted Postgres providers.
  pg_dsn = os.getenv("RECIPE_ENGINE_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
