"""Object storage helper for recipe image assets."""

from __future__ import annotations

import os
from urllib.parse import urlparse, urlunparse

from google.auth.credentials import AnonymousCredentials
from google.cloud import storage
from starlette.concurrency import run_in_threadpool

from recipe_engine.config import Settings

DEFAULT_CACHE_CONTROL = "public, max-age=31536000, immutable"


class StorageClient:
  """Thin wrapper over GCS and emulator access for image uploads."""

  def __init__(self, settings: Settings) -> None:
    self._bucket_name = settings.asset_bucket
    self._storage_host = settings.gcs_storage_host
    # Ensure emulator endpoint is visible to the SDK in local development.
    if self._storage_host:
      emulator_endpoint = _normalize_emulator_endpoint(self._storage_host)
      os.environ["STORAGE_EMULATOR_HOST"] = emulator_endpoint
      self._client = storage.Client(project=settings.gcp_project_id or "local-dev", credentials=AnonymousCredentials(), client_options={"api_endpoint": emulator_endpoint})
    else:
      self._client = storage.Client(project=settings.gcp_project_id)

  @property
  def bucket_name(self) -> str:
    return self._bucket_name

  @property
  def emulated(self) -> bool:
    return bool(self._storage_host)

  async def ensure_bucket(self) -> None:
    """Create the default bucket when missing in emulator mode."""
    if not self._storage_host:
      return
    bucket = self._client.bucket(self._bucket_name)

    def _create_if_missing() -> None:
      if not bucket.exists(client=self._client):
        self._client.create_bucket(bucket)

    await run_in_threadpool(_create_if_missing)

  async def upload_webp(self, image_bytes: bytes, object_name: str, cache_control: str = DEFAULT_CACHE_CONTROL) -> None:
    """Upload WebP bytes to the default bucket with cache directives."""
    bucket = self._client.bucket(self._bucket_name)
    blob = bucket.blob(object_name)
    blob.cache_control = cache_control
    blob.content_type = "image/webp"
    await run_in_threadpool(blob.upload_from_string, image_bytes, "image/webp")

  def public_url(self, object_name: str) -> str:
    if self._storage_host:
      return f"{_normalize_emulator_endpoint(self._storage_host)}/{self._bucket_name}/{object_name}"
    return f"https://storage.googleapis.com/{self._bucket_name}/{object_name}"


def _normalize_emulator_endpoint(raw_endpoint: str) -> str:
  """Normalize emulator endpoint so the SDK receives scheme+host+port only."""
  parsed = urlparse(raw_endpoint)
  if not parsed.scheme or not parsed.netloc:
    return raw_endpoint.rstrip("/")
  return urlunparse((parsed.scheme, parsed.netloc, "", "", "", "")).rstrip("/")
