"""Durable storage for generated recipe images."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import httpx
from PIL import UnidentifiedImageError
from starlette.concurrency import run_in_threadpool

from recipe_engine.ai.agents.illustration import WEBP_MIME_TYPE, convert_to_webp
from recipe_engine.ai.providers.base import TransientAsset
from recipe_engine.config import Settings
from recipe_engine.core.exceptions import StorageError, TransientExternalError
from recipe_engine.services.storage_client import StorageClient

logger = logging.getLogger(__name__)


class AssetStore(Protocol):
  """Turns a transient asset into a permanent reference."""

  async def persist(self, asset: TransientAsset, object_name: str) -> str:
    """Store the asset under object_name and return its permanent reference."""


async def fetch_asset_bytes(asset: TransientAsset, *, timeout: float, client: httpx.AsyncClient | None = None) -> bytes:
  """Return the asset's bytes, downloading them when only a URL is known."""
  if asset.data is not None:
    return asset.data
  try:
    if client is not None:
      response = await client.get(asset.url, timeout=timeout)
    else:
      async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as owned_client:
        response = await owned_client.get(asset.url)
    response.raise_for_status()
  except httpx.HTTPStatusError as exc:
    status_code = exc.response.status_code
    raise TransientExternalError(f"Asset download failed with HTTP {status_code}.", rate_limited=status_code == 429, status_code=status_code) from exc
  return response.content


class GcsAssetStore:
  """Normalize images to WebP and upload them to Cloud Storage."""

  def __init__(self, settings: Settings, storage_client: StorageClient | None = None, http_client: httpx.AsyncClient | None = None) -> None:
    self._settings = settings
    self._storage_client = storage_client or StorageClient(settings)
    self._http_client = http_client

  def object_name_for(self, object_name: str) -> str:
    prefix = self._settings.asset_object_prefix
    return f"{prefix}/{object_name}.webp" if prefix else f"{object_name}.webp"

  def public_url(self, object_path: str) -> str:
    base_url = self._settings.asset_public_base_url
    if base_url:
      return f"{base_url.rstrip('/')}/{object_path}"
    return self._storage_client.public_url(object_path)

  async def persist(self, asset: TransientAsset, object_name: str) -> str:
    raw_bytes = await fetch_asset_bytes(asset, timeout=self._settings.upload_timeout_seconds or 15.0, client=self._http_client)
    try:
      webp_bytes = raw_bytes if asset.mime_type == WEBP_MIME_TYPE else await run_in_threadpool(convert_to_webp, raw_bytes)
    except (UnidentifiedImageError, OSError) as exc:
      raise TransientExternalError(f"Image payload could not be decoded: {exc}") from exc

    object_path = self.object_name_for(object_name)
    try:
      await self._storage_client.upload_webp(webp_bytes, object_path)
    except Exception as exc:  # noqa: BLE001
      raise StorageError(f"Upload of {object_path} to bucket {self._storage_client.bucket_name} failed: {exc}") from exc
    logger.info("Image uploaded object=%s bytes=%d", object_path, len(webp_bytes))
    return self.public_url(object_path)


class InMemoryAssetStore:
  """Keep assets in a dict; references use the memory:// scheme."""

  def __init__(self) -> None:
    self._lock = asyncio.Lock()
    self.objects: dict[str, bytes] = {}

  async def persist(self, asset: TransientAsset, object_name: str) -> str:
    data = await fetch_asset_bytes(asset, timeout=15.0)
    async with self._lock:
      self.objects[object_name] = data
    return f"memory://{object_name}"
