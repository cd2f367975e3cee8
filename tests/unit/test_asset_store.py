from __future__ import annotations

import io
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from PIL import Image

from recipe_engine.ai.providers.base import TransientAsset
from recipe_engine.config import Settings
from recipe_engine.core.exceptions import StorageError, TransientExternalError
from recipe_engine.services.storage_client import _normalize_emulator_endpoint
from recipe_engine.storage.asset_store import GcsAssetStore, InMemoryAssetStore, fetch_asset_bytes


def _png_bytes() -> bytes:
  buffer = io.BytesIO()
  Image.new("RGB", (8, 8), color=(200, 80, 40)).save(buffer, format="PNG")
  return buffer.getvalue()


def _storage_client() -> MagicMock:
  client = MagicMock()
  client.bucket_name = "recipe-images"
  client.upload_webp = AsyncMock()
  client.public_url.side_effect = lambda path: f"https://storage.googleapis.com/recipe-images/{path}"
  return client


@pytest.mark.anyio
async def test_gcs_store_uploads_webp_and_returns_public_url(settings: Settings) -> None:
  storage_client = _storage_client()
  store = GcsAssetStore(settings, storage_client=storage_client)

  url = await store.persist(TransientAsset(mime_type="image/png", data=_png_bytes()), "job-1/item-1")

  assert url == "https://storage.googleapis.com/recipe-images/recipes/job-1/item-1.webp"
  uploaded, object_path = storage_client.upload_webp.await_args.args
  assert object_path == "recipes/job-1/item-1.webp"
  assert Image.open(io.BytesIO(uploaded)).format == "WEBP"


@pytest.mark.anyio
async def test_gcs_store_prefers_configured_public_base_url(settings: Settings) -> None:
  store = GcsAssetStore(settings.with_overrides(asset_public_base_url="https://cdn.example.com/"), storage_client=_storage_client())
  url = await store.persist(TransientAsset(mime_type="image/png", data=_png_bytes()), "job-1/item-2")
  assert url == "https://cdn.example.com/recipes/job-1/item-2.webp"


@pytest.mark.anyio
async def test_upload_failure_is_a_storage_error(settings: Settings) -> None:
  storage_client = _storage_client()
  storage_client.upload_webp.side_effect = RuntimeError("bucket unavailable")
  with pytest.raises(StorageError, match="bucket unavailable"):
    await GcsAssetStore(settings, storage_client=storage_client).persist(TransientAsset(data=_png_bytes()), "job-1/item-3")


@pytest.mark.anyio
async def test_undecodable_payload_is_transient(settings: Settings) -> None:
  with pytest.raises(TransientExternalError):
    await GcsAssetStore(settings, storage_client=_storage_client()).persist(TransientAsset(data=b"not an image"), "job-1/item-4")


@pytest.mark.anyio
async def test_url_assets_are_downloaded() -> None:
  payload = _png_bytes()

  def handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/missing.png":
      return httpx.Response(429)
    return httpx.Response(200, content=payload)

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    assert await fetch_asset_bytes(TransientAsset(url="https://images.example.com/soup.png"), timeout=1, client=client) == payload
    with pytest.raises(TransientExternalError) as exc_info:
      await fetch_asset_bytes(TransientAsset(url="https://images.example.com/missing.png"), timeout=1, client=client)
  assert exc_info.value.category == "rate_limit"


@pytest.mark.anyio
async def test_in_memory_store_keeps_bytes() -> None:
  store = InMemoryAssetStore()
  ref = await store.persist(TransientAsset(data=b"abc"), "job-1/item-5")
  assert ref == "memory://job-1/item-5"
  assert store.objects["job-1/item-5"] == b"abc"


def test_transient_asset_requires_data_or_url() -> None:
  with pytest.raises(ValueError):
    TransientAsset()


def test_emulator_endpoint_is_normalized() -> None:
  assert _normalize_emulator_endpoint("http://localhost:4443/storage/v1/") == "http://localhost:4443"
  assert _normalize_emulator_endpoint("localhost:4443/") == "localhost:4443"
