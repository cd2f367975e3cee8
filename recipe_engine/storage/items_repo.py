"""Storage interfaces for generated recipes."""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Protocol

from recipe_engine.core.exceptions import StorageError
from recipe_engine.jobs.models import GeneratedItem

ITEM_PATCH_FIELDS = frozenset({"image_status", "image_ref", "image_content_hash", "image_quality_score"})


class ItemRepository(Protocol):
  """Repository contract for generated recipe persistence."""

  async def save(self, item: GeneratedItem) -> str:
    """Persist a new item and return its id."""

  async def update(self, item_id: str, **patch: Any) -> None:
    """Apply a partial update; only image fields are patchable."""

  async def get(self, item_id: str) -> dict[str, Any] | None:
    """Fetch a stored item record."""


def normalize_item_patch(patch: dict[str, Any]) -> dict[str, Any]:
  unknown = set(patch) - ITEM_PATCH_FIELDS
  if unknown:
    raise StorageError(f"Unsupported item patch fields: {', '.join(sorted(unknown))}")
  return {key: getattr(value, "value", value) for key, value in patch.items()}


class InMemoryItemRepository:
  """Process-local item store for tests and local runs."""

  def __init__(self) -> None:
    self._lock = asyncio.Lock()
    self._items: dict[str, dict[str, Any]] = {}

  async def save(self, item: GeneratedItem) -> str:
    async with self._lock:
      if item.id in self._items:
        raise StorageError(f"Item {item.id} already exists.")
      self._items[item.id] = item.to_record()
    return item.id

  async def update(self, item_id: str, **patch: Any) -> None:
    values = normalize_item_patch(patch)
    async with self._lock:
      record = self._items.get(item_id)
      if record is None:
        raise StorageError(f"Item {item_id} does not exist.")
      record.update(values)

  async def get(self, item_id: str) -> dict[str, Any] | None:
    async with self._lock:
      record = self._items.get(item_id)
      return copy.deepcopy(record) if record is not None else None

  async def list_for_job(self, job_id: str) -> list[dict[str, Any]]:
    async with self._lock:
      return [copy.deepcopy(record) for record in self._items.values() if record["job_id"] == job_id]
