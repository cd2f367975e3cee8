from __future__ import annotations

from typing import Any

import pytest

from recipe_engine.ai.pipeline.contracts import GenerationConstraints, RecipeDraft
from recipe_engine.config import Settings
from recipe_engine.core.exceptions import StorageError
from recipe_engine.jobs.models import ChunkSpec, ChunkState, GeneratedItem, GenerationJob, ImageStatus
from recipe_engine.jobs.persistence import PersistenceGateway
from recipe_engine.storage.items_repo import InMemoryItemRepository

from conftest import make_recipe


class FlakyItemRepository(InMemoryItemRepository):
  """Fails the first N saves per recipe name, or always for names in `broken`."""

  def __init__(self, *, failures_before_success: int = 0, broken: set[str] | None = None) -> None:
    super().__init__()
    self.failures_before_success = failures_before_success
    self.broken = broken or set()
    self.attempts: dict[str, int] = {}

  async def save(self, item: GeneratedItem) -> str:
    name = item.draft.name
    self.attempts[name] = self.attempts.get(name, 0) + 1
    if name in self.broken or self.attempts[name] <= self.failures_before_success:
      raise StorageError(f"write failed for {name}")
    return await super().save(item)


def _job_and_chunk() -> tuple[GenerationJob, ChunkState]:
  job = GenerationJob(id="job-1", requested_count=3, constraints=GenerationConstraints())
  chunk = ChunkState(spec=ChunkSpec(index=2, size=3))
  job.chunks = [chunk]
  return job, chunk


def _drafts(*names: str, meal_type: str = "dinner") -> list[RecipeDraft]:
  return [RecipeDraft.model_validate(make_recipe(name, meal_type=meal_type)) for name in names]


@pytest.mark.anyio
async def test_persisted_items_carry_category_placeholder(settings: Settings, item_repository: InMemoryItemRepository) -> None:
  job, chunk = _job_and_chunk()
  seen: list[str] = []
  gateway = PersistenceGateway(item_repository, settings)

  result = await gateway.persist(job, chunk, _drafts("Oats", "Granola", meal_type="breakfast"), on_persisted=lambda item: seen.append(item.id))

  assert [item.id for item in result.items] == seen
  assert result.dropped == []
  record: dict[str, Any] | None = await item_repository.get(seen[0])
  assert record is not None
  assert record["image_status"] == ImageStatus.PENDING.value
  assert record["image_ref"] == settings.placeholder_for("breakfast")
  assert record["source_chunk"] == 2
  assert record["category"] == "breakfast"


@pytest.mark.anyio
async def test_transient_storage_failures_are_retried(settings: Settings) -> None:
  repository = FlakyItemRepository(failures_before_success=2)
  job, chunk = _job_and_chunk()
  result = await PersistenceGateway(repository, settings).persist(job, chunk, _drafts("Stew"))

  assert len(result.items) == 1
  assert repository.attempts["Stew"] == 3


@pytest.mark.anyio
async def test_item_dropped_after_persistent_storage_failure(settings: Settings) -> None:
  repository = FlakyItemRepository(broken={"Curry"})
  job, chunk = _job_and_chunk()
  result = await PersistenceGateway(repository, settings).persist(job, chunk, _drafts("Stew", "Curry", "Tacos"))

  assert [item.draft.name for item in result.items] == ["Stew", "Tacos"]
  assert len(result.dropped) == 1
  entry = result.dropped[0]
  assert entry.stage == "persist"
  assert entry.category == "storage"
  assert entry.chunk_index == 2
  assert entry.attempts == settings.persist_max_attempts
  assert repository.attempts["Curry"] == settings.persist_max_attempts
