"""Shared fixtures and in-memory fakes for pipeline tests."""

from __future__ import annotations

import asyncio
import re
from collections import Counter
from collections.abc import Callable
from typing import Any

import pytest

from recipe_engine.ai.agents.prompts import diversity_seed
from recipe_engine.ai.providers.base import TransientAsset
from recipe_engine.config import Settings
from recipe_engine.core.exceptions import ConfigurationError, TransientExternalError
from recipe_engine.jobs.progress import ProgressTracker
from recipe_engine.jobs.uniqueness import InMemoryUniquenessCache
from recipe_engine.storage.asset_store import InMemoryAssetStore
from recipe_engine.storage.items_repo import InMemoryItemRepository

_SIZE_RE = re.compile(r"Generate exactly (\d+) distinct")
_SEED_RE = re.compile(r"Diversity seed: (\d+)\.")


@pytest.fixture
def anyio_backend():
  return "asyncio"


def make_recipe(name: str, *, meal_type: str = "dinner", calories: float = 520, **overrides: Any) -> dict[str, Any]:
  """Build a raw draft shaped like a content model response entry."""
  recipe: dict[str, Any] = {
    "name": name,
    "description": f"{name} with bright herbs and a quick pan sauce.",
    "meal_types": [meal_type],
    "dietary_tags": ["high-protein"],
    "main_ingredient_tags": ["chicken", "lemon"],
    "ingredients": [{"name": "chicken thigh", "amount": 400, "unit": "g"}, {"name": "lemon", "amount": 1, "unit": "whole"}],
    "instructions": "1. Sear the chicken. 2. Add lemon. 3. Simmer until cooked through.",
    "prep_time_minutes": 10,
    "cook_time_minutes": 25,
    "servings": 2,
    "nutrition": {"calories": calories, "protein": 42, "carbs": 12, "fat": 18},
  }
  recipe.update(overrides)
  return recipe


def chunk_index_from_prompt(prompt: str, max_chunks: int = 200) -> int:
  """Recover the chunk index from the diversity seed rendered in a batch prompt."""
  match = _SEED_RE.search(prompt)
  assert match is not None, prompt
  seed = int(match.group(1))
  for index in range(max_chunks):
    if diversity_seed(index)[0] == seed:
      return index
  raise AssertionError(f"Unknown diversity seed {seed}")


class FakeContentModel:
  """Content model that answers each chunk with generated recipes, or a scripted failure."""

  def __init__(self, *, failing_chunks: set[int] | None = None, error_factory: Callable[[], Exception] | None = None, drafts_for: Callable[[int, int], list[Any]] | None = None, delay: float = 0.0) -> None:
    self.name = "fake-content"
    self.failing_chunks = failing_chunks or set()
    self.error_factory = error_factory or (lambda: TransientExternalError("upstream 503", status_code=503))
    self.drafts_for = drafts_for or (lambda index, size: [make_recipe(f"Recipe {index}-{position}") for position in range(size)])
    self.delay = delay
    self.calls: Counter[int] = Counter()
    self.configured = True

  def ensure_configured(self) -> None:
    if not self.configured:
      raise ConfigurationError("content model missing credentials")

  async def generate_structured(self, prompt: str, schema: dict[str, Any]) -> dict[str, Any]:
    index = chunk_index_from_prompt(prompt)
    self.calls[index] += 1
    if self.delay:
      await asyncio.sleep(self.delay)
    if index in self.failing_chunks:
      raise self.error_factory()
    match = _SIZE_RE.search(prompt)
    assert match is not None
    return {"recipes": self.drafts_for(index, int(match.group(1)))}


class FakeImageModel:
  """Image model that fails for prompts naming selected recipes."""

  def __init__(self, *, failing_names: set[str] | None = None, fail_times: int | None = None, error_factory: Callable[[], Exception] | None = None, delay: float = 0.0) -> None:
    self.name = "fake-image"
    self.failing_names = failing_names or set()
    self.fail_times = fail_times
    self.error_factory = error_factory or (lambda: TransientExternalError("image backend 500", status_code=500))
    self.delay = delay
    self.prompts: list[str] = []
    self.failures: Counter[str] = Counter()
    self.configured = True

  def ensure_configured(self) -> None:
    if not self.configured:
      raise ConfigurationError("image model missing credentials")

  async def generate_image(self, prompt: str) -> TransientAsset:
    self.prompts.append(prompt)
    if self.delay:
      await asyncio.sleep(self.delay)
    for name in self.failing_names:
      if name in prompt and (self.fail_times is None or self.failures[name] < self.fail_times):
        self.failures[name] += 1
        raise self.error_factory()
    return TransientAsset(mime_type="image/png", data=b"fake-png-bytes")


@pytest.fixture
def settings() -> Settings:
  return Settings().with_overrides(
    chunk_size=5,
    chunk_concurrency=2,
    image_concurrency=2,
    content_max_retries=2,
    image_max_attempts=3,
    persist_max_attempts=3,
    backoff_base_seconds=0.0,
    backoff_max_seconds=0.0,
    backoff_jitter=False,
    content_timeout_seconds=2.0,
    image_timeout_seconds=2.0,
    upload_timeout_seconds=2.0,
    job_soft_deadline_seconds=0.0,
  )


@pytest.fixture
def item_repository() -> InMemoryItemRepository:
  return InMemoryItemRepository()


@pytest.fixture
def asset_store() -> InMemoryAssetStore:
  return InMemoryAssetStore()


@pytest.fixture
def uniqueness_cache() -> InMemoryUniquenessCache:
  return InMemoryUniquenessCache()


@pytest.fixture
def tracker(settings: Settings) -> ProgressTracker:
  return ProgressTracker(chunk_concurrency=settings.chunk_concurrency, image_concurrency=settings.image_concurrency, eta_window=settings.eta_window)
