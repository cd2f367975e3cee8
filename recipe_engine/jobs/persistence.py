"""Durable persistence of validated drafts."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from recipe_engine.ai.backoff import classify_failure, retry_with_backoff
from recipe_engine.ai.pipeline.contracts import RecipeDraft
from recipe_engine.config import Settings
from recipe_engine.core.exceptions import RetryExhaustedError
from recipe_engine.jobs.models import ChunkState, ErrorEntry, GeneratedItem, GenerationJob, ImageStatus
from recipe_engine.storage.items_repo import ItemRepository
from recipe_engine.utils.ids import generate_item_id

logger = logging.getLogger(__name__)


@dataclass
class PersistResult:
  items: list[GeneratedItem] = field(default_factory=list)
  dropped: list[ErrorEntry] = field(default_factory=list)


class PersistenceGateway:
  """Write accepted drafts to the item repository with placeholder images."""

  def __init__(self, item_repository: ItemRepository, settings: Settings) -> None:
    self._repository = item_repository
    self._settings = settings

  def build_item(self, job: GenerationJob, chunk: ChunkState, draft: RecipeDraft) -> GeneratedItem:
    category = draft.category
    return GeneratedItem(
      id=generate_item_id(),
      draft=draft,
      category=category,
      image_status=ImageStatus.PENDING,
      image_ref=self._settings.placeholder_for(category),
      source_chunk=chunk.index,
      job_id=job.id,
    )

  async def persist(self, job: GenerationJob, chunk: ChunkState, drafts: list[RecipeDraft], *, on_persisted: Callable[[GeneratedItem], None] | None = None) -> PersistResult:
    """
    Save each draft independently.

    A write that keeps failing drops only that draft; the returned result
    lists the saved items and one error entry per dropped draft.
    """
    result = PersistResult()
    for draft in drafts:
      item = self.build_item(job, chunk, draft)
      try:
        await retry_with_backoff(
          lambda item=item: self._repository.save(item),
          operation_name=f"job_{job.id}_chunk_{chunk.index}_persist",
          max_attempts=self._settings.persist_max_attempts,
          base_delay=self._settings.backoff_base_seconds,
          max_delay=self._settings.backoff_max_seconds,
          jitter=self._settings.backoff_jitter,
        )
      except RetryExhaustedError as exc:
        logger.error("Item dropped after persistence retries job_id=%s chunk=%d recipe=%s error=%s", job.id, chunk.index, draft.name, exc.last_error)
        result.dropped.append(ErrorEntry(stage="persist", category=exc.category, message=f"{draft.name}: {exc.last_error}", chunk_index=chunk.index, attempts=exc.attempts))
        continue
      except Exception as exc:  # noqa: BLE001
        category = classify_failure(exc).category
        logger.error("Item dropped job_id=%s chunk=%d recipe=%s category=%s", job.id, chunk.index, draft.name, category, exc_info=True)
        result.dropped.append(ErrorEntry(stage="persist", category=category, message=f"{draft.name}: {exc}", chunk_index=chunk.index, attempts=1))
        continue

      result.items.append(item)
      if on_persisted is not None:
        on_persisted(item)
      logger.debug("Item persisted job_id=%s chunk=%d item_id=%s category=%s", job.id, chunk.index, item.id, item.category)
    return result
