"""Postgres-backed repository for generated recipes using SQLAlchemy."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from recipe_engine.core.database import get_session_factory
from recipe_engine.core.exceptions import StorageError
from recipe_engine.jobs.models import GeneratedItem
from recipe_engine.schema.recipes import GeneratedRecipe
from recipe_engine.storage.items_repo import normalize_item_patch


class PostgresItemRepository:
  """Persist generated recipes to Postgres."""

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def save(self, item: GeneratedItem) -> str:
    row = GeneratedRecipe(
      id=item.id,
      job_id=item.job_id,
      source_chunk=item.source_chunk,
      name=item.draft.name,
      category=item.category,
      content=item.draft.model_dump(mode="json"),
      image_status=item.image_status.value,
      image_ref=item.image_ref,
      created_at=item.created_at,
    )
    try:
      async with self._session_factory() as session:
        session.add(row)
        await session.commit()
    except SQLAlchemyError as exc:
      raise StorageError(f"Failed to save recipe {item.id}: {exc}") from exc
    return item.id

  async def update(self, item_id: str, **patch: Any) -> None:
    values = normalize_item_patch(patch)
    try:
      async with self._session_factory() as session:
        result = await session.execute(update(GeneratedRecipe).where(GeneratedRecipe.id == item_id).values(**values))
        await session.commit()
    except SQLAlchemyError as exc:
      raise StorageError(f"Failed to update recipe {item_id}: {exc}") from exc
    if result.rowcount == 0:
      raise StorageError(f"Item {item_id} does not exist.")

  async def get(self, item_id: str) -> dict[str, Any] | None:
    try:
      async with self._session_factory() as session:
        row = await session.scalar(select(GeneratedRecipe).where(GeneratedRecipe.id == item_id))
    except SQLAlchemyError as exc:
      raise StorageError(f"Failed to load recipe {item_id}: {exc}") from exc
    if row is None:
      return None
    return {
      "id": row.id,
      "job_id": row.job_id,
      "source_chunk": row.source_chunk,
      "category": row.category,
      "image_status": row.image_status,
      "image_ref": row.image_ref,
      "image_content_hash": row.image_content_hash,
      "image_quality_score": row.image_quality_score,
      "content": row.content,
      "created_at": row.created_at,
    }
