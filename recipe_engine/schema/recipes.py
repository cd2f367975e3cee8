from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from recipe_engine.core.database import Base


class GeneratedRecipe(Base):
  """Persist generated recipe content and its image resolution state."""

  __tablename__ = "generated_recipes"

  id: Mapped[str] = mapped_column(String(36), primary_key=True)
  job_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
  source_chunk: Mapped[int] = mapped_column(Integer, nullable=False)
  name: Mapped[str] = mapped_column(Text, nullable=False)
  category: Mapped[str] = mapped_column(String, nullable=False, index=True)
  content: Mapped[dict] = mapped_column(JSONB, nullable=False)
  image_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
  image_ref: Mapped[str] = mapped_column(Text, nullable=False)
  image_content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
  image_quality_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
