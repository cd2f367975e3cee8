from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from recipe_engine.ai.agents.prompts import render_batch_prompt
from recipe_engine.ai.backoff import ContinueCheck, RetryHook, retry_with_backoff
from recipe_engine.ai.pipeline.contracts import RECIPE_BATCH_SCHEMA, GenerationConstraints
from recipe_engine.ai.providers.base import ContentModel
from recipe_engine.config import Settings
from recipe_engine.core.exceptions import TransientExternalError
from recipe_engine.jobs.models import ChunkSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchGenerationResult:
  chunk_index: int
  raw_drafts: list[Any]
  attempts: int


class RecipeBatchAgent:
  """Request one chunk of recipes from the content model."""

  name = "RecipeBatchAgent"

  def __init__(self, model: ContentModel, settings: Settings) -> None:
    self._model = model
    self._settings = settings

  async def generate(self, spec: ChunkSpec, constraints: GenerationConstraints, job_id: str, *, on_retry: RetryHook | None = None, should_continue: ContinueCheck | None = None) -> BatchGenerationResult:
    """
    Generate raw recipe drafts for a chunk.

    Each call is bounded by the content timeout; timeouts and transient
    provider errors are retried with backoff up to the configured budget.
    Raises RetryExhaustedError once the budget is spent and
    OperationCancelledError when `should_continue` turns False between attempts.
    """
    prompt = render_batch_prompt(spec, constraints)
    attempts = 0

    async def _attempt() -> list[Any]:
      nonlocal attempts
      attempts += 1
      payload = await self._model.generate_structured(prompt, RECIPE_BATCH_SCHEMA)
      return _extract_recipes(payload)

    logger.info("Generating chunk job_id=%s chunk=%d size=%d model=%s", job_id, spec.index, spec.size, getattr(self._model, "name", "unknown"))
    raw_drafts = await retry_with_backoff(
      _attempt,
      operation_name=f"job_{job_id}_chunk_{spec.index}_generate",
      max_attempts=self._settings.content_max_retries + 1,
      base_delay=self._settings.backoff_base_seconds,
      max_delay=self._settings.backoff_max_seconds,
      timeout=self._settings.content_timeout_seconds,
      jitter=self._settings.backoff_jitter,
      on_retry=on_retry,
      should_continue=should_continue,
    )

    if len(raw_drafts) > spec.size:
      # Extra drafts would overshoot the requested total.
      logger.info("Trimming surplus drafts job_id=%s chunk=%d returned=%d size=%d", job_id, spec.index, len(raw_drafts), spec.size)
      raw_drafts = raw_drafts[: spec.size]
    elif len(raw_drafts) < spec.size:
      logger.warning("Chunk returned fewer drafts than requested job_id=%s chunk=%d returned=%d size=%d", job_id, spec.index, len(raw_drafts), spec.size)
    return BatchGenerationResult(chunk_index=spec.index, raw_drafts=raw_drafts, attempts=attempts)


def _extract_recipes(payload: Any) -> list[Any]:
  """Pull the recipes array out of a structured response."""
  if not isinstance(payload, dict):
    raise TransientExternalError(f"Content model returned {type(payload).__name__} instead of an object.")
  recipes = payload.get("recipes")
  if not isinstance(recipes, list):
    raise TransientExternalError("Content model response is missing the 'recipes' array.")
  return recipes
