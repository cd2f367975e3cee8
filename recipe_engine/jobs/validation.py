"""Structural and numeric validation of generated recipe drafts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from recipe_engine.ai.pipeline.contracts import GenerationConstraints, NutritionRange, RecipeDraft, RejectedDraft

logger = logging.getLogger(__name__)

MISSING_FIELDS = "Missing required fields"
INVALID_NUTRITION = "Invalid nutritional information"
INVALID_INGREDIENTS = "Invalid ingredients"


@dataclass
class ChunkValidationReport:
  """Outcome of validating one chunk's raw drafts."""

  chunk_index: int
  accepted: list[RecipeDraft] = field(default_factory=list)
  rejected: list[RejectedDraft] = field(default_factory=list)

  @property
  def total(self) -> int:
    return len(self.accepted) + len(self.rejected)

  @property
  def success_ratio(self) -> float:
    if self.total == 0:
      return 0.0
    return round(len(self.accepted) / self.total, 4)


def _is_blank(value: Any) -> bool:
  return not isinstance(value, str) or value.strip() == ""


def _structural_reasons(raw: dict[str, Any]) -> list[str]:
  """Check presence and shape before handing the draft to pydantic."""
  reasons: list[str] = []
  missing = [name for name in ("name", "description", "instructions") if _is_blank(raw.get(name))]
  if missing or not raw.get("nutrition") or not raw.get("ingredients"):
    absent = missing + [name for name in ("ingredients", "nutrition") if not raw.get(name)]
    reasons.append(f"{MISSING_FIELDS}: {', '.join(absent)}")

  ingredients = raw.get("ingredients")
  if ingredients and not isinstance(ingredients, list):
    reasons.append(f"{INVALID_INGREDIENTS}: expected a list")
  elif ingredients:
    for position, ingredient in enumerate(ingredients):
      if not isinstance(ingredient, dict) or _is_blank(ingredient.get("name")):
        reasons.append(f"{INVALID_INGREDIENTS}: ingredient {position} has no name")
        continue
      amount = ingredient.get("amount")
      if isinstance(amount, bool) or not isinstance(amount, int | float) or amount <= 0:
        reasons.append(f"{INVALID_INGREDIENTS}: '{ingredient.get('name')}' needs a positive amount")
  return reasons


def _range_reason(label: str, value: float, bounds: NutritionRange | None) -> str | None:
  if bounds is None or bounds.contains(value):
    return None
  return f"{INVALID_NUTRITION}: {label} {value:g} outside [{bounds.min if bounds.min is not None else '-'}, {bounds.max if bounds.max is not None else '-'}]"


def _numeric_reasons(draft: RecipeDraft, constraints: GenerationConstraints) -> list[str]:
  reasons: list[str] = []
  nutrition = draft.nutrition
  figures = {"calories": nutrition.calories, "protein": nutrition.protein, "carbs": nutrition.carbs, "fat": nutrition.fat}
  negative = [label for label, value in figures.items() if value < 0]
  if negative:
    reasons.append(f"{INVALID_NUTRITION}: negative {', '.join(negative)}")

  range_checks = (
    ("calories", nutrition.calories, constraints.calories),
    ("protein", nutrition.protein, constraints.protein_grams),
    ("carbs", nutrition.carbs, constraints.carbs_grams),
    ("fat", nutrition.fat, constraints.fat_grams),
  )
  for label, value, bounds in range_checks:
    reason = _range_reason(label, value, bounds)
    if reason:
      reasons.append(reason)

  if constraints.max_ingredients is not None and len(draft.ingredients) > constraints.max_ingredients:
    reasons.append(f"{INVALID_INGREDIENTS}: {len(draft.ingredients)} ingredients exceeds limit of {constraints.max_ingredients}")
  if constraints.max_prep_time_minutes is not None and draft.prep_time_minutes > constraints.max_prep_time_minutes:
    reasons.append(f"Prep time {draft.prep_time_minutes} min exceeds limit of {constraints.max_prep_time_minutes} min")
  return reasons


def validate_draft(raw: Any, constraints: GenerationConstraints) -> tuple[RecipeDraft | None, list[str]]:
  """Validate one raw draft; returns the parsed draft or the rejection reasons."""
  if not isinstance(raw, dict):
    return None, [f"{MISSING_FIELDS}: draft is {type(raw).__name__}, not an object"]

  reasons = _structural_reasons(raw)
  if reasons:
    return None, reasons

  try:
    draft = RecipeDraft.model_validate(raw)
  except ValidationError as exc:
    return None, [f"Invalid field {'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()]

  reasons = _numeric_reasons(draft, constraints)
  if reasons:
    return None, reasons
  return draft, []


def validate_drafts(raw_drafts: list[Any], constraints: GenerationConstraints, chunk_index: int) -> ChunkValidationReport:
  """
  Partition raw drafts into accepted and rejected.

  Rejections are logged with their reasons and never trigger a retry of the chunk.
  """
  report = ChunkValidationReport(chunk_index=chunk_index)
  for position, raw in enumerate(raw_drafts):
    draft, reasons = validate_draft(raw, constraints)
    if draft is not None:
      report.accepted.append(draft)
      continue
    name = raw.get("name") if isinstance(raw, dict) and isinstance(raw.get("name"), str) else None
    report.rejected.append(RejectedDraft(chunk_index=chunk_index, position=position, name=name, reasons=reasons))
    logger.warning("Draft rejected chunk=%d position=%d name=%s reasons=%s", chunk_index, position, name, "; ".join(reasons))

  logger.info("Chunk validated chunk=%d accepted=%d rejected=%d success_ratio=%.2f", chunk_index, len(report.accepted), len(report.rejected), report.success_ratio)
  return report
