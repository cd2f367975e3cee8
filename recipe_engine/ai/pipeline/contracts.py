"""Shared data contracts for the recipe generation pipeline."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from recipe_engine.config import RECIPE_CATEGORIES

Difficulty = Literal["easy", "medium", "hard"]


class NutritionRange(BaseModel):
  """Inclusive bounds for one nutrition figure; either side may be open."""

  model_config = ConfigDict(extra="forbid")

  min: float | None = Field(default=None, ge=0)
  max: float | None = Field(default=None, ge=0)

  @model_validator(mode="after")
  def _check_order(self) -> NutritionRange:
    if self.min is not None and self.max is not None and self.min > self.max:
      raise ValueError("min must not exceed max.")
    return self

  def contains(self, value: float) -> bool:
    if self.min is not None and value < self.min:
      return False
    if self.max is not None and value > self.max:
      return False
    return True


class GenerationConstraints(BaseModel):
  """Caller-supplied constraints shared by every chunk of a job."""

  model_config = ConfigDict(extra="forbid")

  meal_types: list[str] = Field(default_factory=list, max_length=6)
  dietary_restrictions: list[str] = Field(default_factory=list, max_length=12)
  focus_ingredient: str | None = Field(default=None, max_length=80)
  difficulty: Difficulty | None = None
  fitness_goal: str | None = Field(default=None, max_length=120)
  preferences: str | None = Field(default=None, max_length=500)
  max_ingredients: int | None = Field(default=None, ge=1, le=50)
  max_prep_time_minutes: int | None = Field(default=None, ge=1, le=600)
  calories: NutritionRange | None = None
  protein_grams: NutritionRange | None = None
  carbs_grams: NutritionRange | None = None
  fat_grams: NutritionRange | None = None

  @model_validator(mode="after")
  def _normalize_meal_types(self) -> GenerationConstraints:
    normalized: list[str] = []
    for meal_type in self.meal_types:
      value = meal_type.strip().lower()
      if value and value not in normalized:
        normalized.append(value)
    self.meal_types = normalized
    return self

  def prompt_payload(self) -> dict[str, Any]:
    """Return only the populated constraints for prompt rendering."""
    return self.model_dump(exclude_none=True, exclude_defaults=True)


class Ingredient(BaseModel):
  """One ingredient line of a recipe."""

  name: str
  amount: float
  unit: str = ""


class Nutrition(BaseModel):
  """Estimated nutrition per serving."""

  calories: float
  protein: float
  carbs: float
  fat: float


class RecipeDraft(BaseModel):
  """Validated recipe content awaiting persistence."""

  name: str
  description: str
  meal_types: list[str] = Field(default_factory=list)
  dietary_tags: list[str] = Field(default_factory=list)
  main_ingredient_tags: list[str] = Field(default_factory=list)
  ingredients: list[Ingredient]
  instructions: str
  prep_time_minutes: int = Field(default=0, ge=0)
  cook_time_minutes: int = Field(default=0, ge=0)
  servings: int = Field(default=1, ge=1)
  nutrition: Nutrition

  @property
  def category(self) -> str:
    return category_for(self.meal_types)


class RejectedDraft(BaseModel):
  """A draft that failed validation, kept for error reporting."""

  chunk_index: int
  position: int
  name: str | None = None
  reasons: list[str]


def category_for(meal_types: list[str] | None) -> str:
  """Map the primary meal type onto a known content category."""
  for meal_type in meal_types or []:
    normalized = str(meal_type).strip().lower()
    if normalized in RECIPE_CATEGORIES:
      return normalized
  return "other"


# JSON schema handed to the content model; value checks live in recipe_engine.jobs.validation.
RECIPE_BATCH_SCHEMA: dict[str, Any] = {
  "type": "object",
  "properties": {
    "recipes": {
      "type": "array",
      "items": {
        "type": "object",
        "properties": {
          "name": {"type": "string"},
          "description": {"type": "string"},
          "meal_types": {"type": "array", "items": {"type": "string"}},
          "dietary_tags": {"type": "array", "items": {"type": "string"}},
          "main_ingredient_tags": {"type": "array", "items": {"type": "string"}},
          "ingredients": {
            "type": "array",
            "items": {"type": "object", "properties": {"name": {"type": "string"}, "amount": {"type": "number"}, "unit": {"type": "string"}}, "required": ["name", "amount"]},
          },
          "instructions": {"type": "string"},
          "prep_time_minutes": {"type": "integer"},
          "cook_time_minutes": {"type": "integer"},
          "servings": {"type": "integer"},
          "nutrition": {
            "type": "object",
            "properties": {"calories": {"type": "number"}, "protein": {"type": "number"}, "carbs": {"type": "number"}, "fat": {"type": "number"}},
            "required": ["calories", "protein", "carbs", "fat"],
          },
        },
        "required": ["name", "description", "meal_types", "ingredients", "instructions", "nutrition"],
      },
    }
  },
  "required": ["recipes"],
}
