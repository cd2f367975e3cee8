"""Prompt helpers shared by agents."""

from __future__ import annotations

import json
from typing import Any

from recipe_engine.ai.pipeline.contracts import GenerationConstraints, RecipeDraft
from recipe_engine.jobs.models import ChunkSpec

# Rotating themes spread successive chunks across cuisines and techniques.
_CUISINE_THEMES: tuple[str, ...] = (
  "Mediterranean",
  "East Asian",
  "Latin American",
  "Middle Eastern",
  "South Asian",
  "Nordic",
  "West African",
  "Modern American",
)
_TECHNIQUE_THEMES: tuple[str, ...] = ("one-pan", "sheet-pan roasting", "slow-simmered", "no-cook", "grilled", "batch-prep friendly", "stir-fried")

_SEED_MULTIPLIER = 2654435761
_SEED_MODULUS = 2**32


def diversity_seed(chunk_index: int) -> tuple[int, str, str]:
  """Return a deterministic (seed, cuisine, technique) triple for a chunk."""
  seed = (chunk_index * _SEED_MULTIPLIER + 1) % _SEED_MODULUS
  cuisine = _CUISINE_THEMES[chunk_index % len(_CUISINE_THEMES)]
  technique = _TECHNIQUE_THEMES[(chunk_index // len(_CUISINE_THEMES) + chunk_index) % len(_TECHNIQUE_THEMES)]
  return seed, cuisine, technique


def _stringify_constraints(payload: dict[str, Any]) -> str:
  """Serialize constraints to keep prompts deterministic and explicit."""
  if not payload:
    return "{}"

  return json.dumps(payload, ensure_ascii=True, sort_keys=True)


def render_batch_prompt(spec: ChunkSpec, constraints: GenerationConstraints) -> str:
  """Build the content prompt for one chunk."""
  seed, cuisine, technique = diversity_seed(spec.index)
  meal_types = ", ".join(constraints.meal_types) if constraints.meal_types else "any meal type"
  lines = [
    f"Generate exactly {spec.size} distinct, practical recipes as JSON under the key 'recipes'.",
    f"Meal types: {meal_types}.",
    f"Constraints: {_stringify_constraints(constraints.prompt_payload())}",
    f"Diversity theme: lean {cuisine} with {technique} techniques. Diversity seed: {seed}.",
    "Every recipe needs a unique name, a short description, ingredient amounts with units, step-by-step instructions,",
    "prep and cook time in minutes, servings, and estimated nutrition per serving (calories, protein, carbs, fat in grams).",
    "Tag each recipe with meal_types, dietary_tags and main_ingredient_tags.",
  ]
  if constraints.focus_ingredient:
    lines.append(f"Feature {constraints.focus_ingredient} as a main ingredient in every recipe.")
  if constraints.preferences:
    lines.append(f"Additional preferences: {constraints.preferences}")
  return "\n".join(lines)


def render_image_prompt(draft: RecipeDraft, *, variation_token: str | None = None) -> str:
  """Build the image prompt for a persisted recipe."""
  meal_type = draft.meal_types[0] if draft.meal_types else "meal"
  ingredients = ", ".join(draft.main_ingredient_tags[:4]) or ", ".join(ingredient.name for ingredient in draft.ingredients[:4])
  prompt = (
    f"Professional food photography of {draft.name}, a {meal_type} dish. "
    f"{draft.description[:200]} "
    f"Key ingredients: {ingredients}. "
    "Natural light, overhead angle, plated on a neutral background, no text, no logos, no watermarks."
  )
  if variation_token:
    prompt += f" Styling variation {variation_token}: vary plating, props and camera angle."
  return prompt
