"""Agent implementations."""

from recipe_engine.ai.agents.illustration import IllustrationAgent
from recipe_engine.ai.agents.recipe_batch import RecipeBatchAgent

__all__ = ["IllustrationAgent", "RecipeBatchAgent"]
