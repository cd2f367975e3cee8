"""AI provider clients."""

from recipe_engine.ai.providers.base import ContentModel, ImageModel, TransientAsset
from recipe_engine.ai.providers.gemini import GeminiModel

__all__ = ["ContentModel", "GeminiModel", "ImageModel", "TransientAsset"]
