from __future__ import annotations

import io
import logging

from PIL import Image

from recipe_engine.ai.agents.prompts import render_image_prompt
from recipe_engine.ai.providers.base import ImageModel, TransientAsset
from recipe_engine.jobs.models import ImageTask

logger = logging.getLogger(__name__)

WEBP_MIME_TYPE = "image/webp"


class IllustrationAgent:
  """Generate a recipe photo for an image task."""

  name = "IllustrationAgent"

  def __init__(self, model: ImageModel) -> None:
    self._model = model

  def build_prompt(self, task: ImageTask) -> str:
    return render_image_prompt(task.draft, variation_token=task.variation_token)

  async def run(self, task: ImageTask) -> TransientAsset:
    """Call the image model once; retries are owned by the worker pool."""
    prompt = self.build_prompt(task)
    logger.debug("Illustration prompt item_id=%s token=%s prompt=%s", task.item_id, task.variation_token, prompt)
    return await self._model.generate_image(prompt)


def convert_to_webp(image_bytes: bytes) -> bytes:
  """Convert provider image bytes into a WebP payload."""
  image = Image.open(io.BytesIO(image_bytes))
  # Convert alpha-free and alpha images consistently to avoid mode-related encoder errors.
  converted = image.convert("RGBA") if image.mode not in {"RGB", "RGBA"} else image
  output = io.BytesIO()
  converted.save(output, format="WEBP", quality=88, method=6)
  return output.getvalue()
