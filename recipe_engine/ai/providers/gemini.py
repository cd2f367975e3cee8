"""Gemini provider implementation using the google-genai SDK."""

from __future__ import annotations

import json
import logging
from typing import Any

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from recipe_engine.ai.providers.base import TransientAsset
from recipe_engine.core.exceptions import ConfigurationError, ProviderRequestError, TransientExternalError

logger = logging.getLogger(__name__)

_JSON_FENCE = "```"


def strip_json_fences(text: str) -> str:
  """Remove markdown code fences that models sometimes wrap around JSON."""
  cleaned = text.strip()
  if not cleaned.startswith(_JSON_FENCE):
    return cleaned
  cleaned = cleaned[len(_JSON_FENCE) :]
  # Drop the language tag on the opening fence (```json).
  if "\n" in cleaned:
    first_line, remainder = cleaned.split("\n", 1)
    if first_line.strip().isalpha():
      cleaned = remainder
  if cleaned.rstrip().endswith(_JSON_FENCE):
    cleaned = cleaned.rstrip()[: -len(_JSON_FENCE)]
  return cleaned.strip()


def map_api_error(exc: genai_errors.APIError, *, operation: str) -> Exception:
  """Translate an SDK error into the pipeline error taxonomy."""
  code = getattr(exc, "code", None)
  message = f"Gemini {operation} failed ({code}): {getattr(exc, 'message', None) or exc}"
  if code in (401, 403):
    return ConfigurationError(message)
  if code == 429:
    return TransientExternalError(message, rate_limited=True, status_code=code)
  if code is not None and code >= 500:
    return TransientExternalError(message, status_code=code)
  if code == 404:
    # Unknown model names surface as 404 and never heal on retry.
    return ConfigurationError(message)
  if code == 408:
    return TransientExternalError(message, status_code=code)
  if code is not None and 400 <= code < 500:
    return ProviderRequestError(message, status_code=code)
  return TransientExternalError(message, status_code=code)


class GeminiModel:
  """Gemini client serving both structured recipe content and image synthesis."""

  def __init__(self, name: str, api_key: str | None = None, *, client: Any | None = None) -> None:
    self.name: str = name
    self._api_key = api_key
    self._client = client

  def ensure_configured(self) -> None:
    """Fail fast when the model cannot be reached with the given credentials."""
    if self._client is not None:
      return
    if not self._api_key:
      raise ConfigurationError(f"GEMINI_API_KEY is required for model '{self.name}'.")
    if not self.name:
      raise ConfigurationError("Gemini model name must not be empty.")

  def _get_client(self) -> Any:
    if self._client is None:
      self.ensure_configured()
      self._client = genai.Client(api_key=self._api_key)
    return self._client

  async def generate_structured(self, prompt: str, schema: dict[str, Any]) -> dict[str, Any]:
    """Generate structured JSON output using Gemini's JSON mode."""
    client = self._get_client()
    try:
      # Use the async client to avoid blocking the asyncio event loop.
      response = await client.aio.models.generate_content(model=self.name, contents=prompt, config={"response_mime_type": "application/json", "response_schema": schema})
    except genai_errors.APIError as exc:
      raise map_api_error(exc, operation="generate_content") from exc

    if response.usage_metadata:
      logger.info(
        "Gemini usage model=%s prompt_tokens=%s completion_tokens=%s total_tokens=%s",
        self.name,
        response.usage_metadata.prompt_token_count,
        response.usage_metadata.candidates_token_count,
        response.usage_metadata.total_token_count,
      )

    text = response.text or ""
    logger.debug("Gemini structured response (raw):\n%s", text)
    try:
      parsed = json.loads(strip_json_fences(text))
    except json.JSONDecodeError as exc:
      # Malformed output is retried like any other transient failure.
      raise TransientExternalError(f"Gemini returned invalid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
      raise TransientExternalError(f"Gemini returned {type(parsed).__name__} instead of a JSON object.")
    return parsed

  async def generate_image(self, prompt: str) -> TransientAsset:
    """Generate a single image and return its bytes as a transient asset."""
    client = self._get_client()
    try:
      response = await client.aio.models.generate_images(model=self.name, prompt=prompt, config=types.GenerateImagesConfig(number_of_images=1))
    except genai_errors.APIError as exc:
      raise map_api_error(exc, operation="generate_images") from exc

    generated = list(response.generated_images or [])
    if not generated or generated[0].image is None or not generated[0].image.image_bytes:
      # Safety filters drop images silently; treat as a transient miss.
      reason = getattr(generated[0], "rai_filtered_reason", None) if generated else None
      raise TransientExternalError(f"Gemini returned no image data (reason={reason or 'empty'}).")

    image = generated[0].image
    return TransientAsset(mime_type=image.mime_type or "image/png", data=image.image_bytes)
