"""Provider contracts for content and image generation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class TransientAsset:
  """Short-lived image returned by an image model: raw bytes or a URL that expires."""

  mime_type: str = "image/png"
  data: bytes | None = None
  url: str | None = None

  def __post_init__(self) -> None:
    if self.data is None and not self.url:
      raise ValueError("TransientAsset requires either data or url.")


class ContentModel(Protocol):
  """Structured text generation seam."""

  name: str

  def ensure_configured(self) -> None:
    """Raise ConfigurationError when credentials or model selection are unusable."""

  async def generate_structured(self, prompt: str, schema: dict[str, Any]) -> dict[str, Any]:
    """Return the parsed JSON object produced for the prompt."""


class ImageModel(Protocol):
  """Image synthesis seam."""

  name: str

  def ensure_configured(self) -> None:
    """Raise ConfigurationError when credentials or model selection are unusable."""

  async def generate_image(self, prompt: str) -> TransientAsset:
    """Return a transient asset for the prompt."""
