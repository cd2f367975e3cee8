"""Chunk planning for batch jobs."""

from __future__ import annotations

from recipe_engine.core.exceptions import ConfigurationError
from recipe_engine.jobs.models import ChunkSpec

DEFAULT_CHUNK_SIZE = 5
DEFAULT_MAX_COUNT = 500


def _require_int(name: str, value: object) -> int:
  # bool is an int subclass; a flag is never a count.
  if isinstance(value, bool) or not isinstance(value, int):
    raise ConfigurationError(f"{name} must be an integer, got {type(value).__name__}.")
  return value


def plan_chunks(requested_count: int, chunk_size: int = DEFAULT_CHUNK_SIZE, max_count: int = DEFAULT_MAX_COUNT) -> list[ChunkSpec]:
  """
  Split a requested recipe count into ordered chunks.

  Every chunk but the last holds `chunk_size` recipes; the last holds the
  remainder, or a full chunk when the count divides evenly. The result is a
  pure function of the arguments.

  Raises:
    ConfigurationError: when the count is below 1 or above `max_count`, or the chunk size is below 1.
  """
  requested_count = _require_int("requested_count", requested_count)
  chunk_size = _require_int("chunk_size", chunk_size)
  max_count = _require_int("max_count", max_count)

  if chunk_size < 1:
    raise ConfigurationError(f"chunk_size must be at least 1, got {chunk_size}.")
  if requested_count < 1:
    raise ConfigurationError(f"requested_count must be at least 1, got {requested_count}.")
  if requested_count > max_count:
    raise ConfigurationError(f"requested_count {requested_count} exceeds the maximum of {max_count}.")

  full_chunks, remainder = divmod(requested_count, chunk_size)
  sizes = [chunk_size] * full_chunks
  if remainder:
    sizes.append(remainder)
  return [ChunkSpec(index=index, size=size) for index, size in enumerate(sizes)]
