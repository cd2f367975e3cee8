"""Content hashing and per-job uniqueness claims for image tasks."""

from __future__ import annotations

import hashlib
import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from recipe_engine.ai.pipeline.contracts import RecipeDraft
from recipe_engine.utils.ids import generate_nonce

logger = logging.getLogger(__name__)

DESCRIPTION_EXCERPT_CHARS = 200
DEFAULT_MAX_VARIATIONS = 8


def _normalize_text(value: str) -> str:
  return " ".join(value.lower().split())


def _normalize_tags(values: list[str]) -> list[str]:
  return sorted({_normalize_text(value) for value in values if value and value.strip()})


@dataclass(frozen=True)
class HashClaim:
  """A hash that has been claimed for one job, plus the inputs that produced it."""

  content_hash: str
  nonce: str
  variation_token: str | None
  collisions: int


class UniquenessCache(Protocol):
  """Atomic set of content hashes, scoped per job."""

  async def claim(self, job_id: str, content_hash: str) -> bool:
    """Return True when the hash was unclaimed for the job and is now taken."""

  async def release_job(self, job_id: str) -> None:
    """Forget every hash claimed for a job."""

  def stats(self) -> dict[str, int]:
    """Return cache counters."""


class InMemoryUniquenessCache:
  """Process-local uniqueness cache guarded by a lock."""

  def __init__(self) -> None:
    self._lock = threading.Lock()
    self._claims: dict[str, set[str]] = {}
    self._collisions = 0

  async def claim(self, job_id: str, content_hash: str) -> bool:
    with self._lock:
      claimed = self._claims.setdefault(job_id, set())
      if content_hash in claimed:
        self._collisions += 1
        return False
      claimed.add(content_hash)
      return True

  async def release_job(self, job_id: str) -> None:
    with self._lock:
      self._claims.pop(job_id, None)

  def claimed_for(self, job_id: str) -> frozenset[str]:
    with self._lock:
      return frozenset(self._claims.get(job_id, set()))

  def stats(self) -> dict[str, int]:
    with self._lock:
      return {"jobs": len(self._claims), "unique_hashes": sum(len(hashes) for hashes in self._claims.values()), "collisions": self._collisions}


class ContentHasher:
  """Derive image identity hashes from recipe content and a per-task nonce."""

  def __init__(self, *, nonce_factory: Callable[[], str] = generate_nonce, max_variations: int = DEFAULT_MAX_VARIATIONS) -> None:
    self._nonce_factory = nonce_factory
    self._max_variations = max(max_variations, 1)

  def compute(self, draft: RecipeDraft, nonce: str, variation_token: str | None = None) -> str:
    """Return a sha256 hex digest over the normalized content fields and nonce."""
    parts = [
      _normalize_text(draft.name),
      _normalize_text(draft.description[:DESCRIPTION_EXCERPT_CHARS]),
      ",".join(_normalize_tags(draft.main_ingredient_tags)),
      ",".join(_normalize_tags(draft.meal_types)),
      ",".join(_normalize_tags(draft.dietary_tags)),
      nonce,
    ]
    if variation_token:
      parts.append(variation_token)
    digest = hashlib.sha256("\x1f".join(parts).encode("utf-8"))
    return digest.hexdigest()

  async def claim_unique(self, cache: UniquenessCache, job_id: str, draft: RecipeDraft) -> HashClaim:
    """
    Claim a hash that no other task of the job holds.

    Collisions are resolved by appending variation tokens v1, v2, ... and,
    once those are used up, by drawing a fresh nonce and starting over.
    """
    collisions = 0
    seen_nonces: set[str] = set()
    while True:
      nonce = self._nonce_factory()
      if nonce in seen_nonces:
        # A factory that repeats itself must not trap the loop.
        nonce = secrets.token_hex(16)
      seen_nonces.add(nonce)
      variation_token: str | None = None
      for variation in range(self._max_variations + 1):
        variation_token = f"v{variation}" if variation else None
        content_hash = self.compute(draft, nonce, variation_token)
        if await cache.claim(job_id, content_hash):
          if collisions:
            logger.info("Content hash collision resolved job_id=%s collisions=%d token=%s", job_id, collisions, variation_token)
          return HashClaim(content_hash=content_hash, nonce=nonce, variation_token=variation_token, collisions=collisions)
        collisions += 1
      logger.warning("Variation tokens exhausted job_id=%s recipe=%s; drawing a fresh nonce", job_id, draft.name)
