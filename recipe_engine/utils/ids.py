"""Identifier utilities."""

from __future__ import annotations

import secrets
import string
import uuid


def generate_item_id() -> str:
  """Return a new globally unique recipe identifier."""
  return str(uuid.uuid4())


def generate_job_id() -> str:
  """Return a new job identifier."""
  return str(uuid.uuid4())


def generate_nonce(size: int = 16) -> str:
  """Return a short random token mixed into content hashes."""
  alphabet = string.ascii_lowercase + string.digits
  return "".join(secrets.choice(alphabet) for _ in range(size))
