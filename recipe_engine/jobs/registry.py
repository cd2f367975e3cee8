"""Job registry interfaces."""

from __future__ import annotations

import asyncio
from typing import Protocol

from recipe_engine.jobs.models import GenerationJob


class JobRegistry(Protocol):
  """Registry contract for job state; durability is up to the implementation."""

  async def create(self, job: GenerationJob) -> None:
    """Persist an initial job record."""

  async def save(self, job: GenerationJob) -> None:
    """Persist the job after a state transition."""

  async def get(self, job_id: str) -> GenerationJob | None:
    """Fetch a job by identifier."""

  async def list_ids(self) -> list[str]:
    """Return known job identifiers, oldest first."""


class InMemoryJobRegistry:
  """Keep jobs for the life of the process."""

  def __init__(self) -> None:
    self._lock = asyncio.Lock()
    self._jobs: dict[str, GenerationJob] = {}

  async def create(self, job: GenerationJob) -> None:
    async with self._lock:
      if job.id in self._jobs:
        raise ValueError(f"Job {job.id} already exists.")
      self._jobs[job.id] = job

  async def save(self, job: GenerationJob) -> None:
    async with self._lock:
      self._jobs[job.id] = job

  async def get(self, job_id: str) -> GenerationJob | None:
    async with self._lock:
      return self._jobs.get(job_id)

  async def list_ids(self) -> list[str]:
    async with self._lock:
      return [job.id for job in sorted(self._jobs.values(), key=lambda job: job.created_at)]
