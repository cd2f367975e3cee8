"""Job coordinator for chunked recipe generation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import ValidationError

from recipe_engine.ai.agents.recipe_batch import RecipeBatchAgent
from recipe_engine.ai.backoff import classify_failure
from recipe_engine.ai.pipeline.contracts import GenerationConstraints
from recipe_engine.ai.providers.base import ContentModel, ImageModel
from recipe_engine.config import Settings
from recipe_engine.core.exceptions import ConfigurationError, JobNotFoundError, OperationCancelledError, RetryExhaustedError
from recipe_engine.jobs.images import ImageEnrichmentPool
from recipe_engine.jobs.models import ChunkState, ChunkStatus, ErrorEntry, GeneratedItem, GenerationJob, ImageTask, JobStatus, ProgressSnapshot, advance_chunk, advance_job
from recipe_engine.jobs.persistence import PersistenceGateway
from recipe_engine.jobs.planner import plan_chunks
from recipe_engine.jobs.progress import ProgressSubscription, ProgressTracker
from recipe_engine.jobs.registry import InMemoryJobRegistry, JobRegistry
from recipe_engine.jobs.uniqueness import ContentHasher, InMemoryUniquenessCache, UniquenessCache
from recipe_engine.jobs.validation import validate_drafts
from recipe_engine.storage.asset_store import AssetStore
from recipe_engine.storage.items_repo import ItemRepository
from recipe_engine.utils.ids import generate_job_id

logger = logging.getLogger(__name__)


def _coerce_constraints(constraints: GenerationConstraints | dict[str, Any] | None) -> GenerationConstraints:
  if constraints is None:
    return GenerationConstraints()
  if isinstance(constraints, GenerationConstraints):
    return constraints
  try:
    return GenerationConstraints.model_validate(constraints)
  except ValidationError as exc:
    raise ConfigurationError(f"Invalid generation constraints: {exc}") from exc


class JobCoordinator:
  """
  Own job lifecycles from request to terminal state.

  Chunks run under a semaphore sized by `chunk_concurrency`; persisted items
  are handed to the image pool immediately, so a job's terminal status only
  reflects content generation. Images keep resolving afterwards and
  `wait(job_id, include_images=True)` covers both.
  """

  def __init__(
    self,
    settings: Settings,
    content_model: ContentModel,
    image_model: ImageModel,
    asset_store: AssetStore,
    item_repository: ItemRepository,
    job_registry: JobRegistry | None = None,
    uniqueness_cache: UniquenessCache | None = None,
    tracker: ProgressTracker | None = None,
    *,
    hasher: ContentHasher | None = None,
  ) -> None:
    self._settings = settings
    self._content_model = content_model
    self._image_model = image_model
    self._asset_store = asset_store
    self._item_repository = item_repository
    self._registry = job_registry or InMemoryJobRegistry()
    self._tracker = tracker or ProgressTracker(chunk_concurrency=settings.chunk_concurrency, image_concurrency=settings.image_concurrency, eta_window=settings.eta_window)
    self._agent = RecipeBatchAgent(content_model, settings)
    self._gateway = PersistenceGateway(item_repository, settings)
    self._pool = ImageEnrichmentPool(image_model, asset_store, item_repository, uniqueness_cache or InMemoryUniquenessCache(), self._tracker, settings, on_error=self._record_error, hasher=hasher)
    self._jobs: dict[str, GenerationJob] = {}
    self._runners: dict[str, asyncio.Task[None]] = {}
    self._deadlines: dict[str, asyncio.TimerHandle] = {}
    self._settlers: dict[str, asyncio.Task[None]] = {}

  @property
  def tracker(self) -> ProgressTracker:
    return self._tracker

  @property
  def image_pool(self) -> ImageEnrichmentPool:
    return self._pool

  def _check_collaborators(self) -> None:
    if self._asset_store is None:
      raise ConfigurationError("An asset store is required.")
    if self._item_repository is None:
      raise ConfigurationError("An item repository is required.")
    self._content_model.ensure_configured()
    self._image_model.ensure_configured()

  async def start(self, count: int, constraints: GenerationConstraints | dict[str, Any] | None = None) -> str:
    """
    Validate the request, create the job and start it in the background.

    Raises:
      ConfigurationError: for out-of-range counts, invalid constraints or
        unusable collaborators. No job exists when this is raised.
    """
    validated_constraints = _coerce_constraints(constraints)
    chunk_specs = plan_chunks(count, self._settings.chunk_size, self._settings.max_requested_count)
    self._check_collaborators()

    job = GenerationJob(id=generate_job_id(), requested_count=count, constraints=validated_constraints)
    await self._registry.create(job)
    self._jobs[job.id] = job
    self._tracker.register_job(job.id, count)

    self._transition(job, JobStatus.PLANNING)
    job.chunks = [ChunkState(spec=spec) for spec in chunk_specs]
    self._tracker.register_chunks(job.id, chunk_specs)

    self._pool.start()
    self._transition(job, JobStatus.RUNNING)
    await self._registry.save(job)

    runner = asyncio.create_task(self._run(job), name=f"job-{job.id}")
    self._runners[job.id] = runner
    if self._settings.job_soft_deadline_seconds:
      loop = asyncio.get_running_loop()
      self._deadlines[job.id] = loop.call_later(self._settings.job_soft_deadline_seconds, self._deadline_passed, job.id)
    self._settlers[job.id] = asyncio.create_task(self._settle(job.id, runner), name=f"job-{job.id}-settle")
    logger.info("Job started job_id=%s count=%d chunks=%d chunk_size=%d", job.id, count, len(chunk_specs), self._settings.chunk_size)
    return job.id

  def get_progress(self, job_id: str) -> ProgressSnapshot:
    if job_id not in self._jobs:
      raise JobNotFoundError(job_id)
    return self._tracker.snapshot(job_id)

  def subscribe(self, job_id: str) -> ProgressSubscription:
    if job_id not in self._jobs:
      raise JobNotFoundError(job_id)
    return self._tracker.subscribe(job_id)

  async def get_job(self, job_id: str) -> GenerationJob:
    job = self._jobs.get(job_id) or await self._registry.get(job_id)
    if job is None:
      raise JobNotFoundError(job_id)
    return job

  async def cancel(self, job_id: str) -> bool:
    """
    Request cancellation; returns False when the job already finished.

    No chunk is dispatched after this returns, and chunks waiting to retry
    stop before their next call. A call already in flight finishes within
    its timeout. Image tasks of the job resolve to fallback as workers
    reach them.
    """
    job = self._jobs.get(job_id)
    if job is None:
      raise JobNotFoundError(job_id)
    if job.is_terminal or job.cancel_requested:
      return False
    job.cancel_requested = True
    self._pool.cancel_job(job_id)
    logger.info("Job cancellation requested job_id=%s status=%s", job_id, job.status.value)
    return True

  async def wait(self, job_id: str, *, include_images: bool = True, timeout: float | None = None) -> GenerationJob:
    """Wait for the job's terminal state and, optionally, for its images."""
    job = await self.get_job(job_id)
    runner = self._runners.get(job_id)
    settler = self._settlers.get(job_id)

    async def _wait() -> None:
      if runner is not None:
        await asyncio.shield(runner)
      if not include_images:
        return
      if settler is not None:
        await asyncio.shield(settler)
      else:
        await self._pool.drain(job_id)

    if timeout is None:
      await _wait()
    else:
      await asyncio.wait_for(_wait(), timeout=timeout)
    return job

  async def shutdown(self, *, drain_images: bool = True) -> None:
    """Cancel unfinished jobs when not draining, wait for runners, then stop the image pool."""
    if not drain_images:
      for job_id, job in self._jobs.items():
        if not job.is_terminal:
          await self.cancel(job_id)
    runners = [runner for runner in self._runners.values() if not runner.done()]
    if runners:
      await asyncio.gather(*runners, return_exceptions=True)
    await self._pool.stop(drain=drain_images)
    settlers = [settler for settler in self._settlers.values() if not settler.done()]
    if settlers:
      await asyncio.gather(*settlers, return_exceptions=True)
    for handle in self._deadlines.values():
      handle.cancel()
    self._deadlines.clear()
    logger.info("Coordinator shut down jobs=%d drained=%s", len(self._jobs), drain_images)

  def _transition(self, job: GenerationJob, target: JobStatus) -> None:
    advance_job(job, target)
    self._tracker.job_status(job.id, target)

  def _record_error(self, job_id: str, entry: ErrorEntry) -> None:
    job = self._jobs.get(job_id)
    if job is None:
      logger.warning("Error reported for unknown job job_id=%s stage=%s category=%s", job_id, entry.stage, entry.category)
      return
    job.record_error(entry)
    self._tracker.error_recorded(job_id, entry.category)

  def _deadline_passed(self, job_id: str) -> None:
    self._deadlines.pop(job_id, None)
    job = self._jobs.get(job_id)
    if job is None:
      return
    if job.is_terminal and self._pool.pending_for(job_id) == 0:
      return
    seconds = self._settings.job_soft_deadline_seconds
    logger.warning("Job passed its soft deadline job_id=%s deadline_s=%.0f status=%s", job_id, seconds, job.status.value)
    self._record_error(job_id, ErrorEntry(stage="job", category="deadline", message=f"Job still running after soft deadline of {seconds:.0f}s."))

  async def _settle(self, job_id: str, runner: asyncio.Task[None]) -> None:
    """Drop per-job bookkeeping once the job is terminal and its images have resolved."""
    await asyncio.wait({runner})
    await self._pool.drain(job_id)
    handle = self._deadlines.pop(job_id, None)
    if handle is not None:
      handle.cancel()
    await self._pool.release_job(job_id)
    self._runners.pop(job_id, None)
    self._settlers.pop(job_id, None)
    logger.info("Job settled job_id=%s", job_id)

  async def _run(self, job: GenerationJob) -> None:
    semaphore = asyncio.Semaphore(max(self._settings.chunk_concurrency, 1))

    async def _dispatch(chunk: ChunkState) -> None:
      async with semaphore:
        # Chunks still waiting when cancellation arrives are never dispatched.
        if job.cancel_requested:
          logger.info("Chunk skipped after cancellation job_id=%s chunk=%d", job.id, chunk.index)
          return
        await self._run_chunk(job, chunk)

    try:
      await asyncio.gather(*(_dispatch(chunk) for chunk in job.chunks))
      self._finalize(job)
    except Exception as exc:  # noqa: BLE001
      logger.error("Job runner failed job_id=%s", job.id, exc_info=True)
      self._record_error(job.id, ErrorEntry(stage="job", category=classify_failure(exc).category, message=str(exc)))
      if not job.is_terminal:
        self._transition(job, JobStatus.FAILED)
    finally:
      await self._registry.save(job)

  async def _run_chunk(self, job: GenerationJob, chunk: ChunkState) -> None:
    """Drive one chunk through generate, validate and persist; failures stay inside the chunk."""
    self._tracker.chunk_started(job.id, chunk.index)
    advance_chunk(chunk, ChunkStatus.GENERATING)

    def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
      chunk.retry_count = attempt
      self._tracker.chunk_retry(job.id, chunk.index, attempt)

    try:
      generation = await self._agent.generate(chunk.spec, job.constraints, job.id, on_retry=_on_retry, should_continue=lambda: not job.cancel_requested)
    except RetryExhaustedError as exc:
      self._fail_chunk(job, chunk, ErrorEntry(stage="generate", category=exc.category, message=str(exc.last_error), chunk_index=chunk.index, attempts=exc.attempts))
      return
    except OperationCancelledError as exc:
      # The chunk was mid-retry when the job was cancelled; no further calls are made.
      self._fail_chunk(job, chunk, ErrorEntry(stage="generate", category="cancelled", message=str(exc), chunk_index=chunk.index, attempts=exc.attempts))
      return
    except Exception as exc:  # noqa: BLE001
      logger.error("Chunk generation failed job_id=%s chunk=%d", job.id, chunk.index, exc_info=True)
      self._fail_chunk(job, chunk, ErrorEntry(stage="generate", category=classify_failure(exc).category, message=str(exc), chunk_index=chunk.index, attempts=chunk.retry_count + 1))
      return

    try:
      self._advance_chunk(job, chunk, ChunkStatus.VALIDATING)
      report = validate_drafts(generation.raw_drafts, job.constraints, chunk.index)
      for rejected in report.rejected:
        label = rejected.name or f"draft {rejected.position}"
        self._record_error(job.id, ErrorEntry(stage="validate", category="validation", message=f"{label}: {'; '.join(rejected.reasons)}", chunk_index=chunk.index))
      self._tracker.items_dropped(job.id, chunk.index, len(report.rejected))

      self._advance_chunk(job, chunk, ChunkStatus.PERSISTING)
      persisted = await self._gateway.persist(job, chunk, report.accepted, on_persisted=lambda item: self._item_persisted(job, chunk, item))
      for entry in persisted.dropped:
        self._record_error(job.id, entry)
      self._tracker.items_dropped(job.id, chunk.index, len(persisted.dropped))
    except Exception as exc:  # noqa: BLE001
      logger.error("Chunk failed after generation job_id=%s chunk=%d status=%s", job.id, chunk.index, chunk.status.value, exc_info=True)
      self._fail_chunk(job, chunk, ErrorEntry(stage=chunk.status.value, category=classify_failure(exc).category, message=str(exc), chunk_index=chunk.index))
      return

    advance_chunk(chunk, ChunkStatus.DONE)
    self._tracker.chunk_finished(job.id, chunk.index, ChunkStatus.DONE)
    logger.info("Chunk done job_id=%s chunk=%d persisted=%d rejected=%d dropped=%d retries=%d", job.id, chunk.index, len(persisted.items), len(report.rejected), len(persisted.dropped), chunk.retry_count)

  def _advance_chunk(self, job: GenerationJob, chunk: ChunkState, target: ChunkStatus) -> None:
    advance_chunk(chunk, target)
    self._tracker.chunk_stage(job.id, chunk.index, target)

  def _item_persisted(self, job: GenerationJob, chunk: ChunkState, item: GeneratedItem) -> None:
    chunk.item_ids.append(item.id)
    self._tracker.item_persisted(job.id, chunk.index, item.id)
    self._pool.enqueue(ImageTask(item_id=item.id, job_id=job.id, category=item.category, draft=item.draft))

  def _fail_chunk(self, job: GenerationJob, chunk: ChunkState, entry: ErrorEntry) -> None:
    chunk.error = entry.message
    advance_chunk(chunk, ChunkStatus.FAILED)
    self._record_error(job.id, entry)
    self._tracker.chunk_finished(job.id, chunk.index, ChunkStatus.FAILED)
    logger.error("Chunk failed job_id=%s chunk=%d stage=%s category=%s attempts=%d error=%s", job.id, chunk.index, entry.stage, entry.category, entry.attempts, entry.message)

  def _finalize(self, job: GenerationJob) -> None:
    if job.cancel_requested:
      target = JobStatus.CANCELLED
    elif job.items_persisted == 0:
      target = JobStatus.FAILED
    elif any(chunk.status is ChunkStatus.FAILED for chunk in job.chunks):
      target = JobStatus.COMPLETED_WITH_ERRORS
    else:
      target = JobStatus.COMPLETED
    self._transition(job, target)
    logger.info(
      "Job finished job_id=%s status=%s persisted=%d requested=%d errors=%d images_pending=%d",
      job.id,
      target.value,
      job.items_persisted,
      job.requested_count,
      len(job.error_log),
      self._pool.pending_for(job.id),
    )
