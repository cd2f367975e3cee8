"""Decoupled image enrichment for persisted recipes."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from recipe_engine.ai.agents.illustration import IllustrationAgent
from recipe_engine.ai.backoff import classify_failure, retry_with_backoff
from recipe_engine.ai.providers.base import ImageModel
from recipe_engine.config import Settings
from recipe_engine.core.exceptions import ConfigurationError, OperationCancelledError, PipelineError, RetryExhaustedError, StageTimeoutError
from recipe_engine.jobs.models import ErrorEntry, ImageStatus, ImageTask, ImageTaskStatus, advance_image_task
from recipe_engine.jobs.progress import ProgressTracker
from recipe_engine.jobs.uniqueness import ContentHasher, UniquenessCache
from recipe_engine.storage.asset_store import AssetStore
from recipe_engine.storage.items_repo import ItemRepository

T = TypeVar("T")
logger = logging.getLogger(__name__)

ErrorSink = Callable[[str, ErrorEntry], None]

MAX_QUALITY_SCORE = 100
QUALITY_PENALTY_PER_RETRY = 25
MIN_QUALITY_SCORE = 25


def quality_score_for(attempts: int) -> int:
  """Score a successful image by how many attempts it took."""
  return max(MAX_QUALITY_SCORE - QUALITY_PENALTY_PER_RETRY * max(attempts - 1, 0), MIN_QUALITY_SCORE)


async def _bounded(awaitable: Awaitable[T], *, timeout: float, label: str) -> T:
  try:
    return await asyncio.wait_for(awaitable, timeout=timeout)
  except TimeoutError as exc:
    raise StageTimeoutError(f"{label} exceeded {timeout:.1f}s", timeout_seconds=timeout) from exc


class ImageEnrichmentPool:
  """
  Resolve every image task to exactly one of ready or fallback.

  A fixed number of worker tasks drain an unbounded asyncio queue, so
  enqueueing never blocks the chunk that produced the item. Each task
  claims a per-job unique content hash, calls the image model, transfers
  the transient result to the durable asset store, and patches the item.
  """

  def __init__(
    self,
    image_service: ImageModel,
    asset_store: AssetStore,
    item_repository: ItemRepository,
    uniqueness_cache: UniquenessCache,
    tracker: ProgressTracker,
    settings: Settings,
    on_error: ErrorSink | None = None,
    *,
    hasher: ContentHasher | None = None,
  ) -> None:
    self._agent = IllustrationAgent(image_service)
    self._asset_store = asset_store
    self._repository = item_repository
    self._cache = uniqueness_cache
    self._tracker = tracker
    self._settings = settings
    self._on_error = on_error
    self._hasher = hasher or ContentHasher()
    self._queue: asyncio.Queue[ImageTask] = asyncio.Queue()
    self._workers: list[asyncio.Task[None]] = []
    self._in_flight: dict[str, ImageTask] = {}
    self._pending: Counter[str] = Counter()
    self._drained: dict[str, asyncio.Event] = {}
    self._cancelled_jobs: set[str] = set()
    self._misconfigured_jobs: set[str] = set()
    self._backlog_warned: set[str] = set()
    self._accepting = True
    self._counters: Counter[str] = Counter()
    self._fallback_reasons: Counter[str] = Counter()
    self._upload_seconds_total = 0.0

  @property
  def running(self) -> bool:
    return any(not worker.done() for worker in self._workers)

  def start(self) -> None:
    """Spawn the worker tasks; calling it again is a no-op."""
    if self.running:
      return
    self._accepting = True
    concurrency = max(self._settings.image_concurrency, 1)
    self._workers = [asyncio.create_task(self._worker(index), name=f"image-worker-{index}") for index in range(concurrency)]
    logger.info("Image pool started workers=%d", concurrency)

  def enqueue(self, task: ImageTask) -> None:
    """Queue a task without waiting; a long queue only raises a backlog warning."""
    if not self._accepting:
      raise RuntimeError("Image pool is stopped and no longer accepts tasks.")
    self._pending[task.job_id] += 1
    self._drained.setdefault(task.job_id, asyncio.Event()).clear()
    self._queue.put_nowait(task)
    self._tracker.image_enqueued(task.job_id, task.item_id)

    queue_size = self._queue.qsize()
    if queue_size > self._settings.image_backlog_threshold and task.job_id not in self._backlog_warned:
      self._backlog_warned.add(task.job_id)
      logger.warning("Image backlog above threshold job_id=%s queue_size=%d threshold=%d", task.job_id, queue_size, self._settings.image_backlog_threshold)
      self._tracker.backlog(task.job_id, queue_size)
      self._report(task.job_id, ErrorEntry(stage="image", category="backlog", message=f"Image queue reached {queue_size} tasks (threshold {self._settings.image_backlog_threshold})."))

  def cancel_job(self, job_id: str) -> None:
    """Resolve the job's remaining tasks to fallback as workers reach them."""
    self._cancelled_jobs.add(job_id)
    logger.info("Image tasks cancelled job_id=%s pending=%d", job_id, self._pending[job_id])

  def pending_for(self, job_id: str) -> int:
    return self._pending[job_id]

  async def release_job(self, job_id: str) -> None:
    """Forget a settled job's bookkeeping and its uniqueness claims."""
    if self._pending[job_id]:
      logger.warning("Release skipped for job with unresolved image tasks job_id=%s pending=%d", job_id, self._pending[job_id])
      return
    self._pending.pop(job_id, None)
    self._drained.pop(job_id, None)
    self._cancelled_jobs.discard(job_id)
    self._misconfigured_jobs.discard(job_id)
    self._backlog_warned.discard(job_id)
    await self._cache.release_job(job_id)

  async def drain(self, job_id: str, timeout: float | None = None) -> None:
    """Wait until every task enqueued for the job has resolved."""
    if self._pending[job_id] == 0:
      return
    event = self._drained.setdefault(job_id, asyncio.Event())
    if timeout is None:
      await event.wait()
    else:
      await asyncio.wait_for(event.wait(), timeout=timeout)

  async def stop(self, *, drain: bool = True) -> None:
    """
    Stop the workers.

    With drain=True the queue is emptied first. Otherwise in-flight and
    queued tasks resolve to fallback with reason "shutdown".
    """
    self._accepting = False
    if drain and self.running:
      await self._queue.join()

    for worker in self._workers:
      worker.cancel()
    await asyncio.gather(*self._workers, return_exceptions=True)
    self._workers = []

    while not self._queue.empty():
      task = self._queue.get_nowait()
      await self._fallback(task, reason="shutdown")
      self._finish(task, started=None)
      self._queue.task_done()
    logger.info("Image pool stopped drained=%s", drain)

  def stats(self) -> dict[str, Any]:
    uploads = self._counters["uploads_succeeded"]
    return {
      "workers": len(self._workers),
      "tracked_jobs": len(self._pending),
      "queued": self._queue.qsize(),
      "in_flight": len(self._in_flight),
      "ready": self._counters["ready"],
      "fallback": self._counters["fallback"],
      "unique_hashes": self._counters["unique_hashes"],
      "hash_collisions": self._counters["hash_collisions"],
      "uploads_succeeded": uploads,
      "uploads_failed": self._counters["uploads_failed"],
      "average_upload_seconds": round(self._upload_seconds_total / uploads, 3) if uploads else 0.0,
      "fallbacks_by_reason": dict(self._fallback_reasons),
    }

  async def _worker(self, worker_index: int) -> None:
    while True:
      task = await self._queue.get()
      started = time.monotonic()
      self._in_flight[task.item_id] = task
      try:
        await self._process(task)
      except asyncio.CancelledError:
        if not task.is_terminal:
          await self._fallback(task, reason="shutdown")
        self._finish(task, started)
        raise
      except Exception:  # noqa: BLE001
        logger.error("Image worker crashed on task worker=%d item_id=%s", worker_index, task.item_id, exc_info=True)
        if not task.is_terminal:
          await self._fallback(task, reason="unknown")
        self._finish(task, started)
      else:
        self._finish(task, started)
      finally:
        self._in_flight.pop(task.item_id, None)
        self._queue.task_done()

  async def _process(self, task: ImageTask) -> None:
    if task.job_id in self._cancelled_jobs:
      await self._fallback(task, reason="cancelled")
      return
    if task.job_id in self._misconfigured_jobs:
      await self._fallback(task, reason="configuration")
      return

    claim = await self._hasher.claim_unique(self._cache, task.job_id, task.draft)
    task.content_hash = claim.content_hash
    task.nonce = claim.nonce
    task.variation_token = claim.variation_token
    self._counters["unique_hashes"] += 1
    self._counters["hash_collisions"] += claim.collisions

    try:
      result_ref = await retry_with_backoff(
        lambda: self._attempt(task),
        operation_name=f"job_{task.job_id}_image_{task.item_id}",
        max_attempts=self._settings.image_max_attempts,
        base_delay=self._settings.backoff_base_seconds,
        max_delay=self._settings.backoff_max_seconds,
        jitter=self._settings.backoff_jitter,
        should_continue=lambda: task.job_id not in self._cancelled_jobs,
      )
    except OperationCancelledError:
      await self._fallback(task, reason="cancelled")
      return
    except ConfigurationError as exc:
      self._handle_misconfiguration(task, exc)
      await self._fallback(task, reason="configuration")
      return
    except RetryExhaustedError as exc:
      task.last_error = str(exc.last_error)
      self._report(task.job_id, ErrorEntry(stage="image", category=exc.category, message=str(exc.last_error), item_id=task.item_id, attempts=exc.attempts))
      await self._fallback(task, reason=exc.category)
      return
    except Exception as exc:  # noqa: BLE001
      category = classify_failure(exc).category
      task.last_error = str(exc)
      logger.error("Image task failed job_id=%s item_id=%s category=%s", task.job_id, task.item_id, category, exc_info=True)
      self._report(task.job_id, ErrorEntry(stage="image", category=category, message=str(exc), item_id=task.item_id, attempts=task.attempts))
      await self._fallback(task, reason=category)
      return

    await self._mark_ready(task, result_ref)

  async def _attempt(self, task: ImageTask) -> str:
    """One generate-and-upload pass; the uploading -> generating edge marks a retry."""
    if task.status is not ImageTaskStatus.GENERATING:
      advance_image_task(task, ImageTaskStatus.GENERATING)
    task.attempts += 1
    asset = await _bounded(self._agent.run(task), timeout=self._settings.image_timeout_seconds, label="image generation")

    advance_image_task(task, ImageTaskStatus.UPLOADING)
    upload_started = time.monotonic()
    try:
      result_ref = await _bounded(self._asset_store.persist(asset, f"{task.job_id}/{task.item_id}"), timeout=self._settings.upload_timeout_seconds, label="image upload")
    except Exception:
      self._counters["uploads_failed"] += 1
      raise
    self._counters["uploads_succeeded"] += 1
    self._upload_seconds_total += time.monotonic() - upload_started
    return result_ref

  async def _mark_ready(self, task: ImageTask, result_ref: str) -> None:
    quality_score = quality_score_for(task.attempts)
    try:
      await self._update_item(task, image_status=ImageStatus.READY, image_ref=result_ref, image_content_hash=task.content_hash, image_quality_score=quality_score)
    except Exception as exc:  # noqa: BLE001
      category = exc.category if isinstance(exc, PipelineError) else classify_failure(exc).category
      logger.error("Item update failed after upload job_id=%s item_id=%s", task.job_id, task.item_id, exc_info=True)
      self._report(task.job_id, ErrorEntry(stage="image", category=category, message=f"Item update failed: {exc}", item_id=task.item_id, attempts=task.attempts))
      await self._fallback(task, reason=category)
      return

    advance_image_task(task, ImageTaskStatus.READY)
    task.result_ref = result_ref
    task.quality_score = quality_score
    self._counters["ready"] += 1
    logger.info("Image ready job_id=%s item_id=%s attempts=%d quality=%d token=%s", task.job_id, task.item_id, task.attempts, quality_score, task.variation_token)

  async def _fallback(self, task: ImageTask, *, reason: str) -> None:
    """Assign the category fallback asset; the task ends in fallback even if the item patch fails."""
    fallback_ref = self._settings.fallback_for(task.category)
    advance_image_task(task, ImageTaskStatus.FALLBACK)
    task.result_ref = fallback_ref
    task.quality_score = 0
    task.last_error = task.last_error or reason
    self._counters["fallback"] += 1
    self._fallback_reasons[reason] += 1
    try:
      await self._update_item(task, image_status=ImageStatus.FALLBACK, image_ref=fallback_ref, image_quality_score=0)
    except Exception as exc:  # noqa: BLE001
      logger.error("Fallback item update failed job_id=%s item_id=%s", task.job_id, task.item_id, exc_info=True)
      self._report(task.job_id, ErrorEntry(stage="image", category="storage", message=f"Fallback update failed: {exc}", item_id=task.item_id))
    logger.info("Image fallback job_id=%s item_id=%s category=%s reason=%s", task.job_id, task.item_id, task.category, reason)

  async def _update_item(self, task: ImageTask, **patch: Any) -> None:
    await retry_with_backoff(
      lambda: self._repository.update(task.item_id, **patch),
      operation_name=f"job_{task.job_id}_item_{task.item_id}_update",
      max_attempts=self._settings.persist_max_attempts,
      base_delay=self._settings.backoff_base_seconds,
      max_delay=self._settings.backoff_max_seconds,
      jitter=self._settings.backoff_jitter,
    )

  def _handle_misconfiguration(self, task: ImageTask, exc: ConfigurationError) -> None:
    task.last_error = exc.message
    if task.job_id in self._misconfigured_jobs:
      return
    self._misconfigured_jobs.add(task.job_id)
    logger.error("Image service misconfigured; remaining tasks fall back job_id=%s error=%s", task.job_id, exc.message)
    self._report(task.job_id, ErrorEntry(stage="image", category="configuration", message=exc.message, item_id=task.item_id, attempts=task.attempts))

  def _finish(self, task: ImageTask, started: float | None) -> None:
    elapsed = time.monotonic() - started if started is not None else None
    self._tracker.image_resolved(task.job_id, task.item_id, task.status, elapsed)
    self._pending[task.job_id] = max(self._pending[task.job_id] - 1, 0)
    if self._pending[task.job_id] == 0:
      self._drained.setdefault(task.job_id, asyncio.Event()).set()

  def _report(self, job_id: str, entry: ErrorEntry) -> None:
    if self._on_error is None:
      return
    try:
      self._on_error(job_id, entry)
    except Exception:  # noqa: BLE001
      logger.error("Image error sink failed job_id=%s", job_id, exc_info=True)
