"""Job progress tracking with pull snapshots and push subscriptions."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import Counter, deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from recipe_engine.core.exceptions import JobNotFoundError
from recipe_engine.jobs.models import ChunkProgress, ChunkSpec, ChunkStatus, ImageTaskStatus, JobStatus, ProgressSnapshot, utc_now

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION_BUFFER = 256

_TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.COMPLETED_WITH_ERRORS, JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass(frozen=True)
class ProgressEvent:
  """A state change pushed to subscribers together with the resulting snapshot."""

  kind: str
  snapshot: ProgressSnapshot
  detail: dict[str, Any] = field(default_factory=dict)


class ProgressSubscriber(Protocol):
  """External sink for progress events (websocket fan-out, message bus, etc.)."""

  def publish(self, event: ProgressEvent) -> None:
    """Receive one event; must not block."""


@dataclass
class _ChunkCounters:
  size: int
  status: ChunkStatus = ChunkStatus.QUEUED
  retry_count: int = 0
  persisted: int = 0
  dropped: int = 0
  started_at: float | None = None


@dataclass
class _JobCounters:
  requested_count: int
  status: JobStatus = JobStatus.PENDING
  chunks: dict[int, _ChunkCounters] = field(default_factory=dict)
  persisted_ids: set[str] = field(default_factory=set)
  resolved_ids: set[str] = field(default_factory=set)
  items_dropped: int = 0
  chunks_done: int = 0
  chunks_failed: int = 0
  images_ready: int = 0
  images_fallback: int = 0
  error_counts: Counter[str] = field(default_factory=Counter)
  backlog_warning: bool = False
  finished: bool = False
  item_seconds: deque[float] = field(default_factory=deque)
  image_seconds: deque[float] = field(default_factory=deque)

  @property
  def images_pending(self) -> int:
    return max(len(self.persisted_ids) - self.images_ready - self.images_fallback, 0)

  @property
  def phase(self) -> str:
    if self.status in (JobStatus.PENDING, JobStatus.PLANNING):
      return self.status.value
    if self.status is JobStatus.RUNNING:
      return "generating"
    if self.images_pending:
      return "enriching_images"
    return "finished"


class ProgressSubscription:
  """Async iterator of progress events for one job; ends after the job finishes."""

  def __init__(self, tracker: ProgressTracker, job_id: str, max_buffer: int) -> None:
    self._tracker = tracker
    self.job_id = job_id
    self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=max_buffer)
    self._closed = False

  def _push(self, event: ProgressEvent | None) -> None:
    if self._closed:
      return
    try:
      self._queue.put_nowait(event)
    except asyncio.QueueFull:
      # Slow consumers lose the oldest event; the newest snapshot supersedes it.
      self._queue.get_nowait()
      self._queue.put_nowait(event)

  def close(self) -> None:
    if self._closed:
      return
    self._push(None)
    self._closed = True
    self._tracker._unsubscribe(self)

  def __aiter__(self) -> AsyncIterator[ProgressEvent]:
    return self

  async def __anext__(self) -> ProgressEvent:
    event = await self._queue.get()
    if event is None:
      raise StopAsyncIteration
    return event


class ProgressTracker:
  """
  Aggregate per-job counters reported by every pipeline stage.

  All record methods are synchronous and guarded by one lock, so concurrent
  chunk tasks and image workers can report without awaiting. Counters only
  grow; repeated reports for the same item are ignored.
  """

  def __init__(self, *, chunk_concurrency: int = 3, image_concurrency: int = 3, eta_window: int = 20, subscriber: ProgressSubscriber | None = None) -> None:
    self._chunk_concurrency = max(chunk_concurrency, 1)
    self._image_concurrency = max(image_concurrency, 1)
    self._eta_window = max(eta_window, 1)
    self._lock = threading.Lock()
    self._jobs: dict[str, _JobCounters] = {}
    self._subscriptions: dict[str, list[ProgressSubscription]] = {}
    self._external: list[ProgressSubscriber] = [subscriber] if subscriber is not None else []

  def add_subscriber(self, subscriber: ProgressSubscriber) -> None:
    with self._lock:
      self._external.append(subscriber)

  def register_job(self, job_id: str, requested_count: int) -> None:
    with self._lock:
      self._jobs[job_id] = _JobCounters(requested_count=requested_count, item_seconds=deque(maxlen=self._eta_window), image_seconds=deque(maxlen=self._eta_window))
    self._emit(job_id, "job_registered")

  def register_chunks(self, job_id: str, chunks: list[ChunkSpec]) -> None:
    with self._lock:
      state = self._require(job_id)
      for spec in chunks:
        state.chunks.setdefault(spec.index, _ChunkCounters(size=spec.size))
    self._emit(job_id, "chunks_planned", {"chunks": len(chunks)})

  def job_status(self, job_id: str, status: JobStatus) -> None:
    with self._lock:
      self._require(job_id).status = status
    self._emit(job_id, "job_status", {"status": status.value})

  def chunk_started(self, job_id: str, chunk_index: int) -> None:
    with self._lock:
      chunk = self._require_chunk(job_id, chunk_index)
      chunk.status = ChunkStatus.GENERATING
      chunk.started_at = time.monotonic()
    self._emit(job_id, "chunk_started", {"chunk_index": chunk_index})

  def chunk_stage(self, job_id: str, chunk_index: int, status: ChunkStatus) -> None:
    with self._lock:
      self._require_chunk(job_id, chunk_index).status = status
    self._emit(job_id, "chunk_stage", {"chunk_index": chunk_index, "status": status.value})

  def chunk_retry(self, job_id: str, chunk_index: int, retry_count: int) -> None:
    with self._lock:
      chunk = self._require_chunk(job_id, chunk_index)
      chunk.retry_count = max(chunk.retry_count, retry_count)
    self._emit(job_id, "chunk_retry", {"chunk_index": chunk_index, "retry_count": retry_count})

  def item_persisted(self, job_id: str, chunk_index: int, item_id: str) -> None:
    with self._lock:
      state = self._require(job_id)
      if item_id in state.persisted_ids:
        return
      state.persisted_ids.add(item_id)
      self._require_chunk(job_id, chunk_index).persisted += 1
    self._emit(job_id, "item_persisted", {"chunk_index": chunk_index, "item_id": item_id})

  def items_dropped(self, job_id: str, chunk_index: int, count: int = 1) -> None:
    if count <= 0:
      return
    with self._lock:
      state = self._require(job_id)
      state.items_dropped += count
      self._require_chunk(job_id, chunk_index).dropped += count
    self._emit(job_id, "item_dropped", {"chunk_index": chunk_index, "count": count})

  def chunk_finished(self, job_id: str, chunk_index: int, status: ChunkStatus) -> None:
    """Close a chunk; any shortfall against its planned size counts as dropped."""
    with self._lock:
      state = self._require(job_id)
      chunk = self._require_chunk(job_id, chunk_index)
      if chunk.status in (ChunkStatus.DONE, ChunkStatus.FAILED):
        return
      chunk.status = status
      if status is ChunkStatus.DONE:
        state.chunks_done += 1
      else:
        state.chunks_failed += 1
      shortfall = chunk.size - chunk.persisted - chunk.dropped
      if shortfall > 0:
        chunk.dropped += shortfall
        state.items_dropped += shortfall
      if chunk.started_at is not None:
        per_item = (time.monotonic() - chunk.started_at) / max(chunk.size, 1)
        state.item_seconds.append(per_item)
    self._emit(job_id, "chunk_finished", {"chunk_index": chunk_index, "status": status.value})

  def image_enqueued(self, job_id: str, item_id: str) -> None:
    self._emit(job_id, "image_enqueued", {"item_id": item_id})

  def image_resolved(self, job_id: str, item_id: str, status: ImageTaskStatus, elapsed_seconds: float | None = None) -> None:
    with self._lock:
      state = self._require(job_id)
      if item_id in state.resolved_ids:
        return
      state.resolved_ids.add(item_id)
      if status is ImageTaskStatus.READY:
        state.images_ready += 1
      else:
        state.images_fallback += 1
      if elapsed_seconds is not None:
        state.image_seconds.append(elapsed_seconds)
    self._emit(job_id, "image_resolved", {"item_id": item_id, "status": status.value})

  def error_recorded(self, job_id: str, category: str) -> None:
    with self._lock:
      self._require(job_id).error_counts[category] += 1
    self._emit(job_id, "error", {"category": category})

  def backlog(self, job_id: str, queue_size: int) -> None:
    with self._lock:
      self._require(job_id).backlog_warning = True
    self._emit(job_id, "backlog", {"queue_size": queue_size})

  def has_job(self, job_id: str) -> bool:
    with self._lock:
      return job_id in self._jobs

  def snapshot(self, job_id: str) -> ProgressSnapshot:
    with self._lock:
      return self._build_snapshot(job_id, self._require(job_id))

  def subscribe(self, job_id: str, *, max_buffer: int = DEFAULT_SUBSCRIPTION_BUFFER) -> ProgressSubscription:
    """Open a push stream; the current snapshot is delivered first."""
    subscription = ProgressSubscription(self, job_id, max_buffer)
    with self._lock:
      state = self._require(job_id)
      snapshot = self._build_snapshot(job_id, state)
      finished = state.finished
      if not finished:
        self._subscriptions.setdefault(job_id, []).append(subscription)
    subscription._push(ProgressEvent(kind="snapshot", snapshot=snapshot))
    if finished:
      subscription.close()
    return subscription

  def _unsubscribe(self, subscription: ProgressSubscription) -> None:
    with self._lock:
      subscriptions = self._subscriptions.get(subscription.job_id, [])
      if subscription in subscriptions:
        subscriptions.remove(subscription)

  def _require(self, job_id: str) -> _JobCounters:
    state = self._jobs.get(job_id)
    if state is None:
      raise JobNotFoundError(job_id)
    return state

  def _require_chunk(self, job_id: str, chunk_index: int) -> _ChunkCounters:
    state = self._require(job_id)
    chunk = state.chunks.get(chunk_index)
    if chunk is None:
      raise KeyError(f"Chunk {chunk_index} is not registered for job {job_id}.")
    return chunk

  def _eta_seconds(self, state: _JobCounters) -> float | None:
    remaining_items = 0 if state.status in _TERMINAL_JOB_STATUSES else max(state.requested_count - len(state.persisted_ids) - state.items_dropped, 0)
    pending_images = state.images_pending
    if remaining_items == 0 and pending_images == 0:
      return 0.0

    eta = 0.0
    if remaining_items:
      if not state.item_seconds:
        return None
      average_item = sum(state.item_seconds) / len(state.item_seconds)
      eta += average_item * remaining_items / self._chunk_concurrency
    if pending_images:
      if not state.image_seconds:
        return None
      average_image = sum(state.image_seconds) / len(state.image_seconds)
      eta += average_image * pending_images / self._image_concurrency
    return round(eta, 2)

  def _build_snapshot(self, job_id: str, state: _JobCounters) -> ProgressSnapshot:
    chunks = tuple(
      ChunkProgress(index=index, size=chunk.size, status=chunk.status, retry_count=chunk.retry_count, items_persisted=chunk.persisted) for index, chunk in sorted(state.chunks.items())
    )
    return ProgressSnapshot(
      job_id=job_id,
      status=state.status,
      phase=state.phase,
      requested_count=state.requested_count,
      chunks_total=len(state.chunks),
      chunks_done=state.chunks_done,
      chunks_failed=state.chunks_failed,
      items_persisted=len(state.persisted_ids),
      items_dropped=state.items_dropped,
      images_pending=state.images_pending,
      images_ready=state.images_ready,
      images_fallback=state.images_fallback,
      error_count=sum(state.error_counts.values()),
      error_counts=dict(state.error_counts),
      backlog_warning=state.backlog_warning,
      eta_seconds=self._eta_seconds(state),
      chunks=chunks,
      updated_at=utc_now(),
    )

  def _emit(self, job_id: str, kind: str, detail: dict[str, Any] | None = None) -> None:
    with self._lock:
      state = self._jobs.get(job_id)
      if state is None:
        return
      snapshot = self._build_snapshot(job_id, state)
      subscriptions = list(self._subscriptions.get(job_id, []))
      external = list(self._external)
      finishing = snapshot.phase == "finished" and not state.finished
      if finishing:
        state.finished = True
        self._subscriptions.pop(job_id, None)

    event = ProgressEvent(kind=kind, snapshot=snapshot, detail=detail or {})
    for subscription in subscriptions:
      subscription._push(event)
    for subscriber in external:
      try:
        subscriber.publish(event)
      except Exception:  # noqa: BLE001
        logger.error("Progress subscriber failed job_id=%s kind=%s", job_id, kind, exc_info=True)

    if finishing:
      finished_event = ProgressEvent(kind="finished", snapshot=snapshot)
      for subscription in subscriptions:
        subscription._push(finished_event)
        subscription.close()
      for subscriber in external:
        try:
          subscriber.publish(finished_event)
        except Exception:  # noqa: BLE001
          logger.error("Progress subscriber failed job_id=%s kind=finished", job_id, exc_info=True)
