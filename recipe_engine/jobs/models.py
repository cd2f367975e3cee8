"""Domain models for chunked recipe generation jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from recipe_engine.ai.pipeline.contracts import GenerationConstraints, RecipeDraft
from recipe_engine.core.exceptions import ErrorCategory, InvalidTransitionError


def utc_now() -> datetime:
  return datetime.now(UTC)


class JobStatus(str, Enum):
  PENDING = "pending"
  PLANNING = "planning"
  RUNNING = "running"
  COMPLETED = "completed"
  COMPLETED_WITH_ERRORS = "completed_with_errors"
  FAILED = "failed"
  CANCELLED = "cancelled"


class ChunkStatus(str, Enum):
  QUEUED = "queued"
  GENERATING = "generating"
  VALIDATING = "validating"
  PERSISTING = "persisting"
  DONE = "done"
  FAILED = "failed"


class ImageTaskStatus(str, Enum):
  QUEUED = "queued"
  GENERATING = "generating"
  UPLOADING = "uploading"
  READY = "ready"
  FALLBACK = "fallback"


class ImageStatus(str, Enum):
  PENDING = "pending"
  READY = "ready"
  FALLBACK = "fallback"


_JOB_TERMINAL = frozenset({JobStatus.COMPLETED, JobStatus.COMPLETED_WITH_ERRORS, JobStatus.FAILED, JobStatus.CANCELLED})

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
  JobStatus.PENDING: frozenset({JobStatus.PLANNING, JobStatus.FAILED, JobStatus.CANCELLED}),
  JobStatus.PLANNING: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED}),
  JobStatus.RUNNING: _JOB_TERMINAL,
  JobStatus.COMPLETED: frozenset(),
  JobStatus.COMPLETED_WITH_ERRORS: frozenset(),
  JobStatus.FAILED: frozenset(),
  JobStatus.CANCELLED: frozenset(),
}

CHUNK_TRANSITIONS: dict[ChunkStatus, frozenset[ChunkStatus]] = {
  ChunkStatus.QUEUED: frozenset({ChunkStatus.GENERATING}),
  ChunkStatus.GENERATING: frozenset({ChunkStatus.VALIDATING, ChunkStatus.FAILED}),
  ChunkStatus.VALIDATING: frozenset({ChunkStatus.PERSISTING, ChunkStatus.FAILED}),
  ChunkStatus.PERSISTING: frozenset({ChunkStatus.DONE, ChunkStatus.FAILED}),
  ChunkStatus.DONE: frozenset(),
  ChunkStatus.FAILED: frozenset(),
}

IMAGE_TASK_TRANSITIONS: dict[ImageTaskStatus, frozenset[ImageTaskStatus]] = {
  ImageTaskStatus.QUEUED: frozenset({ImageTaskStatus.GENERATING, ImageTaskStatus.FALLBACK}),
  ImageTaskStatus.GENERATING: frozenset({ImageTaskStatus.UPLOADING, ImageTaskStatus.FALLBACK}),
  # uploading -> generating is the retry edge after a failed transfer.
  ImageTaskStatus.UPLOADING: frozenset({ImageTaskStatus.READY, ImageTaskStatus.FALLBACK, ImageTaskStatus.GENERATING}),
  ImageTaskStatus.READY: frozenset(),
  ImageTaskStatus.FALLBACK: frozenset(),
}


@dataclass(frozen=True)
class ChunkSpec:
  """A planned slice of a job: position and number of recipes to request."""

  index: int
  size: int


@dataclass
class ChunkState:
  spec: ChunkSpec
  status: ChunkStatus = ChunkStatus.QUEUED
  retry_count: int = 0
  item_ids: list[str] = field(default_factory=list)
  started_at: datetime | None = None
  finished_at: datetime | None = None
  error: str | None = None

  @property
  def index(self) -> int:
    return self.spec.index

  @property
  def is_terminal(self) -> bool:
    return self.status in (ChunkStatus.DONE, ChunkStatus.FAILED)


@dataclass
class GeneratedItem:
  """A persisted recipe; the id is assigned when it is written."""

  id: str
  draft: RecipeDraft
  category: str
  image_status: ImageStatus
  image_ref: str
  source_chunk: int
  job_id: str
  created_at: datetime = field(default_factory=utc_now)

  def to_record(self) -> dict[str, Any]:
    """Flatten the item for repositories."""
    return {
      "id": self.id,
      "job_id": self.job_id,
      "source_chunk": self.source_chunk,
      "category": self.category,
      "image_status": self.image_status.value,
      "image_ref": self.image_ref,
      "content": self.draft.model_dump(),
      "created_at": self.created_at,
    }


@dataclass
class ImageTask:
  item_id: str
  job_id: str
  category: str
  draft: RecipeDraft
  content_hash: str | None = None
  nonce: str | None = None
  variation_token: str | None = None
  attempts: int = 0
  status: ImageTaskStatus = ImageTaskStatus.QUEUED
  result_ref: str | None = None
  quality_score: int | None = None
  last_error: str | None = None
  enqueued_at: datetime = field(default_factory=utc_now)

  @property
  def is_terminal(self) -> bool:
    return self.status in (ImageTaskStatus.READY, ImageTaskStatus.FALLBACK)


@dataclass(frozen=True)
class ErrorEntry:
  """One recorded failure; the job's error log is append-only."""

  stage: str
  category: ErrorCategory
  message: str
  chunk_index: int | None = None
  item_id: str | None = None
  attempts: int = 0
  occurred_at: datetime = field(default_factory=utc_now)

  def to_dict(self) -> dict[str, Any]:
    return {
      "stage": self.stage,
      "category": self.category,
      "message": self.message,
      "chunk_index": self.chunk_index,
      "item_id": self.item_id,
      "attempts": self.attempts,
      "occurred_at": self.occurred_at.isoformat(),
    }


@dataclass
class GenerationJob:
  """Represents a batch generation request and its chunk states."""

  id: str
  requested_count: int
  constraints: GenerationConstraints
  chunks: list[ChunkState] = field(default_factory=list)
  status: JobStatus = JobStatus.PENDING
  created_at: datetime = field(default_factory=utc_now)
  completed_at: datetime | None = None
  error_log: list[ErrorEntry] = field(default_factory=list)
  cancel_requested: bool = False

  @property
  def is_terminal(self) -> bool:
    return self.status in _JOB_TERMINAL

  @property
  def items_persisted(self) -> int:
    return sum(len(chunk.item_ids) for chunk in self.chunks)

  @property
  def item_ids(self) -> list[str]:
    return [item_id for chunk in self.chunks for item_id in chunk.item_ids]

  def record_error(self, entry: ErrorEntry) -> None:
    self.error_log.append(entry)


@dataclass(frozen=True)
class ChunkProgress:
  index: int
  size: int
  status: ChunkStatus
  retry_count: int
  items_persisted: int


@dataclass(frozen=True)
class ProgressSnapshot:
  """Point-in-time view of a job; counters never decrease between snapshots."""

  job_id: str
  status: JobStatus
  phase: str
  requested_count: int
  chunks_total: int
  chunks_done: int
  chunks_failed: int
  items_persisted: int
  items_dropped: int
  images_pending: int
  images_ready: int
  images_fallback: int
  error_count: int
  error_counts: dict[str, int]
  backlog_warning: bool
  eta_seconds: float | None
  chunks: tuple[ChunkProgress, ...]
  updated_at: datetime

  @property
  def percent_complete(self) -> float:
    """Blend of content progress and image progress, weighted equally."""
    if self.requested_count <= 0:
      return 100.0
    content_done = min((self.items_persisted + self.items_dropped) / self.requested_count, 1.0)
    if self.items_persisted == 0:
      image_done = 1.0 if self.chunks_total and self.chunks_done + self.chunks_failed == self.chunks_total else 0.0
    else:
      image_done = min((self.images_ready + self.images_fallback) / self.items_persisted, 1.0)
    return round((content_done + image_done) / 2 * 100, 2)


def _advance(kind: str, table: dict[Any, frozenset[Any]], current: Any, target: Any) -> None:
  if target not in table[current]:
    raise InvalidTransitionError(f"Illegal {kind} transition {current.value} -> {target.value}.")


def advance_job(job: GenerationJob, target: JobStatus) -> None:
  """Move a job along a legal edge; terminal states stamp completed_at."""
  _advance("job", JOB_TRANSITIONS, job.status, target)
  job.status = target
  if target in _JOB_TERMINAL:
    job.completed_at = utc_now()


def advance_chunk(chunk: ChunkState, target: ChunkStatus) -> None:
  _advance("chunk", CHUNK_TRANSITIONS, chunk.status, target)
  chunk.status = target
  if target is ChunkStatus.GENERATING:
    chunk.started_at = utc_now()
  elif target in (ChunkStatus.DONE, ChunkStatus.FAILED):
    chunk.finished_at = utc_now()


def advance_image_task(task: ImageTask, target: ImageTaskStatus) -> None:
  _advance("image task", IMAGE_TASK_TRANSITIONS, task.status, target)
  task.status = target
