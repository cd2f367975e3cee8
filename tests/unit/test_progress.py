from __future__ import annotations

import pytest

from recipe_engine.core.exceptions import JobNotFoundError
from recipe_engine.jobs.models import ChunkSpec, ChunkStatus, ImageTaskStatus, JobStatus, ProgressSnapshot
from recipe_engine.jobs.progress import ProgressEvent, ProgressTracker

JOB_ID = "job-progress"


class RecordingSubscriber:
  def __init__(self) -> None:
    self.events: list[ProgressEvent] = []

  def publish(self, event: ProgressEvent) -> None:
    self.events.append(event)


def _counters(snapshot: ProgressSnapshot) -> tuple[int, ...]:
  return (snapshot.chunks_done, snapshot.chunks_failed, snapshot.items_persisted, snapshot.items_dropped, snapshot.images_ready, snapshot.images_fallback, snapshot.error_count)


def _running_tracker(subscriber: RecordingSubscriber | None = None) -> ProgressTracker:
  tracker = ProgressTracker(chunk_concurrency=2, image_concurrency=2, subscriber=subscriber)
  tracker.register_job(JOB_ID, 7)
  tracker.job_status(JOB_ID, JobStatus.PLANNING)
  tracker.register_chunks(JOB_ID, [ChunkSpec(index=0, size=5), ChunkSpec(index=1, size=2)])
  tracker.job_status(JOB_ID, JobStatus.RUNNING)
  return tracker


def _drive_to_completion(tracker: ProgressTracker) -> None:
  tracker.chunk_started(JOB_ID, 0)
  tracker.chunk_retry(JOB_ID, 0, 1)
  for index in range(4):
    tracker.item_persisted(JOB_ID, 0, f"item-{index}")
  tracker.items_dropped(JOB_ID, 0, 1)
  tracker.error_recorded(JOB_ID, "validation")
  tracker.chunk_finished(JOB_ID, 0, ChunkStatus.DONE)
  tracker.chunk_started(JOB_ID, 1)
  tracker.chunk_finished(JOB_ID, 1, ChunkStatus.FAILED)
  tracker.error_recorded(JOB_ID, "transient")
  tracker.job_status(JOB_ID, JobStatus.COMPLETED_WITH_ERRORS)
  for index in range(4):
    status = ImageTaskStatus.READY if index % 2 == 0 else ImageTaskStatus.FALLBACK
    tracker.image_resolved(JOB_ID, f"item-{index}", status, elapsed_seconds=0.5)


def test_counters_never_decrease_and_phases_advance() -> None:
  subscriber = RecordingSubscriber()
  tracker = _running_tracker(subscriber)
  _drive_to_completion(tracker)

  snapshots = [event.snapshot for event in subscriber.events]
  for previous, current in zip(snapshots, snapshots[1:], strict=False):
    assert all(after >= before for before, after in zip(_counters(previous), _counters(current), strict=True))

  phases = [snapshot.phase for snapshot in snapshots]
  assert phases[0] == "pending"
  assert "generating" in phases
  assert "enriching_images" in phases
  assert phases[-1] == "finished"
  assert subscriber.events[-1].kind == "finished"


def test_final_snapshot_accounts_for_every_requested_item() -> None:
  tracker = _running_tracker()
  _drive_to_completion(tracker)
  snapshot = tracker.snapshot(JOB_ID)

  assert snapshot.items_persisted == 4
  assert snapshot.items_dropped == 3
  assert snapshot.items_persisted + snapshot.items_dropped == snapshot.requested_count
  assert snapshot.error_counts == {"validation": 1, "transient": 1}
  assert snapshot.chunks[0].retry_count == 1
  assert snapshot.eta_seconds == 0.0
  assert snapshot.percent_complete == 100.0


def test_duplicate_reports_are_ignored() -> None:
  tracker = _running_tracker()
  tracker.chunk_started(JOB_ID, 0)
  tracker.item_persisted(JOB_ID, 0, "item-0")
  tracker.item_persisted(JOB_ID, 0, "item-0")
  tracker.image_resolved(JOB_ID, "item-0", ImageTaskStatus.READY)
  tracker.image_resolved(JOB_ID, "item-0", ImageTaskStatus.FALLBACK)
  tracker.chunk_finished(JOB_ID, 0, ChunkStatus.DONE)
  tracker.chunk_finished(JOB_ID, 0, ChunkStatus.FAILED)

  snapshot = tracker.snapshot(JOB_ID)
  assert snapshot.items_persisted == 1
  assert (snapshot.images_ready, snapshot.images_fallback) == (1, 0)
  assert (snapshot.chunks_done, snapshot.chunks_failed) == (1, 0)


def test_eta_needs_samples_then_scales_with_remaining_work() -> None:
  tracker = _running_tracker()
  assert tracker.snapshot(JOB_ID).eta_seconds is None

  tracker.chunk_started(JOB_ID, 0)
  for index in range(5):
    tracker.item_persisted(JOB_ID, 0, f"item-{index}")
  tracker.chunk_finished(JOB_ID, 0, ChunkStatus.DONE)
  for index in range(5):
    tracker.image_resolved(JOB_ID, f"item-{index}", ImageTaskStatus.READY, elapsed_seconds=1.0)

  eta = tracker.snapshot(JOB_ID).eta_seconds
  assert eta is not None
  assert eta >= 0.0


def test_unknown_job_raises() -> None:
  with pytest.raises(JobNotFoundError):
    ProgressTracker().snapshot("missing")


@pytest.mark.anyio
async def test_subscription_starts_with_snapshot_and_ends_after_finished() -> None:
  tracker = _running_tracker()
  subscription = tracker.subscribe(JOB_ID)
  _drive_to_completion(tracker)

  kinds = [event.kind async for event in subscription]
  assert kinds[0] == "snapshot"
  assert kinds[-1] == "finished"
  assert kinds.count("finished") == 1


@pytest.mark.anyio
async def test_subscribing_to_finished_job_yields_single_snapshot() -> None:
  tracker = _running_tracker()
  _drive_to_completion(tracker)

  events = [event async for event in tracker.subscribe(JOB_ID)]
  assert [event.kind for event in events] == ["snapshot"]
  assert events[0].snapshot.phase == "finished"
