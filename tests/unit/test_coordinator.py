"""End-to-end coordinator tests with fake models and in-memory storage."""

from __future__ import annotations

import asyncio

import pytest

from recipe_engine.config import Settings
from recipe_engine.core.exceptions import ConfigurationError, JobNotFoundError
from recipe_engine.jobs.coordinator import JobCoordinator
from recipe_engine.jobs.models import ChunkStatus, JobStatus
from recipe_engine.jobs.registry import InMemoryJobRegistry
from recipe_engine.jobs.uniqueness import InMemoryUniquenessCache
from recipe_engine.storage.asset_store import InMemoryAssetStore
from recipe_engine.storage.items_repo import InMemoryItemRepository

from conftest import FakeContentModel, FakeImageModel, make_recipe


def _coordinator(
  settings: Settings,
  content_model: FakeContentModel,
  image_model: FakeImageModel | None = None,
  *,
  repository: InMemoryItemRepository | None = None,
  registry: InMemoryJobRegistry | None = None,
) -> JobCoordinator:
  return JobCoordinator(
    settings,
    content_model=content_model,
    image_model=image_model or FakeImageModel(),
    asset_store=InMemoryAssetStore(),
    item_repository=repository or InMemoryItemRepository(),
    job_registry=registry,
  )


@pytest.mark.anyio
async def test_job_completes_with_every_image_ready(settings: Settings) -> None:
  repository = InMemoryItemRepository()
  coordinator = _coordinator(settings, FakeContentModel(), repository=repository)
  job_id = await coordinator.start(7, {"meal_types": ["Dinner"]})
  job = await coordinator.wait(job_id, timeout=5)
  await coordinator.shutdown()

  assert job.status is JobStatus.COMPLETED
  assert [chunk.spec.size for chunk in job.chunks] == [5, 2]
  assert job.items_persisted == 7
  records = await repository.list_for_job(job_id)
  assert len(records) == 7
  assert {record["image_status"] for record in records} == {"ready"}
  snapshot = coordinator.get_progress(job_id)
  assert snapshot.phase == "finished"
  assert snapshot.images_ready == 7
  assert snapshot.percent_complete == 100.0


@pytest.mark.anyio
async def test_failed_chunk_does_not_stop_the_job(settings: Settings) -> None:
  content_model = FakeContentModel(failing_chunks={1})
  coordinator = _coordinator(settings, content_model)
  job_id = await coordinator.start(15)
  job = await coordinator.wait(job_id, timeout=5)
  await coordinator.shutdown()

  assert job.status is JobStatus.COMPLETED_WITH_ERRORS
  assert [chunk.status for chunk in job.chunks] == [ChunkStatus.DONE, ChunkStatus.FAILED, ChunkStatus.DONE]
  assert job.items_persisted == 10
  assert content_model.calls[1] == settings.content_max_retries + 1

  generate_errors = [entry for entry in job.error_log if entry.stage == "generate"]
  assert len(generate_errors) == 1
  assert generate_errors[0].chunk_index == 1
  assert generate_errors[0].category == "transient"
  assert generate_errors[0].attempts == settings.content_max_retries + 1

  snapshot = coordinator.get_progress(job_id)
  assert snapshot.chunks_failed == 1
  assert snapshot.items_dropped == 5
  assert snapshot.chunks[1].retry_count == settings.content_max_retries


@pytest.mark.anyio
async def test_job_fails_when_nothing_is_persisted(settings: Settings) -> None:
  coordinator = _coordinator(settings, FakeContentModel(failing_chunks={0, 1}))
  job_id = await coordinator.start(6)
  job = await coordinator.wait(job_id, timeout=5)
  await coordinator.shutdown()

  assert job.status is JobStatus.FAILED
  assert job.items_persisted == 0
  assert coordinator.get_progress(job_id).phase == "finished"


@pytest.mark.anyio
async def test_rejected_drafts_are_logged_and_counted(settings: Settings) -> None:
  def drafts_for(index: int, size: int) -> list[object]:
    drafts: list[object] = [make_recipe(f"Recipe {index}-{position}") for position in range(size - 1)]
    drafts.append(make_recipe(f"Broken {index}", ingredients=[]))
    return drafts

  coordinator = _coordinator(settings, FakeContentModel(drafts_for=drafts_for))
  job_id = await coordinator.start(10)
  job = await coordinator.wait(job_id, timeout=5)
  await coordinator.shutdown()

  assert job.status is JobStatus.COMPLETED
  assert job.items_persisted == 8
  validation_errors = [entry for entry in job.error_log if entry.category == "validation"]
  assert len(validation_errors) == 2
  assert validation_errors[0].message.startswith("Broken")
  assert coordinator.get_progress(job_id).items_dropped == 2


@pytest.mark.anyio
async def test_image_failures_fall_back_without_failing_the_job(settings: Settings) -> None:
  image_model = FakeImageModel(failing_names={"Recipe 0-0"})
  repository = InMemoryItemRepository()
  coordinator = _coordinator(settings, FakeContentModel(), image_model, repository=repository)
  job_id = await coordinator.start(3)
  job = await coordinator.wait(job_id, timeout=5)
  await coordinator.shutdown()

  assert job.status is JobStatus.COMPLETED
  records = {record["content"]["name"]: record for record in await repository.list_for_job(job_id)}
  assert records["Recipe 0-0"]["image_status"] == "fallback"
  assert records["Recipe 0-0"]["image_ref"] == settings.fallback_for("dinner")
  assert records["Recipe 0-1"]["image_status"] == "ready"
  assert [entry.stage for entry in job.error_log] == ["image"]


@pytest.mark.anyio
async def test_cancel_stops_dispatch_and_falls_back_images(settings: Settings) -> None:
  content_model = FakeContentModel(delay=0.05)
  image_model = FakeImageModel()
  repository = InMemoryItemRepository()
  coordinator = _coordinator(settings.with_overrides(chunk_concurrency=1), content_model, image_model, repository=repository)
  job_id = await coordinator.start(15)
  await asyncio.sleep(0.01)

  assert await coordinator.cancel(job_id) is True
  job = await coordinator.wait(job_id, timeout=5)
  await coordinator.shutdown()

  assert job.status is JobStatus.CANCELLED
  assert dict(content_model.calls) == {0: 1}
  assert [chunk.status for chunk in job.chunks] == [ChunkStatus.DONE, ChunkStatus.QUEUED, ChunkStatus.QUEUED]
  assert image_model.prompts == []
  records = await repository.list_for_job(job_id)
  assert len(records) == 5
  assert {record["image_status"] for record in records} == {"fallback"}
  assert coordinator.image_pool.stats()["fallbacks_by_reason"] == {"cancelled": 5}
  assert await coordinator.cancel(job_id) is False


@pytest.mark.anyio
async def test_start_rejects_misconfigured_collaborators_before_creating_a_job(settings: Settings) -> None:
  content_model = FakeContentModel()
  content_model.configured = False
  registry = InMemoryJobRegistry()
  coordinator = _coordinator(settings, content_model, registry=registry)

  with pytest.raises(ConfigurationError):
    await coordinator.start(5)
  assert await registry.list_ids() == []


@pytest.mark.anyio
@pytest.mark.parametrize(("count", "constraints"), [(0, None), (501, None), (5, {"meal_types": ["dinner"], "spice_level": 11}), (5, {"calories": {"min": 900, "max": 100}})])
async def test_start_rejects_invalid_requests(settings: Settings, count: int, constraints: dict[str, object] | None) -> None:
  registry = InMemoryJobRegistry()
  coordinator = _coordinator(settings, FakeContentModel(), registry=registry)
  with pytest.raises(ConfigurationError):
    await coordinator.start(count, constraints)
  assert await registry.list_ids() == []


@pytest.mark.anyio
async def test_unknown_job_ids_raise(settings: Settings) -> None:
  coordinator = _coordinator(settings, FakeContentModel())
  with pytest.raises(JobNotFoundError):
    coordinator.get_progress("missing")
  with pytest.raises(JobNotFoundError):
    coordinator.subscribe("missing")
  with pytest.raises(JobNotFoundError):
    await coordinator.cancel("missing")
  with pytest.raises(JobNotFoundError):
    await coordinator.get_job("missing")


@pytest.mark.anyio
async def test_subscription_streams_until_images_finish(settings: Settings) -> None:
  coordinator = _coordinator(settings, FakeContentModel(delay=0.01))
  job_id = await coordinator.start(6)
  events = [event async for event in coordinator.subscribe(job_id)]
  await coordinator.shutdown()

  assert events[0].kind == "snapshot"
  assert events[-1].kind == "finished"
  final = events[-1].snapshot
  assert final.items_persisted == 6
  assert final.images_ready + final.images_fallback == 6
  persisted = [event.snapshot.items_persisted for event in events]
  assert persisted == sorted(persisted)


@pytest.mark.anyio
async def test_soft_deadline_is_recorded_without_stopping_the_job(settings: Settings) -> None:
  coordinator = _coordinator(settings.with_overrides(job_soft_deadline_seconds=0.01), FakeContentModel(delay=0.05))
  job_id = await coordinator.start(5)
  job = await coordinator.wait(job_id, timeout=5)
  await coordinator.shutdown()

  assert job.status is JobStatus.COMPLETED
  assert [entry.category for entry in job.error_log] == ["deadline"]


@pytest.mark.anyio
async def test_shutdown_without_drain_cancels_running_jobs(settings: Settings) -> None:
  coordinator = _coordinator(settings.with_overrides(chunk_concurrency=1), FakeContentModel(delay=0.05), FakeImageModel(delay=0.05))
  job_id = await coordinator.start(10)
  await asyncio.sleep(0.01)
  await coordinator.shutdown(drain_images=False)

  job = await coordinator.get_job(job_id)
  assert job.status is JobStatus.CANCELLED
  assert coordinator.image_pool.pending_for(job_id) == 0
  snapshot = coordinator.get_progress(job_id)
  assert snapshot.images_pending == 0


@pytest.mark.anyio
async def test_cancel_stops_a_chunk_between_retries(settings: Settings) -> None:
  content_model = FakeContentModel(failing_chunks={0}, delay=0.05)
  coordinator = _coordinator(settings.with_overrides(content_max_retries=5), content_model)
  job_id = await coordinator.start(5)
  while content_model.calls[0] == 0:
    await asyncio.sleep(0.005)
  calls_at_cancel = content_model.calls[0]

  assert await coordinator.cancel(job_id) is True
  job = await coordinator.wait(job_id, timeout=5)
  await coordinator.shutdown()

  assert job.status is JobStatus.CANCELLED
  assert content_model.calls[0] == calls_at_cancel
  assert job.chunks[0].status is ChunkStatus.FAILED
  assert [(entry.stage, entry.category) for entry in job.error_log] == [("generate", "cancelled")]


@pytest.mark.anyio
async def test_settled_jobs_release_per_job_state(settings: Settings, uniqueness_cache: InMemoryUniquenessCache) -> None:
  coordinator = JobCoordinator(
    settings.with_overrides(job_soft_deadline_seconds=60.0),
    content_model=FakeContentModel(),
    image_model=FakeImageModel(),
    asset_store=InMemoryAssetStore(),
    item_repository=InMemoryItemRepository(),
    uniqueness_cache=uniqueness_cache,
  )
  job_ids = [await coordinator.start(5) for _ in range(3)]
  for job_id in job_ids:
    job = await coordinator.wait(job_id, timeout=5)
    assert job.status is JobStatus.COMPLETED

  stats = coordinator.image_pool.stats()
  assert stats["ready"] == 15
  assert stats["tracked_jobs"] == 0
  assert uniqueness_cache.stats()["jobs"] == 0
  assert coordinator._deadlines == {}
  assert coordinator.get_progress(job_ids[0]).images_ready == 5
  await coordinator.shutdown()
