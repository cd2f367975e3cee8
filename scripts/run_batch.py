"""Start a recipe batch from the command line and stream progress until it finishes."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Ensure repo root is on sys.path so local imports resolve before site-packages.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from recipe_engine.ai.providers.gemini import GeminiModel  # noqa: E402
from recipe_engine.config import get_settings  # noqa: E402
from recipe_engine.core.database import create_tables  # noqa: E402
from recipe_engine.core.env_contract import validate_runtime_env_or_raise  # noqa: E402
from recipe_engine.core.exceptions import ConfigurationError  # noqa: E402
from recipe_engine.core.logging import initialize_logging  # noqa: E402
from recipe_engine.jobs.coordinator import JobCoordinator  # noqa: E402
from recipe_engine.storage.asset_store import GcsAssetStore  # noqa: E402
from recipe_engine.storage.items_repo import InMemoryItemRepository, ItemRepository  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
  parser = argparse.ArgumentParser(description=__doc__)
  parser.add_argument("count", type=int, help="Number of recipes to generate.")
  parser.add_argument("--constraints", default="{}", help="JSON object of generation constraints.")
  parser.add_argument("--meal-type", action="append", default=[], dest="meal_types", help="Meal type to target; repeatable.")
  parser.add_argument("--in-memory", action="store_true", help="Keep recipes in memory instead of Postgres.")
  parser.add_argument("--create-tables", action="store_true", help="Create the recipe table before starting.")
  parser.add_argument("--no-wait-images", action="store_true", help="Return once content generation finishes.")
  return parser.parse_args(argv)


async def _build_repository(*, in_memory: bool, create: bool) -> ItemRepository:
  if in_memory:
    return InMemoryItemRepository()
  from recipe_engine.storage.postgres_items_repo import PostgresItemRepository

  if create:
    await create_tables()
  return PostgresItemRepository()


async def _run(args: argparse.Namespace) -> int:
  settings = get_settings()
  logger = initialize_logging(settings)
  validate_runtime_env_or_raise(logger=logger, target="script")

  try:
    constraints = json.loads(args.constraints)
  except json.JSONDecodeError as exc:
    raise ConfigurationError(f"--constraints must be valid JSON: {exc}") from exc
  if args.meal_types:
    constraints["meal_types"] = args.meal_types

  repository = await _build_repository(in_memory=args.in_memory, create=args.create_tables)
  asset_store = GcsAssetStore(settings)
  coordinator = JobCoordinator(
    settings,
    content_model=GeminiModel(settings.content_model, api_key=settings.gemini_api_key),
    image_model=GeminiModel(settings.image_model, api_key=settings.gemini_api_key),
    asset_store=asset_store,
    item_repository=repository,
  )

  job_id = await coordinator.start(args.count, constraints)
  logger.info("Batch started job_id=%s", job_id)
  subscription = coordinator.subscribe(job_id)
  async for event in subscription:
    snapshot = event.snapshot
    logger.info(
      "PROGRESS kind=%s phase=%s persisted=%d/%d dropped=%d images_ready=%d images_fallback=%d errors=%d eta_s=%s",
      event.kind,
      snapshot.phase,
      snapshot.items_persisted,
      snapshot.requested_count,
      snapshot.items_dropped,
      snapshot.images_ready,
      snapshot.images_fallback,
      snapshot.error_count,
      snapshot.eta_seconds,
    )
    if args.no_wait_images and snapshot.phase in ("enriching_images", "finished"):
      break
  subscription.close()

  job = await coordinator.wait(job_id, include_images=not args.no_wait_images)
  await coordinator.shutdown(drain_images=not args.no_wait_images)
  for entry in job.error_log:
    logger.warning("ERROR %s", json.dumps(entry.to_dict(), sort_keys=True))
  logger.info("Batch finished job_id=%s status=%s persisted=%d pool=%s", job.id, job.status.value, job.items_persisted, coordinator.image_pool.stats())
  return 0 if job.items_persisted else 1


def main() -> None:
  args = _parse_args()
  try:
    exit_code = asyncio.run(_run(args))
  except ConfigurationError as exc:
    logging.getLogger("recipe_engine").error("Configuration error: %s", exc.message)
    exit_code = 2
  sys.exit(exit_code)


if __name__ == "__main__":
  main()
