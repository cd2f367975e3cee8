"""Settings loading and runtime env contract tests."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator

import pytest

from recipe_engine.config import Settings, get_settings
from recipe_engine.core.env_contract import list_required_env_names, validate_env_values, validate_runtime_env_or_raise
from recipe_engine.core.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Iterator[None]:
  get_settings.cache_clear()
  yield
  get_settings.cache_clear()


def test_defaults_cover_every_category() -> None:
  settings = Settings()
  assert settings.chunk_size == 5
  assert settings.placeholder_for("breakfast") != settings.placeholder_for("dinner")
  assert settings.fallback_for("unknown-category") == settings.fallback_for("other")


def test_env_overrides_are_parsed(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setenv("RECIPE_ENGINE_CHUNK_SIZE", "8")
  monkeypatch.setenv("RECIPE_ENGINE_IMAGE_CONCURRENCY", "6")
  monkeypatch.setenv("RECIPE_ENGINE_BACKOFF_DISABLE_JITTER", "true")
  monkeypatch.setenv("RECIPE_ENGINE_FALLBACK_ASSETS", json.dumps({"Dessert": "gs://assets/dessert-fallback.webp"}))

  settings = get_settings()

  assert settings.chunk_size == 8
  assert settings.image_concurrency == 6
  assert settings.backoff_jitter is False
  assert settings.fallback_for("dessert") == "gs://assets/dessert-fallback.webp"


@pytest.mark.parametrize(
  ("name", "value"),
  [
    ("RECIPE_ENGINE_CHUNK_SIZE", "zero"),
    ("RECIPE_ENGINE_CHUNK_SIZE", "0"),
    ("RECIPE_ENGINE_IMAGE_TIMEOUT_SECONDS", "-1"),
    ("RECIPE_ENGINE_CONTENT_TIMEOUT_SECONDS", "0"),
    ("RECIPE_ENGINE_IMAGE_TIMEOUT_SECONDS", "0"),
    ("RECIPE_ENGINE_UPLOAD_TIMEOUT_SECONDS", "0"),
  ],
)
def test_invalid_numbers_raise(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
  monkeypatch.setenv(name, value)
  with pytest.raises(ConfigurationError, match=name):
    get_settings()


@pytest.mark.parametrize("field_name", ["content_timeout_seconds", "image_timeout_seconds", "upload_timeout_seconds"])
def test_overrides_cannot_disable_call_timeouts(field_name: str) -> None:
  with pytest.raises(ConfigurationError, match=field_name):
    Settings().with_overrides(**{field_name: 0})


def test_shared_fallback_assets_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setenv("RECIPE_ENGINE_FALLBACK_ASSETS", json.dumps({"lunch": "static/fallbacks/dinner.webp"}))
  with pytest.raises(ConfigurationError, match="shared"):
    get_settings()


def test_env_contract_reports_missing_and_invalid_values() -> None:
  errors = validate_env_values(target="worker", env_map={"RECIPE_ENGINE_ENV": "qa", "RECIPE_ENGINE_PG_DSN": "mysql://db"})
  assert any(error.startswith("GEMINI_API_KEY") for error in errors)
  assert any(error.startswith("RECIPE_ENGINE_ASSET_BUCKET") for error in errors)
  assert any(error.startswith("RECIPE_ENGINE_ENV") for error in errors)
  assert any(error.startswith("RECIPE_ENGINE_PG_DSN") for error in errors)
  assert "RECIPE_ENGINE_ASSET_BUCKET" not in list_required_env_names(target="script")


def test_env_contract_enforcement_can_be_disabled(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
  logger = logging.getLogger("test-env-contract")
  monkeypatch.delenv("GEMINI_API_KEY", raising=False)
  with pytest.raises(ConfigurationError):
    validate_runtime_env_or_raise(logger=logger, target="script")

  monkeypatch.setenv("RECIPE_ENGINE_ENV_CONTRACT_ENFORCE", "0")
  with caplog.at_level(logging.WARNING, logger="test-env-contract"):
    validate_runtime_env_or_raise(logger=logger, target="script")
  assert "enforcement disabled" in caplog.text


def test_secret_values_are_redacted(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
  monkeypatch.setenv("GEMINI_API_KEY", "super-secret-key")
  monkeypatch.delenv("RECIPE_ENGINE_ENV", raising=False)
  logger = logging.getLogger("test-env-contract")
  with caplog.at_level(logging.INFO, logger="test-env-contract"):
    validate_runtime_env_or_raise(logger=logger, target="script")
  assert "super-secret-key" not in caplog.text
  assert "ENV_CHECK key=GEMINI_API_KEY value=<redacted>" in caplog.text
