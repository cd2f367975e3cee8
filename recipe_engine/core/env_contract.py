"""Runtime environment contract checks for batch workers and operator scripts.

How/Why:
- Keep collaborator configuration explicit so a missing credential fails before any chunk starts.
- Prevent secret leakage by redacting sensitive values in startup logs.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from recipe_engine.core.exceptions import ConfigurationError

EnvUseTarget = Literal["worker", "script", "both"]
EnvValidator = Callable[[str, dict[str, str]], str | None]


@dataclass(frozen=True)
class EnvVarDefinition:
  """Describe how and where an environment variable must be validated."""

  name: str
  required: bool
  secret: bool
  used_by: EnvUseTarget
  validator: EnvValidator | None = None


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  if raw is None:
    return default

  return raw.strip().lower() in {"1", "true", "yes", "on"}


def _validate_non_empty(value: str, _: dict[str, str]) -> str | None:
  """Ensure a value is not blank after trimming whitespace."""
  if value.strip() == "":
    return "must not be empty."

  return None


def _validate_environment_name(value: str, _: dict[str, str]) -> str | None:
  normalized = value.strip().lower()
  if normalized in {"dev", "development", "stage", "staging", "prod", "production", "test", "testing"}:
    return None

  return "must be one of: development, stage, production, test (or aliases)."


def _validate_dsn(value: str, _: dict[str, str]) -> str | None:
  """Only Postgres DSNs are supported by the item repository."""
  if value.startswith(("postgresql://", "postgresql+asyncpg://", "postgres://")):
    return None

  return "must be a postgresql:// DSN."


REQUIRED_ENV_REGISTRY: tuple[EnvVarDefinition, ...] = (
  EnvVarDefinition(name="RECIPE_ENGINE_ENV", required=False, secret=False, used_by="both", validator=_validate_environment_name),
  EnvVarDefinition(name="GEMINI_API_KEY", required=True, secret=True, used_by="both", validator=_validate_non_empty),
  EnvVarDefinition(name="RECIPE_ENGINE_ASSET_BUCKET", required=True, secret=False, used_by="worker", validator=_validate_non_empty),
  EnvVarDefinition(name="GCP_PROJECT_ID", required=False, secret=False, used_by="worker", validator=_validate_non_empty),
  EnvVarDefinition(name="RECIPE_ENGINE_PG_DSN", required=False, secret=True, used_by="worker", validator=_validate_dsn),
)


def _iter_applicable_definitions(*, target: Literal["worker", "script"]) -> tuple[EnvVarDefinition, ...]:
  return tuple(definition for definition in REQUIRED_ENV_REGISTRY if definition.used_by in {"both", target})


def list_required_env_names(*, target: Literal["worker", "script"]) -> tuple[str, ...]:
  """Expose required key names for deploy automation."""
  return tuple(definition.name for definition in _iter_applicable_definitions(target=target) if definition.required)


def validate_env_values(*, target: Literal["worker", "script"], env_map: dict[str, str]) -> list[str]:
  """Validate a provided env map against contract rules for a target process."""
  errors: list[str] = []
  for definition in _iter_applicable_definitions(target=target):
    value = env_map.get(definition.name, "")
    if definition.required and value.strip() == "":
      errors.append(f"{definition.name}: required variable is missing.")
      continue

    if definition.validator and value.strip() != "":
      validation_error = definition.validator(value, env_map)
      if validation_error:
        errors.append(f"{definition.name}: {validation_error}")

  return errors


def validate_runtime_env_or_raise(*, logger: logging.Logger, target: Literal["worker", "script"]) -> None:
  """Validate and log runtime env values; raise ConfigurationError when enforcement is on."""
  # Enforcement defaults on; local experiments can opt out with RECIPE_ENGINE_ENV_CONTRACT_ENFORCE=0.
  enforce = _parse_bool(os.getenv("RECIPE_ENGINE_ENV_CONTRACT_ENFORCE"), default=True)
  resolved_values: dict[str, str] = {}
  applicable_definitions = _iter_applicable_definitions(target=target)
  for definition in applicable_definitions:
    value = os.getenv(definition.name, "")
    resolved_values[definition.name] = value
    if definition.secret:
      logger.info("ENV_CHECK key=%s value=<redacted>", definition.name)
    elif value == "":
      logger.info("ENV_CHECK key=%s value=<missing>", definition.name)
    else:
      logger.info("ENV_CHECK key=%s value=%s", definition.name, value)

  errors = validate_env_values(target=target, env_map=resolved_values)
  if not errors:
    logger.info("ENV_CHECK status=ok target=%s checked=%d", target, len(applicable_definitions))
    return

  message = "ENV_CHECK status=failed target={target} violations:\n- {errors}".format(target=target, errors="\n- ".join(errors))
  if enforce:
    logger.error(message)
    raise ConfigurationError(message)

  logger.warning("ENV_CHECK enforcement disabled by RECIPE_ENGINE_ENV_CONTRACT_ENFORCE=0")
  logger.warning(message)
