"""Retry logic with failure classification and exponential backoff."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from recipe_engine.core.exceptions import ConfigurationError, DraftValidationError, ErrorCategory, OperationCancelledError, PipelineError, RetryExhaustedError, StageTimeoutError, StorageError, TransientExternalError

T = TypeVar("T")
logger = logging.getLogger(__name__)

RetryHook = Callable[[int, BaseException, float], None]
ContinueCheck = Callable[[], bool]

_RATE_LIMIT_PATTERNS = ("429", "too many requests", "resource exhausted", "resource_exhausted", "quota exceeded", "rate limit")
_CREDENTIAL_PATTERNS = ("api key not valid", "api_key_invalid", "permission denied", "unauthenticated", "401", "403")


@dataclass(frozen=True)
class FailureClassification:
  """Classification result for a failed external call."""

  retryable: bool
  category: ErrorCategory
  reason: str


def classify_failure(exc: BaseException) -> FailureClassification:
  """
  Classify a failure as retryable or terminal.

  Primary signal: the pipeline's own exception taxonomy.
  Fallback: builtin timeout, httpx transport errors, then message patterns
  for rate limits and rejected credentials coming from provider SDKs.
  """
  if isinstance(exc, ConfigurationError):
    return FailureClassification(retryable=False, category="configuration", reason=exc.message)

  if isinstance(exc, DraftValidationError):
    return FailureClassification(retryable=False, category="validation", reason=exc.message)

  if isinstance(exc, TransientExternalError):
    return FailureClassification(retryable=True, category=exc.category, reason=exc.message)

  if isinstance(exc, StageTimeoutError | TimeoutError):
    return FailureClassification(retryable=True, category="timeout", reason=str(exc) or "Stage timed out")

  if isinstance(exc, StorageError):
    return FailureClassification(retryable=True, category="storage", reason=exc.message)

  if isinstance(exc, httpx.TimeoutException):
    return FailureClassification(retryable=True, category="timeout", reason=f"HTTP timeout: {type(exc).__name__}")

  if isinstance(exc, httpx.TransportError):
    return FailureClassification(retryable=True, category="transient", reason=f"HTTP transport error: {type(exc).__name__}")

  if isinstance(exc, PipelineError):
    return FailureClassification(retryable=False, category=exc.category, reason=exc.message)

  # Provider SDKs surface quota and credential problems only through their messages.
  error_msg = str(exc).lower()
  if any(pattern in error_msg for pattern in _RATE_LIMIT_PATTERNS):
    return FailureClassification(retryable=True, category="rate_limit", reason="Provider rate limit or quota reached")
  if any(pattern in error_msg for pattern in _CREDENTIAL_PATTERNS):
    return FailureClassification(retryable=False, category="configuration", reason="Provider rejected credentials")

  return FailureClassification(retryable=False, category="unknown", reason=f"Unknown error type: {type(exc).__name__}")


def compute_backoff_delay(attempt: int, *, base_delay: float, max_delay: float, jitter: bool = True) -> float:
  """Return the sleep before retry number `attempt` (1-based) with optional +/-25% jitter."""
  delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
  if jitter and delay > 0:
    jitter_range = delay * 0.25
    delay += random.uniform(-jitter_range, jitter_range)
  return max(delay, 0.0)


async def retry_with_backoff(
  func: Callable[[], Awaitable[T]],
  *,
  operation_name: str,
  max_attempts: int,
  base_delay: float = 1.0,
  max_delay: float = 30.0,
  timeout: float | None = None,
  jitter: bool = True,
  on_retry: RetryHook | None = None,
  should_continue: ContinueCheck | None = None,
) -> T:
  """
  Execute an async callable with per-attempt timeout and bounded retries.

  Args:
    func: Zero-argument async callable; called once per attempt.
    operation_name: Human-readable name for logging (e.g., "chunk_3_generate").
    max_attempts: Total attempts including the first one.
    base_delay: Delay before the first retry, doubled per retry.
    max_delay: Upper bound for any single delay.
    timeout: Per-attempt bound in seconds; exceeding it counts as a retryable timeout.
    jitter: Add randomness to the delay to avoid thundering herds.
    on_retry: Called with (attempt, error, delay) before each sleep.
    should_continue: Checked before every attempt and before every backoff
      sleep; returning False stops the loop with OperationCancelledError.

  Raises:
    The original exception when it is not retryable, otherwise RetryExhaustedError.
  """
  attempts = max(max_attempts, 1)
  attempt = 0

  while True:
    if should_continue is not None and not should_continue():
      logger.info("Operation stopped before attempt: operation=%s, attempt=%d/%d", operation_name, attempt + 1, attempts)
      raise OperationCancelledError(operation_name, attempts=attempt)
    attempt += 1
    try:
      if timeout is None:
        result = await func()
      else:
        try:
          result = await asyncio.wait_for(func(), timeout=timeout)
        except TimeoutError as exc:
          raise StageTimeoutError(f"{operation_name} exceeded {timeout:.1f}s", timeout_seconds=timeout) from exc
      if attempt > 1:
        logger.info("Operation succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, attempts)
      return result

    except Exception as exc:
      classification = classify_failure(exc)
      logger.warning(
        "Operation failed: operation=%s, attempt=%d/%d, category=%s, retryable=%s, reason=%s",
        operation_name,
        attempt,
        attempts,
        classification.category,
        classification.retryable,
        classification.reason,
        exc_info=(not classification.retryable),
      )

      # Non-retryable error - fail fast with the original exception.
      if not classification.retryable:
        raise

      if attempt >= attempts:
        logger.error("Operation gave up: operation=%s, attempts=%d, category=%s", operation_name, attempts, classification.category)
        raise RetryExhaustedError(operation_name, attempts=attempt, last_error=exc, category=classification.category) from exc

      if should_continue is not None and not should_continue():
        logger.info("Operation stopped before retry: operation=%s, attempt=%d/%d, category=%s", operation_name, attempt, attempts, classification.category)
        raise OperationCancelledError(operation_name, attempts=attempt) from exc

      delay = compute_backoff_delay(attempt, base_delay=base_delay, max_delay=max_delay, jitter=jitter)
      if on_retry is not None:
        on_retry(attempt, exc, delay)
      logger.info("Retrying after backoff: operation=%s, attempt=%d/%d, delay_s=%.2f, category=%s", operation_name, attempt, attempts, delay, classification.category)
      await asyncio.sleep(delay)
