"""Error taxonomy shared by every stage of the recipe batch pipeline."""

from __future__ import annotations

from typing import Literal

ErrorCategory = Literal["configuration", "invalid_request", "transient", "rate_limit", "validation", "storage", "timeout", "deadline", "backlog", "cancelled", "unknown"]


class PipelineError(Exception):
  """Base class for classified pipeline failures."""

  category: ErrorCategory = "unknown"

  def __init__(self, message: str) -> None:
    super().__init__(message)
    self.message = message


class ConfigurationError(PipelineError):
  """Raised when a collaborator or request is misconfigured; fatal before work starts."""

  category: ErrorCategory = "configuration"


class TransientExternalError(PipelineError):
  """Raised for rate limits, network blips and malformed provider responses."""

  category: ErrorCategory = "transient"

  def __init__(self, message: str, *, rate_limited: bool = False, status_code: int | None = None) -> None:
    super().__init__(message)
    self.rate_limited = rate_limited
    self.status_code = status_code
    if rate_limited:
      self.category = "rate_limit"


class ProviderRequestError(PipelineError):
  """Raised when a provider rejects the request itself; resending it cannot succeed."""

  category: ErrorCategory = "invalid_request"

  def __init__(self, message: str, *, status_code: int | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code


class DraftValidationError(PipelineError):
  """Raised when a generated draft fails structural or numeric checks."""

  category: ErrorCategory = "validation"

  def __init__(self, message: str, *, reasons: list[str] | None = None) -> None:
    super().__init__(message)
    self.reasons = list(reasons or [])


class StorageError(PipelineError):
  """Raised when the item repository or asset store rejects a write."""

  category: ErrorCategory = "storage"


class StageTimeoutError(PipelineError):
  """Raised when a stage exceeds its per-call time bound."""

  category: ErrorCategory = "timeout"

  def __init__(self, message: str, *, timeout_seconds: float | None = None) -> None:
    super().__init__(message)
    self.timeout_seconds = timeout_seconds


class RetryExhaustedError(PipelineError):
  """Raised when a retryable operation keeps failing past its attempt budget."""

  def __init__(self, operation_name: str, *, attempts: int, last_error: BaseException, category: ErrorCategory) -> None:
    super().__init__(f"{operation_name} failed after {attempts} attempt(s): {last_error}")
    self.operation_name = operation_name
    self.attempts = attempts
    self.last_error = last_error
    self.category = category


class OperationCancelledError(PipelineError):
  """Raised when a retry loop stops because its owner no longer wants the result."""

  category: ErrorCategory = "cancelled"

  def __init__(self, operation_name: str, *, attempts: int) -> None:
    super().__init__(f"{operation_name} stopped after {attempts} attempt(s).")
    self.operation_name = operation_name
    self.attempts = attempts


class InvalidTransitionError(RuntimeError):
  """Raised when a job, chunk or image task is moved along an illegal edge."""


class JobNotFoundError(KeyError):
  """Raised when a caller references an unknown job id."""

  def __init__(self, job_id: str) -> None:
    super().__init__(job_id)
    self.job_id = job_id

  def __str__(self) -> str:
    return f"Job {self.job_id} not found."
