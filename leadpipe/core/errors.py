"""Exception taxonomy shared by the discovery, extraction and job layers."""

from __future__ import annotations

from typing import Optional


class LeadPipelineError(RuntimeError):
    """Base class for errors raised by the lead pipeline."""


class ConfigError(LeadPipelineError):
    """Raised when configuration values cannot be parsed."""


class ValidationError(LeadPipelineError, ValueError):
    """Raised when a query, profile or signal payload is malformed."""


class ProviderError(LeadPipelineError):
    """Raised when the places directory fails in a way that compromises discovery."""

    def __init__(self, message: str, status: Optional[str] = None) -> None:
        self.status = status
        self.message = message
        super().__init__(f"{status}: {message}" if status else message)


class ExtractionFailure(LeadPipelineError):
    """Raised when a single candidate's website cannot be fetched or parsed."""

    def __init__(self, reason: str, *, url: Optional[str] = None, status: Optional[int] = None) -> None:
        self.reason = reason
        self.url = url
        self.status = status
        super().__init__(reason)


class PersistenceError(LeadPipelineError):
    """Raised when the lead store rejects a write or read."""

    def __init__(self, operation: str, message: str, *, transient: bool = False) -> None:
        self.operation = operation
        self.transient = transient
        super().__init__(f"{operation} failed: {message}")


class JobNotFoundError(LeadPipelineError, KeyError):
    """Raised when a job id is unknown to the store."""

    def __str__(self) -> str:  # KeyError quotes its argument otherwise
        return str(self.args[0]) if self.args else "job not found"


class JobStateError(LeadPipelineError):
    """Raised when an operation is not allowed in the job's current state."""
