"""
Exception hierarchy for the collector.

Only ``MissingPermissionError`` is recovered from inside a run; every other
error raised during collection aborts it.
"""

from __future__ import annotations


class CollectorError(Exception):
    """Base class for all collector errors."""


class ConfigError(CollectorError):
    """Raised when the run configuration cannot be resolved."""


class MissingPermissionError(CollectorError):
    """Raised by a resource client when the API answers with a 403.

    ``permission`` is the IAM permission the failed call requires.
    """

    def __init__(self, permission: str, cause: Exception | None = None) -> None:
        self.permission = permission
        self.cause = cause
        message = f"Missing permission: {permission}"
        if cause is not None:
            message = f"{message} ({cause})"
        super().__init__(message)


class PaginationError(CollectorError):
    """Raised when a paginated listing returns a page token it already returned."""


class MalformedResourceNameError(CollectorError, ValueError):
    """Raised when a hierarchical resource name does not match its pattern."""


class JobStateError(CollectorError):
    """Raised when a write to the job state violates one of its invariants."""


class MissingEndpointError(JobStateError):
    """Raised when a relationship references an entity that is not in the job state."""


class StepGraphError(CollectorError):
    """Raised when the step registry is not a valid dependency graph."""
