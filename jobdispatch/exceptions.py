"""
Exception taxonomy for job dispatch.

Submission-time errors (ValidationError, EnqueueError) surface synchronously
to the caller of submit(). Execution-time errors (HandlerError,
AttemptsExhaustedError) never leave the worker runtime.
"""

from typing import Any


class JobDispatchError(Exception):
    """Base exception for job dispatch."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(JobDispatchError):
    """Raised when a submission's identifier, payload or options are malformed."""


class EnqueueError(JobDispatchError):
    """Raised when the queue connection fails while enqueueing."""


class DuplicateIdentifierError(JobDispatchError):
    """Raised when a task identifier is registered twice."""

    def __init__(self, identifier: str):
        super().__init__(
            f"Task identifier already registered: {identifier}",
            {"identifier": identifier},
        )
        self.identifier = identifier


class UnknownTaskError(JobDispatchError):
    """Raised when one or more task identifiers have no registered handler."""

    def __init__(self, missing: list[str] | str):
        if isinstance(missing, str):
            missing = [missing]
        self.missing = sorted(missing)
        super().__init__(
            f"No handler registered for task identifier(s): {', '.join(self.missing)}",
            {"missing": self.missing},
        )


class HandlerError(JobDispatchError):
    """Raised inside the worker when a handler fails or reports failure."""

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.retryable = retryable


class AttemptsExhaustedError(JobDispatchError):
    """A job reached terminal failure and will not be retried."""

    def __init__(self, job_id: int, identifier: str, attempts: int, last_error: str | None):
        super().__init__(
            f"Job {job_id} ({identifier}) failed permanently after {attempts} attempt(s)",
            {
                "job_id": job_id,
                "identifier": identifier,
                "attempts": attempts,
                "last_error": last_error,
            },
        )
        self.job_id = job_id
        self.identifier = identifier
        self.attempts = attempts
        self.last_error = last_error
