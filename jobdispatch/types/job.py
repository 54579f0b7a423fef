"""
Job-related type definitions.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from jobdispatch.constants import (
    DEFAULT_PRIORITY,
    MAX_QUEUE_NAME_LENGTH,
    JobPriority,
    JobStatus,
)


class JobOptions(BaseModel):
    """
    Scheduling options accepted by submit().

    - queue_name: ordering lane; jobs sharing a lane run one at a time, in order
    - run_at: earliest execution time (naive datetimes are read as UTC)
    - max_attempts: attempts before terminal failure
    - priority: ordering among lane-less jobs
    - job_key: de-duplicates against an active job with the same key
    """

    model_config = ConfigDict(extra="forbid")

    queue_name: str | None = Field(default=None, min_length=1, max_length=MAX_QUEUE_NAME_LENGTH)
    run_at: datetime | None = None
    max_attempts: int | None = Field(default=None, ge=1)
    priority: JobPriority = DEFAULT_PRIORITY
    job_key: str | None = Field(default=None, min_length=1, max_length=255)

    @field_validator("run_at")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


@dataclass(frozen=True)
class NewJob:
    """A validated submission, ready to be handed to the queue."""

    identifier: str
    payload: Any
    run_at: datetime
    max_attempts: int
    queue_name: str | None = None
    priority: JobPriority = DEFAULT_PRIORITY
    job_key: str | None = None


@dataclass
class JobRecord:
    """
    A job as seen by the queue.
    Returned by the queue's add/fetch/fail operations.
    """

    id: int
    identifier: str
    payload: Any
    run_at: datetime
    max_attempts: int
    attempts: int = 0
    status: JobStatus = JobStatus.QUEUED
    queue_name: str | None = None
    priority: JobPriority = DEFAULT_PRIORITY
    job_key: str | None = None
    locked_by: str | None = None
    locked_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class JobHandle:
    """Queue-assigned handle returned to the submitter."""

    id: int
    identifier: str
    run_at: datetime
    max_attempts: int
    queue_name: str | None = None
    created: bool = True


class JobResult(BaseModel):
    """
    Explicit outcome a handler may return.

    Returning anything else (including None) counts as success; returning
    JobResult(success=False) reports a failure without raising.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = True


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and a logger bound to the job.
    """

    job_id: int
    identifier: str
    attempt: int
    max_attempts: int
    worker_id: str
    logger: Any
    queue_name: str | None = None

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)
