"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, JsonValue

from jobdispatch.constants import DEFAULT_PRIORITY, JobPriority


class SubmitJobRequest(BaseModel):
    """Request body for submitting a job."""

    identifier: str = Field(..., description="Task identifier")
    payload: JsonValue = Field(default=None, description="JSON payload for the handler")
    queue_name: str | None = Field(default=None, description="Ordering lane")
    run_at: datetime | None = Field(default=None, description="Earliest execution time")
    max_attempts: int | None = Field(default=None, description="Attempts before terminal failure")
    priority: JobPriority = Field(default=DEFAULT_PRIORITY, description="Priority for lane-less jobs")
    job_key: str | None = Field(default=None, description="De-duplication key")

    def options(self) -> dict[str, Any]:
        return self.model_dump(exclude={"identifier", "payload"}, exclude_none=True)


class SubmitJobResponse(BaseModel):
    """Response body after a job was accepted."""

    id: int
    identifier: str
    queue_name: str | None
    run_at: datetime
    max_attempts: int
    created: bool
    message: str = "Job accepted"


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    queue: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
    details: dict[str, Any] | None = None
