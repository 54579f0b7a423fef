"""
Type definitions for job dispatch.
Contains input/output type definitions grouped by module.
"""

from jobdispatch.types.api import (
    ErrorResponse,
    HealthResponse,
    SubmitJobRequest,
    SubmitJobResponse,
)
from jobdispatch.types.job import (
    JobContext,
    JobHandle,
    JobOptions,
    JobRecord,
    JobResult,
    NewJob,
)
from jobdispatch.types.queue import QueueConnection

__all__ = [
    # API types
    "SubmitJobRequest",
    "SubmitJobResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "JobOptions",
    "NewJob",
    "JobRecord",
    "JobHandle",
    "JobResult",
    "JobContext",
    # Queue contract
    "QueueConnection",
]
