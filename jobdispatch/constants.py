"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job states as stored by the queue.

    State transitions:
    - QUEUED -> LOCKED (fetched by a worker slot, attempts incremented)
    - LOCKED -> deleted (handler succeeded)
    - LOCKED -> QUEUED (handler failed, attempts remain; run_at pushed back)
    - LOCKED -> FAILED (attempts exhausted or non-retryable failure)
    - LOCKED -> LOCKED (lock went stale after a crash; re-fetched)
    """

    QUEUED = "queued"
    LOCKED = "locked"
    FAILED = "failed"


class JobPriority(StrEnum):
    """Job priority levels for ordering lane-less work."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class SlotState(StrEnum):
    """Per-slot worker state: IDLE -> FETCHING -> RUNNING -> ACKING|RETRY_SCHEDULING -> IDLE."""

    IDLE = "idle"
    FETCHING = "fetching"
    RUNNING = "running"
    ACKING = "acking"
    RETRY_SCHEDULING = "retry_scheduling"


class WorkerState(StrEnum):
    """Worker process state."""

    STARTING = "starting"
    RUNNING_POOL = "running_pool"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


# Priority weights for ordering (higher = processed first)
PRIORITY_WEIGHTS: dict[JobPriority, int] = {
    JobPriority.LOW: 1,
    JobPriority.NORMAL: 5,
    JobPriority.HIGH: 10,
    JobPriority.CRITICAL: 100,
}

# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_CONCURRENCY = 5
DEFAULT_POLL_INTERVAL_MS = 1000
DEFAULT_LOCK_DURATION_SECONDS = 30
DEFAULT_PRIORITY = JobPriority.NORMAL
MAX_IDENTIFIER_LENGTH = 255
MAX_QUEUE_NAME_LENGTH = 255

# Worker process exit codes
EXIT_OK = 0
EXIT_STARTUP_ERROR = 1
EXIT_CONFIG_ERROR = 2

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_SUBMITTED = "jobs_submitted_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOBS_FETCHED = "jobs_fetched_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_SLOTS_BUSY = "worker_slots_busy"

# Trace span names
SPAN_SUBMIT_JOB = "submit_job"
SPAN_FETCH_JOB = "fetch_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_ACK_JOB = "ack_job"
