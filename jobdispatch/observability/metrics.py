"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobdispatch.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_FETCHED,
    METRIC_JOBS_SUBMITTED,
    METRIC_QUEUE_DEPTH,
    METRIC_SLOTS_BUSY,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for job dispatch.

    Collects metrics for:
    - Job submissions per task identifier
    - Job outcomes and execution duration
    - Fetches and busy worker slots
    - Queue depth
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs waiting in the queue",
            registry=self._registry,
        )

        self.jobs_submitted = Counter(
            METRIC_JOBS_SUBMITTED,
            "Total number of jobs submitted",
            ["identifier"],
            registry=self._registry,
        )

        # status is succeeded, retried or failed
        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of job executions by outcome",
            ["identifier", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["identifier", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.jobs_fetched = Counter(
            METRIC_JOBS_FETCHED,
            "Total number of jobs locked by workers",
            ["worker_id"],
            registry=self._registry,
        )

        self.slots_busy = Gauge(
            METRIC_SLOTS_BUSY,
            "Worker slots currently running a job",
            ["worker_id"],
            registry=self._registry,
        )

    def record_job_submitted(self, identifier: str) -> None:
        """Record a job submission."""
        self.jobs_submitted.labels(identifier=identifier).inc()

    def record_job_completed(
        self,
        identifier: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of one job execution."""
        self.jobs_completed.labels(identifier=identifier, status=status).inc()
        self.job_duration.labels(identifier=identifier, status=status).observe(
            duration_seconds
        )

    def record_job_fetched(self, worker_id: str) -> None:
        self.jobs_fetched.labels(worker_id=worker_id).inc()

    def set_slots_busy(self, worker_id: str, busy: int) -> None:
        self.slots_busy.labels(worker_id=worker_id).set(busy)

    def update_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
