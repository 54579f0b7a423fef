"""
The contract between the dispatch layer and the durable queue.

The submission façade and worker runtime only ever talk to a queue through
this protocol; jobdispatch.db.PostgresConnection is the production
implementation.
"""

from collections.abc import Collection, Iterable
from typing import Protocol

from jobdispatch.types.job import JobRecord, NewJob


class QueueConnection(Protocol):
    """A long-lived connection handle to the durable queue."""

    async def add_job(self, job: NewJob) -> tuple[JobRecord, bool]:
        """Enqueue a job. Returns (record, created)."""
        ...

    async def fetch_job(self, worker_id: str, identifiers: Collection[str]) -> JobRecord | None:
        """
        Lock the next eligible job for worker_id, incrementing its attempts.

        Only jobs whose identifier is in identifiers are considered. A job in
        a lane is only eligible when no other job holds that lane and it is
        the oldest non-failed job of the lane.
        """
        ...

    async def complete_job(self, job_id: int, worker_id: str) -> bool:
        """Remove a successfully executed job and release its lane."""
        ...

    async def fail_job(
        self,
        job_id: int,
        worker_id: str,
        error: str,
        retryable: bool = True,
    ) -> JobRecord | None:
        """Reschedule the job with backoff, or mark it failed when exhausted."""
        ...

    async def extend_locks(self, worker_id: str, job_ids: Iterable[int]) -> int:
        """Refresh the locks worker_id holds on jobs and lanes."""
        ...

    async def active_identifiers(self) -> set[str]:
        """Task identifiers of all jobs that are not terminally failed."""
        ...

    async def get_job(self, job_id: int) -> JobRecord | None:
        ...

    async def queue_depth(self) -> int:
        ...

    async def ping(self) -> None:
        """Raise if the queue is unreachable."""
        ...

    async def close(self) -> None:
        ...
