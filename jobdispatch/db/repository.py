"""
Job repository for database operations.
Implements the queue engine's data access patterns.
"""

import logging
from collections.abc import Collection, Iterable
from datetime import UTC, datetime, timedelta

from sqlalchemy import String, bindparam, delete, func, select, text, update
from sqlalchemy.dialects.postgresql import ARRAY, insert
from sqlalchemy.ext.asyncio import AsyncSession

from jobdispatch.config import get_settings
from jobdispatch.constants import PRIORITY_WEIGHTS, JobStatus
from jobdispatch.db.models import Job, JobQueue
from jobdispatch.types.job import NewJob

logger = logging.getLogger(__name__)


_PRIORITY_ORDER = " ".join(
    f"WHEN '{priority.value}' THEN {weight}" for priority, weight in PRIORITY_WEIGHTS.items()
)

# Locks the next eligible job and, for laned jobs, its lane row in one
# statement. A lane is only available when its job_queues row is unlocked
# (or stale) and the candidate is the lowest-id job of the lane that has not
# failed, which keeps lanes strictly sequential and in enqueue order. The
# lane row is locked by the UPDATE in locked_queue, which re-checks the lock
# after waiting; a job is only claimed if its lane was claimed too.
_FETCH_JOB_SQL = text(f"""
    WITH candidate AS (
        SELECT j.id, j.queue_name
        FROM jobs j
        WHERE j.task_identifier = ANY(:identifiers)
          AND j.run_at <= :now
          AND (
                j.status = 'queued'
                OR (
                    j.status = 'locked'
                    AND j.locked_at < :stale_before
                    AND j.attempts < j.max_attempts
                )
          )
          AND (
                j.queue_name IS NULL
                OR (
                    EXISTS (
                        SELECT 1
                        FROM job_queues q
                        WHERE q.queue_name = j.queue_name
                          AND (q.locked_at IS NULL OR q.locked_at < :stale_before)
                    )
                    AND NOT EXISTS (
                        SELECT 1
                        FROM jobs e
                        WHERE e.queue_name = j.queue_name
                          AND e.status <> 'failed'
                          AND e.id < j.id
                    )
                )
          )
        ORDER BY
            CASE j.priority {_PRIORITY_ORDER} END DESC,
            j.run_at ASC,
            j.id ASC
        LIMIT 1
        FOR UPDATE OF j SKIP LOCKED
    ),
    locked_queue AS (
        UPDATE job_queues q
        SET locked_by = :worker_id,
            locked_at = :now
        FROM candidate c
        WHERE q.queue_name = c.queue_name
          AND (q.locked_at IS NULL OR q.locked_at < :stale_before)
        RETURNING q.queue_name
    )
    UPDATE jobs j
    SET status = 'locked',
        locked_by = :worker_id,
        locked_at = :now,
        attempts = j.attempts + 1,
        updated_at = :now
    FROM candidate c
    WHERE j.id = c.id
      AND (c.queue_name IS NULL OR EXISTS (SELECT 1 FROM locked_queue))
    RETURNING j.id
""").bindparams(bindparam("identifiers", type_=ARRAY(String)))

# A stale lock on a job with no attempts left means its worker died during
# the final attempt; the job is failed instead of being run again.
_FAIL_EXHAUSTED_SQL = text("""
    UPDATE jobs
    SET status = 'failed',
        locked_by = NULL,
        locked_at = NULL,
        last_error = :error,
        updated_at = :now
    WHERE id IN (
        SELECT id
        FROM jobs
        WHERE status = 'locked'
          AND locked_at < :stale_before
          AND attempts >= max_attempts
        FOR UPDATE SKIP LOCKED
    )
    RETURNING id
""")

EXHAUSTED_LOCK_ERROR = "Lock expired during the final attempt"


def compute_backoff(attempts: int, base: float, cap: float) -> timedelta:
    """
    Delay before the next attempt: base ** attempts seconds, capped.

    Args:
        attempts: Attempts made so far (>= 1 after a failure).
        base: Exponential base in seconds.
        cap: Maximum delay in seconds.

    Returns:
        The delay as a timedelta.
    """
    if base <= 0:
        return timedelta(0)
    try:
        seconds = base ** attempts
    except OverflowError:
        seconds = cap
    return timedelta(seconds=min(seconds, cap))


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Job submission with optional job_key de-duplication
    - Lock acquisition with FOR UPDATE SKIP LOCKED and lane exclusivity
    - Ack (delete) and retry/terminal-failure transitions
    - Lock refresh for in-flight jobs
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session
        self._settings = get_settings()

    async def create_job(self, new_job: NewJob) -> tuple[Job, bool]:
        """
        Insert a job, registering its lane if it has one.

        A job_key that matches an active (not failed) job returns that job
        instead of inserting.

        Args:
            new_job: The validated submission.

        Returns:
            Tuple of (Job, created) where created is True if a new row was inserted.
        """
        if new_job.queue_name is not None:
            await self._session.execute(
                insert(JobQueue)
                .values(queue_name=new_job.queue_name)
                .on_conflict_do_nothing(index_elements=["queue_name"])
            )

        stmt = insert(Job).values(
            task_identifier=new_job.identifier,
            payload=new_job.payload,
            queue_name=new_job.queue_name,
            priority=new_job.priority,
            run_at=new_job.run_at,
            max_attempts=new_job.max_attempts,
            job_key=new_job.job_key,
            status=JobStatus.QUEUED,
        )
        if new_job.job_key is not None:
            stmt = stmt.on_conflict_do_nothing(
                index_elements=["job_key"],
                index_where=text("status <> 'failed'"),
            )

        result = await self._session.execute(stmt.returning(Job))
        job = result.scalar_one_or_none()

        if job is not None:
            logger.info(
                "Created new job",
                extra={"job_id": job.id, "task": new_job.identifier, "queue_name": new_job.queue_name},
            )
            return job, True

        existing = await self.get_active_job_by_key(new_job.job_key)
        if existing is None:
            raise RuntimeError("Job should exist after job_key conflict")

        logger.info(
            "Returned existing job for job_key",
            extra={"job_id": existing.id, "job_key": new_job.job_key},
        )
        return existing, False

    async def get_job(self, job_id: int) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job id.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_job_by_key(self, job_key: str | None) -> Job | None:
        if job_key is None:
            return None
        stmt = select(Job).where(
            Job.job_key == job_key,
            Job.status != JobStatus.FAILED,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def fetch_job(
        self,
        worker_id: str,
        identifiers: Collection[str],
    ) -> Job | None:
        """
        Lock the next eligible job for a worker.

        This is the critical path for job distribution. Jobs whose lock is
        older than the lock duration are treated as abandoned and are
        eligible again, unless that was their final attempt, in which case
        they are failed first.

        Args:
            worker_id: The worker identifier.
            identifiers: Task identifiers the worker can execute.

        Returns:
            The locked Job, or None when nothing is eligible.
        """
        if not identifiers:
            return None

        now = datetime.now(UTC)
        stale_before = now - timedelta(seconds=self._settings.worker_lock_duration_seconds)

        await self.fail_exhausted_locks(now, stale_before)

        result = await self._session.execute(
            _FETCH_JOB_SQL,
            {
                "identifiers": list(identifiers),
                "worker_id": worker_id,
                "now": now,
                "stale_before": stale_before,
            },
        )
        job_id = result.scalar_one_or_none()
        if job_id is None:
            return None

        job = await self.get_job(job_id)
        if job is not None:
            logger.info(
                "Locked job",
                extra={"job_id": job_id, "worker_id": worker_id, "attempt": job.attempts},
            )
        return job

    async def fail_exhausted_locks(self, now: datetime, stale_before: datetime) -> list[int]:
        """
        Fail jobs whose worker died during their final attempt.

        Returns:
            Ids of the jobs that were failed.
        """
        result = await self._session.execute(
            _FAIL_EXHAUSTED_SQL,
            {"error": EXHAUSTED_LOCK_ERROR, "now": now, "stale_before": stale_before},
        )
        job_ids = list(result.scalars().all())
        for job_id in job_ids:
            logger.warning(
                "Job failed permanently: lock expired on final attempt",
                extra={"job_id": job_id},
            )
        return job_ids

    async def _release_lane(self, queue_name: str | None, worker_id: str) -> None:
        if queue_name is None:
            return
        await self._session.execute(
            update(JobQueue)
            .where(
                JobQueue.queue_name == queue_name,
                JobQueue.locked_by == worker_id,
            )
            .values(locked_by=None, locked_at=None)
        )

    async def complete_job(self, job_id: int, worker_id: str) -> bool:
        """
        Remove a successfully executed job and release its lane.

        Args:
            job_id: The job id.
            worker_id: The worker identifier (must match the lock owner).

        Returns:
            True if the job was removed, False if the worker no longer owned it.
        """
        stmt = (
            delete(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.LOCKED,
                Job.locked_by == worker_id,
            )
            .returning(Job.queue_name)
        )
        result = await self._session.execute(stmt)
        row = result.one_or_none()
        if row is None:
            logger.warning(
                "Worker doesn't own job lock",
                extra={"job_id": job_id, "worker_id": worker_id},
            )
            return False

        await self._release_lane(row.queue_name, worker_id)
        logger.info("Job completed successfully", extra={"job_id": job_id})
        return True

    async def fail_job(
        self,
        job_id: int,
        worker_id: str,
        error: str,
        retryable: bool = True,
    ) -> Job | None:
        """
        Handle job failure. Either reschedule with backoff or mark failed.

        Args:
            job_id: The job id.
            worker_id: The worker identifier.
            error: Error message.
            retryable: False sends the job straight to terminal failure.

        Returns:
            Updated Job or None if the worker no longer owned it.
        """
        job = await self.get_job(job_id)
        if job is None:
            return None

        if job.locked_by != worker_id or job.status != JobStatus.LOCKED:
            logger.warning(
                "Worker doesn't own job lock",
                extra={"job_id": job_id, "worker_id": worker_id},
            )
            return None

        now = datetime.now(UTC)
        values: dict = {
            "last_error": error,
            "updated_at": now,
            "locked_by": None,
            "locked_at": None,
        }

        if not retryable or job.attempts >= job.max_attempts:
            values["status"] = JobStatus.FAILED
            logger.warning(
                f"Job failed permanently after {job.attempts} attempts",
                extra={"job_id": job_id, "error": error, "retryable": retryable},
            )
        else:
            delay = compute_backoff(
                job.attempts,
                self._settings.retry_backoff_base_seconds,
                self._settings.retry_backoff_max_seconds,
            )
            values["status"] = JobStatus.QUEUED
            values["run_at"] = now + delay
            logger.info(
                "Job queued for retry",
                extra={"job_id": job_id, "attempt": job.attempts, "delay": delay.total_seconds()},
            )

        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.LOCKED,
                Job.locked_by == worker_id,
            )
            .values(**values)
            .returning(Job)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        updated = result.scalar_one_or_none()

        if updated is not None:
            await self._release_lane(updated.queue_name, worker_id)
        return updated

    async def extend_locks(self, worker_id: str, job_ids: Iterable[int]) -> int:
        """
        Refresh locks held by a worker (heartbeat).

        Only the lanes of the given jobs are refreshed, so a lane whose job
        was abandoned goes stale with it.

        Args:
            worker_id: The worker identifier.
            job_ids: Jobs currently executing on this worker.

        Returns:
            Number of job locks refreshed.
        """
        job_ids = list(job_ids)
        if not job_ids:
            return 0

        now = datetime.now(UTC)
        result = await self._session.execute(
            update(Job)
            .where(
                Job.id.in_(job_ids),
                Job.locked_by == worker_id,
                Job.status == JobStatus.LOCKED,
            )
            .values(locked_at=now, updated_at=now)
            .returning(Job.queue_name)
        )
        queue_names = result.scalars().all()
        lanes = {queue_name for queue_name in queue_names if queue_name is not None}
        if lanes:
            await self._session.execute(
                update(JobQueue)
                .where(
                    JobQueue.queue_name.in_(sorted(lanes)),
                    JobQueue.locked_by == worker_id,
                )
                .values(locked_at=now)
            )
        return len(queue_names)

    async def active_identifiers(self) -> set[str]:
        """
        Get the task identifiers of all jobs still in the active queue.

        Returns:
            Set of task identifiers.
        """
        stmt = select(Job.task_identifier).where(Job.status != JobStatus.FAILED).distinct()
        result = await self._session.execute(stmt)
        return set(result.scalars().all())

    async def get_queue_depth(self) -> int:
        """
        Get the number of queued jobs.

        Returns:
            Number of queued jobs.
        """
        stmt = select(func.count()).select_from(Job).where(Job.status == JobStatus.QUEUED)
        result = await self._session.execute(stmt)
        return result.scalar() or 0
