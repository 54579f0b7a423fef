"""
SQLAlchemy database models.
Defines the jobs table and the per-lane lock table.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobdispatch.constants import JobPriority, JobStatus


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state. Rows are
    deleted on success; terminally failed jobs stay with status FAILED.

    Key constraints:
    - id is monotonic and defines enqueue order within a lane
    - job_key is unique among jobs that have not failed
    - locked_by/locked_at track the owning worker; a stale locked_at
      makes the job eligible again
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=True,
    )

    task_identifier: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    payload: Mapped[Any] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
    )

    # Ordering lane
    queue_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobStatus.QUEUED,
    )
    priority: Mapped[JobPriority] = mapped_column(
        Enum(JobPriority, name="job_priority", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobPriority.NORMAL,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=3,
    )

    # Scheduling
    run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Locking
    locked_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    job_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        # Index for efficient queue polling
        Index(
            "ix_jobs_poll",
            "status",
            "run_at",
            "id",
        ),
        # Index for head-of-lane checks
        Index(
            "ix_jobs_lane",
            "queue_name",
            "id",
            postgresql_where=text("queue_name IS NOT NULL"),
        ),
        # De-duplication among jobs still in play
        Index(
            "uq_jobs_active_job_key",
            "job_key",
            unique=True,
            postgresql_where=text("status <> 'failed'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, task={self.task_identifier}, queue={self.queue_name}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )


class JobQueue(Base):
    """
    Lane lock. One row per queue_name; at most one worker holds it at a time.
    """

    __tablename__ = "job_queues"

    queue_name: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    locked_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"JobQueue(queue_name={self.queue_name}, locked_by={self.locked_by})"
