"""Initial schema with jobs and job_queues tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create enums using raw SQL with IF NOT EXISTS
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE job_status AS ENUM ('queued', 'locked', 'failed');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.execute("""
        DO $$ BEGIN
            CREATE TYPE job_priority AS ENUM ('low', 'normal', 'high', 'critical');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.create_table(
        "jobs",
        sa.Column("id", sa.BigInteger, autoincrement=True, nullable=False),
        sa.Column("task_identifier", sa.String(255), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("queue_name", sa.String(255), nullable=True),
        sa.Column(
            "status",
            postgresql.ENUM("queued", "locked", "failed", name="job_status", create_type=False),
            nullable=False,
            server_default="queued",
        ),
        sa.Column(
            "priority",
            postgresql.ENUM("low", "normal", "high", "critical", name="job_priority", create_type=False),
            nullable=False,
            server_default="normal",
        ),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column(
            "run_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("job_key", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "job_queues",
        sa.Column("queue_name", sa.String(255), nullable=False),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("queue_name"),
    )

    op.create_index("ix_jobs_poll", "jobs", ["status", "run_at", "id"])

    # Head-of-lane lookups
    op.execute("""
        CREATE INDEX ix_jobs_lane
        ON jobs (queue_name, id)
        WHERE queue_name IS NOT NULL
    """)

    # job_key is unique among jobs that have not failed
    op.execute("""
        CREATE UNIQUE INDEX uq_jobs_active_job_key
        ON jobs (job_key)
        WHERE status <> 'failed'
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS uq_jobs_active_job_key")
    op.execute("DROP INDEX IF EXISTS ix_jobs_lane")
    op.drop_index("ix_jobs_poll")

    op.drop_table("job_queues")
    op.drop_table("jobs")

    op.execute("DROP TYPE IF EXISTS job_status")
    op.execute("DROP TYPE IF EXISTS job_priority")
