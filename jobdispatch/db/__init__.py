"""
Database module.
Contains the Postgres queue engine: models, repository and connection handle.
"""

from jobdispatch.db.connection import (
    PostgresConnection,
    connect,
    create_engine,
    normalize_url,
)
from jobdispatch.db.models import Base, Job, JobQueue
from jobdispatch.db.repository import JobRepository, compute_backoff

__all__ = [
    "connect",
    "create_engine",
    "normalize_url",
    "PostgresConnection",
    "JobRepository",
    "compute_backoff",
    "Job",
    "JobQueue",
    "Base",
]
