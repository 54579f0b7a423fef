"""
Database connection management.
Builds the async SQLAlchemy engine behind the queue connection handle.
"""

import logging
from collections.abc import AsyncGenerator, Collection, Iterable
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from jobdispatch.config import get_settings
from jobdispatch.db.models import Job
from jobdispatch.db.repository import JobRepository
from jobdispatch.observability.tracing import instrument_sqlalchemy
from jobdispatch.types.job import JobRecord, NewJob

logger = logging.getLogger(__name__)

_ASYNC_DRIVER_PREFIX = "postgresql+asyncpg://"


def normalize_url(url: str) -> str:
    """
    Point a Postgres URL at the asyncpg driver.

    Args:
        url: A postgres://, postgresql:// or postgresql+asyncpg:// URL.

    Returns:
        The URL with the postgresql+asyncpg scheme.
    """
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return _ASYNC_DRIVER_PREFIX + url[len(prefix):]
    return url


def create_engine(url: str, pooled: bool = True) -> AsyncEngine:
    """
    Create the async database engine.

    Args:
        url: The queue connection string.
        pooled: Use a connection pool; tests pass False to get NullPool.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    settings = get_settings()
    if not pooled:
        return create_async_engine(normalize_url(url), poolclass=NullPool, echo=False)
    return create_async_engine(
        normalize_url(url),
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.log_level == "DEBUG",
        pool_pre_ping=True,
    )


def to_record(job: Job) -> JobRecord:
    """Convert a Job row to the backend-neutral JobRecord."""
    return JobRecord(
        id=job.id,
        identifier=job.task_identifier,
        payload=job.payload,
        run_at=job.run_at,
        max_attempts=job.max_attempts,
        attempts=job.attempts,
        status=job.status,
        queue_name=job.queue_name,
        priority=job.priority,
        job_key=job.job_key,
        locked_by=job.locked_by,
        locked_at=job.locked_at,
        last_error=job.last_error,
        created_at=job.created_at,
    )


class PostgresConnection:
    """
    Queue connection handle backed by Postgres.

    Each operation runs in its own short transaction; the engine's pool is
    the only shared state.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Context manager for a transactional session.

        Yields:
            AsyncSession: Committed on success, rolled back on error.
        """
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def add_job(self, job: NewJob) -> tuple[JobRecord, bool]:
        async with self.session() as session:
            row, created = await JobRepository(session).create_job(job)
            return to_record(row), created

    async def fetch_job(self, worker_id: str, identifiers: Collection[str]) -> JobRecord | None:
        async with self.session() as session:
            row = await JobRepository(session).fetch_job(worker_id, identifiers)
            return to_record(row) if row is not None else None

    async def complete_job(self, job_id: int, worker_id: str) -> bool:
        async with self.session() as session:
            return await JobRepository(session).complete_job(job_id, worker_id)

    async def fail_job(
        self,
        job_id: int,
        worker_id: str,
        error: str,
        retryable: bool = True,
    ) -> JobRecord | None:
        async with self.session() as session:
            row = await JobRepository(session).fail_job(job_id, worker_id, error, retryable)
            return to_record(row) if row is not None else None

    async def extend_locks(self, worker_id: str, job_ids: Iterable[int]) -> int:
        async with self.session() as session:
            return await JobRepository(session).extend_locks(worker_id, job_ids)

    async def active_identifiers(self) -> set[str]:
        async with self.session() as session:
            return await JobRepository(session).active_identifiers()

    async def get_job(self, job_id: int) -> JobRecord | None:
        async with self.session() as session:
            row = await JobRepository(session).get_job(job_id)
            return to_record(row) if row is not None else None

    async def queue_depth(self) -> int:
        async with self.session() as session:
            return await JobRepository(session).get_queue_depth()

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("Queue connection closed")


async def connect(url: str | None = None, pooled: bool = True) -> PostgresConnection:
    """
    Open a queue connection and verify the database is reachable.

    Args:
        url: Connection string. Defaults to settings.connection_string.
        pooled: Whether to pool connections.

    Returns:
        PostgresConnection: The connected handle.
    """
    settings = get_settings()
    engine = create_engine(url or settings.connection_string, pooled=pooled)

    if settings.otel_enabled:
        instrument_sqlalchemy(engine)

    connection = PostgresConnection(engine)
    try:
        await connection.ping()
    except Exception:
        await engine.dispose()
        raise

    logger.info("Queue connection initialized")
    return connection
