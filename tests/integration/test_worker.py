"""
Integration tests for the worker against Postgres.

Require a reachable test database (TEST_DATABASE_URL); skipped otherwise.
"""

import asyncio
from datetime import UTC, datetime

import pytest

from jobdispatch.client import DispatchClient
from jobdispatch.constants import JobStatus
from jobdispatch.db.connection import PostgresConnection
from jobdispatch.exceptions import UnknownTaskError
from jobdispatch.registry import JobRegistry
from jobdispatch.submit import submit
from jobdispatch.types.job import JobContext
from jobdispatch.worker.main import Worker


@pytest.fixture
def pg_dispatch(pg_connection: PostgresConnection) -> DispatchClient:
    async def factory() -> PostgresConnection:
        return pg_connection

    return DispatchClient(factory=factory)


async def run_until_idle(worker: Worker, connection: PostgresConnection, timeout: float = 10.0) -> None:
    """Run the worker until no job is left queued or locked."""
    task = asyncio.create_task(worker.start())
    try:
        async with asyncio.timeout(timeout):
            while await connection.active_identifiers():
                if task.done():
                    task.result()
                await asyncio.sleep(0.05)
    finally:
        await worker.stop()
        await task


class TestWorkerIntegration:
    """Integration tests for worker job processing."""

    async def test_full_job_lifecycle_success(
        self,
        pg_connection: PostgresConnection,
        pg_dispatch: DispatchClient,
        job_registry: JobRegistry,
    ):
        """Test complete job lifecycle: submit -> fetch -> run -> delete."""
        greeted = []

        @job_registry.task("hello")
        async def hello(payload, context: JobContext):
            greeted.append(payload["name"])

        handle = await submit("hello", {"name": "Test"}, client=pg_dispatch, registry=job_registry)
        worker = Worker(pg_connection, job_registry, worker_id="it-worker", poll_interval=0.05)

        await run_until_idle(worker, pg_connection)

        assert greeted == ["Test"]
        assert await pg_connection.get_job(handle.id) is None

    async def test_retry_until_failed(
        self,
        pg_connection: PostgresConnection,
        pg_dispatch: DispatchClient,
        job_registry: JobRegistry,
    ):
        """Test an always-failing job runs max_attempts times."""
        attempts = []

        @job_registry.task("always_fails")
        async def always_fails(payload, context: JobContext):
            attempts.append(context.attempt)
            raise RuntimeError("nope")

        handle = await submit(
            "always_fails",
            {},
            {"max_attempts": 3},
            client=pg_dispatch,
            registry=job_registry,
        )
        worker = Worker(pg_connection, job_registry, worker_id="it-worker", poll_interval=0.05)

        await run_until_idle(worker, pg_connection)

        job = await pg_connection.get_job(handle.id)
        assert attempts == [1, 2, 3]
        assert job.status == JobStatus.FAILED
        assert job.attempts == 3
        assert "nope" in job.last_error

    async def test_lane_processed_in_event_order(
        self,
        pg_connection: PostgresConnection,
        pg_dispatch: DispatchClient,
        job_registry: JobRegistry,
    ):
        """Test webhook events in one lane run sequentially in submit order."""
        in_lane = 0
        overlap = False
        processed = []

        @job_registry.task("stripe_event")
        async def stripe_event(payload, context: JobContext):
            nonlocal in_lane, overlap
            in_lane += 1
            overlap = overlap or in_lane > 1
            await asyncio.sleep(0.01)
            processed.append(datetime.fromisoformat(payload["created"]))
            in_lane -= 1

        for _ in range(8):
            await submit(
                "stripe_event",
                {"created": datetime.now(UTC).isoformat()},
                {"queue_name": "stripe-webhooks"},
                client=pg_dispatch,
                registry=job_registry,
            )

        worker = Worker(pg_connection, job_registry, worker_id="it-worker", concurrency=4, poll_interval=0.02)
        await run_until_idle(worker, pg_connection)

        assert overlap is False
        assert len(processed) == 8
        assert processed == sorted(processed)

    async def test_two_workers_execute_each_job_once(
        self,
        pg_connection: PostgresConnection,
        pg_dispatch: DispatchClient,
    ):
        executed = []

        def make_registry() -> JobRegistry:
            registry = JobRegistry("it")

            @registry.task("count")
            async def count(payload, context: JobContext):
                await asyncio.sleep(0.01)
                executed.append(payload["n"])

            return registry

        for n in range(20):
            await submit("count", {"n": n}, client=pg_dispatch, registry=JobRegistry("producer"))

        workers = [
            Worker(pg_connection, make_registry(), worker_id=f"it-worker-{i}", concurrency=3, poll_interval=0.02)
            for i in range(2)
        ]
        tasks = [asyncio.create_task(worker.start()) for worker in workers]
        try:
            async with asyncio.timeout(10):
                while await pg_connection.active_identifiers():
                    await asyncio.sleep(0.05)
        finally:
            for worker in workers:
                await worker.stop()
            await asyncio.gather(*tasks)

        assert sorted(executed) == list(range(20))

    async def test_unknown_identifier_fails_startup(
        self,
        pg_connection: PostgresConnection,
        pg_dispatch: DispatchClient,
        job_registry: JobRegistry,
    ):
        job_registry.register("hello", lambda payload, context: None)
        handle = await submit("unhandled", {}, client=pg_dispatch, registry=job_registry)

        worker = Worker(pg_connection, job_registry, worker_id="it-worker")

        with pytest.raises(UnknownTaskError) as exc_info:
            await worker.start()

        assert exc_info.value.missing == ["unhandled"]
        job = await pg_connection.get_job(handle.id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 0
