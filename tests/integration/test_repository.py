"""
Integration tests for the Postgres queue.

Require a reachable test database (TEST_DATABASE_URL); skipped otherwise.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import sqlalchemy as sa

from jobdispatch.constants import JobPriority, JobStatus
from jobdispatch.db.connection import PostgresConnection
from jobdispatch.db.repository import EXHAUSTED_LOCK_ERROR
from jobdispatch.types.job import NewJob


def new_job(identifier: str = "echo", **overrides) -> NewJob:
    values = {
        "identifier": identifier,
        "payload": {"message": "test"},
        "run_at": datetime.now(UTC),
        "max_attempts": 3,
    }
    values.update(overrides)
    return NewJob(**values)


class TestPostgresQueue:
    """Tests for PostgresConnection and JobRepository."""

    async def test_add_job(self, pg_connection: PostgresConnection):
        record, created = await pg_connection.add_job(new_job(priority=JobPriority.HIGH))

        assert created is True
        assert record.id > 0
        assert record.identifier == "echo"
        assert record.payload == {"message": "test"}
        assert record.status == JobStatus.QUEUED
        assert record.attempts == 0
        assert record.priority == JobPriority.HIGH

    async def test_job_key_deduplicates_active_jobs(self, pg_connection: PostgresConnection):
        first, created_first = await pg_connection.add_job(new_job(job_key="k-1"))
        second, created_second = await pg_connection.add_job(new_job(job_key="k-1"))

        assert created_first is True
        assert created_second is False
        assert second.id == first.id

    async def test_job_key_reusable_after_failure(self, pg_connection: PostgresConnection):
        first, _ = await pg_connection.add_job(new_job(job_key="k-2", max_attempts=1))
        await pg_connection.fetch_job("w1", ["echo"])
        await pg_connection.fail_job(first.id, "w1", "boom")

        second, created = await pg_connection.add_job(new_job(job_key="k-2"))

        assert created is True
        assert second.id != first.id

    async def test_fetch_locks_and_counts_attempt(self, pg_connection: PostgresConnection):
        record, _ = await pg_connection.add_job(new_job())

        fetched = await pg_connection.fetch_job("w1", ["echo"])

        assert fetched.id == record.id
        assert fetched.status == JobStatus.LOCKED
        assert fetched.locked_by == "w1"
        assert fetched.attempts == 1
        assert await pg_connection.fetch_job("w2", ["echo"]) is None

    async def test_fetch_only_registered_identifiers(self, pg_connection: PostgresConnection):
        await pg_connection.add_job(new_job("other"))

        assert await pg_connection.fetch_job("w1", ["echo"]) is None
        assert await pg_connection.fetch_job("w1", []) is None

    async def test_fetch_respects_run_at(self, pg_connection: PostgresConnection):
        await pg_connection.add_job(new_job(run_at=datetime.now(UTC) + timedelta(hours=1)))

        assert await pg_connection.fetch_job("w1", ["echo"]) is None

    async def test_fetch_orders_by_priority(self, pg_connection: PostgresConnection):
        await pg_connection.add_job(new_job(priority=JobPriority.LOW))
        urgent, _ = await pg_connection.add_job(new_job(priority=JobPriority.CRITICAL))

        fetched = await pg_connection.fetch_job("w1", ["echo"])

        assert fetched.id == urgent.id

    async def test_complete_deletes_job(self, pg_connection: PostgresConnection):
        record, _ = await pg_connection.add_job(new_job())
        await pg_connection.fetch_job("w1", ["echo"])

        assert await pg_connection.complete_job(record.id, "w2") is False
        assert await pg_connection.complete_job(record.id, "w1") is True
        assert await pg_connection.get_job(record.id) is None

    async def test_fail_reschedules_then_fails(self, pg_connection: PostgresConnection):
        record, _ = await pg_connection.add_job(new_job(max_attempts=2))

        await pg_connection.fetch_job("w1", ["echo"])
        retried = await pg_connection.fail_job(record.id, "w1", "first")
        assert retried.status == JobStatus.QUEUED
        assert retried.last_error == "first"
        assert retried.locked_by is None

        await pg_connection.fetch_job("w1", ["echo"])
        failed = await pg_connection.fail_job(record.id, "w1", "second")
        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 2
        assert await pg_connection.fetch_job("w1", ["echo"]) is None

    async def test_non_retryable_failure(self, pg_connection: PostgresConnection):
        record, _ = await pg_connection.add_job(new_job(max_attempts=5))
        await pg_connection.fetch_job("w1", ["echo"])

        failed = await pg_connection.fail_job(record.id, "w1", "fatal", retryable=False)

        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 1

    async def test_lane_is_exclusive_and_ordered(self, pg_connection: PostgresConnection):
        first, _ = await pg_connection.add_job(new_job(queue_name="stripe-webhooks"))
        second, _ = await pg_connection.add_job(new_job(queue_name="stripe-webhooks"))
        free, _ = await pg_connection.add_job(new_job())

        assert (await pg_connection.fetch_job("w1", ["echo"])).id == first.id
        # The lane is held by w1, so only the lane-less job is eligible
        assert (await pg_connection.fetch_job("w2", ["echo"])).id == free.id
        assert await pg_connection.fetch_job("w3", ["echo"]) is None

        await pg_connection.complete_job(first.id, "w1")

        assert (await pg_connection.fetch_job("w3", ["echo"])).id == second.id

    async def test_retried_lane_head_blocks_lane(self, pg_connection: PostgresConnection):
        first, _ = await pg_connection.add_job(
            new_job(queue_name="lane", max_attempts=3)
        )
        await pg_connection.add_job(new_job(queue_name="lane"))

        await pg_connection.fetch_job("w1", ["echo"])
        await pg_connection.fail_job(first.id, "w1", "retry me")

        # The retried head is the next job of its lane
        fetched = await pg_connection.fetch_job("w1", ["echo"])
        assert fetched.id == first.id
        assert fetched.attempts == 2

    async def test_failed_head_unblocks_lane(self, pg_connection: PostgresConnection):
        first, _ = await pg_connection.add_job(new_job(queue_name="lane", max_attempts=1))
        second, _ = await pg_connection.add_job(new_job(queue_name="lane"))

        await pg_connection.fetch_job("w1", ["echo"])
        await pg_connection.fail_job(first.id, "w1", "boom")

        assert (await pg_connection.fetch_job("w1", ["echo"])).id == second.id

    async def test_stale_lock_is_refetched(self, pg_connection: PostgresConnection):
        record, _ = await pg_connection.add_job(new_job(queue_name="lane"))
        await pg_connection.fetch_job("dead-worker", ["echo"])

        stale = datetime.now(UTC) - timedelta(hours=1)
        async with pg_connection.session() as session:
            await session.execute(
                sa.text("UPDATE jobs SET locked_at = :stale WHERE id = :id"),
                {"stale": stale, "id": record.id},
            )
            await session.execute(
                sa.text("UPDATE job_queues SET locked_at = :stale"),
                {"stale": stale},
            )

        fetched = await pg_connection.fetch_job("w2", ["echo"])

        assert fetched.id == record.id
        assert fetched.locked_by == "w2"
        assert fetched.attempts == 2
        assert await pg_connection.complete_job(record.id, "dead-worker") is False
        assert await pg_connection.complete_job(record.id, "w2") is True

    async def test_stale_lock_on_final_attempt_fails_job(self, pg_connection: PostgresConnection):
        record, _ = await pg_connection.add_job(new_job(queue_name="lane", max_attempts=1))
        following, _ = await pg_connection.add_job(new_job(queue_name="lane"))
        await pg_connection.fetch_job("dead-worker", ["echo"])

        stale = datetime.now(UTC) - timedelta(hours=1)
        async with pg_connection.session() as session:
            await session.execute(
                sa.text("UPDATE jobs SET locked_at = :stale WHERE id = :id"),
                {"stale": stale, "id": record.id},
            )
            await session.execute(sa.text("UPDATE job_queues SET locked_at = :stale"), {"stale": stale})

        fetched = await pg_connection.fetch_job("w2", ["echo"])

        assert fetched.id == following.id
        failed = await pg_connection.get_job(record.id)
        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 1
        assert failed.locked_by is None
        assert failed.last_error == EXHAUSTED_LOCK_ERROR

    async def test_extend_locks(self, pg_connection: PostgresConnection):
        record, _ = await pg_connection.add_job(new_job())
        fetched = await pg_connection.fetch_job("w1", ["echo"])

        assert await pg_connection.extend_locks("w1", [record.id]) == 1
        assert await pg_connection.extend_locks("w2", [record.id]) == 0
        assert await pg_connection.extend_locks("w1", []) == 0

        refreshed = await pg_connection.get_job(record.id)
        assert refreshed.locked_at >= fetched.locked_at

    async def test_extend_locks_refreshes_only_lanes_of_given_jobs(self, pg_connection: PostgresConnection):
        abandoned, _ = await pg_connection.add_job(new_job(queue_name="ledger"))
        running, _ = await pg_connection.add_job(new_job())
        await pg_connection.fetch_job("w1", ["echo"])
        await pg_connection.fetch_job("w1", ["echo"])

        # w1 lost track of the laned job, e.g. its ack raised
        stale = datetime.now(UTC) - timedelta(hours=1)
        async with pg_connection.session() as session:
            await session.execute(
                sa.text("UPDATE jobs SET locked_at = :stale WHERE id = :id"),
                {"stale": stale, "id": abandoned.id},
            )
            await session.execute(sa.text("UPDATE job_queues SET locked_at = :stale"), {"stale": stale})

        assert await pg_connection.extend_locks("w1", [running.id]) == 1

        fetched = await pg_connection.fetch_job("w2", ["echo"])
        assert fetched.id == abandoned.id
        assert fetched.attempts == 2

    async def test_active_identifiers_and_depth(self, pg_connection: PostgresConnection):
        await pg_connection.add_job(new_job("a"))
        await pg_connection.add_job(new_job("b"))
        doomed, _ = await pg_connection.add_job(new_job("c", max_attempts=1))
        await pg_connection.fetch_job("w1", ["c"])
        await pg_connection.fail_job(doomed.id, "w1", "boom")

        assert await pg_connection.active_identifiers() == {"a", "b"}
        assert await pg_connection.queue_depth() == 2

    async def test_concurrent_fetch_locks_each_job_once(self, pg_connection: PostgresConnection):
        for _ in range(10):
            await pg_connection.add_job(new_job())

        fetched = await asyncio.gather(
            *(pg_connection.fetch_job(f"w{n}", ["echo"]) for n in range(15))
        )

        ids = [record.id for record in fetched if record is not None]
        assert len(ids) == len(set(ids))
        assert len(ids) <= 10


    async def test_fetch_locks_only_the_candidate_lane(self, pg_connection: PostgresConnection):
        await pg_connection.add_job(new_job(queue_name="lane-a"))
        await pg_connection.add_job(new_job(queue_name="lane-b"))

        first = await pg_connection.fetch_job("w1", ["echo"])

        async with pg_connection.session() as session:
            result = await session.execute(
                sa.text("SELECT queue_name, locked_by FROM job_queues ORDER BY queue_name")
            )
            lanes = dict(result.all())
        assert lanes == {"lane-a": "w1", "lane-b": None}
        assert first.queue_name == "lane-a"

        second = await pg_connection.fetch_job("w2", ["echo"])
        assert second.queue_name == "lane-b"

    async def test_concurrent_fetch_across_lanes(self, pg_connection: PostgresConnection):
        for lane in ("lane-a", "lane-b", "lane-c"):
            await pg_connection.add_job(new_job(queue_name=lane))
            await pg_connection.add_job(new_job(queue_name=lane))

        fetched = await asyncio.gather(
            *(pg_connection.fetch_job(f"w{n}", ["echo"]) for n in range(6))
        )

        lanes = [record.queue_name for record in fetched if record is not None]
        # At most one job per lane at a time
        assert len(lanes) == len(set(lanes))
        assert set(lanes) <= {"lane-a", "lane-b", "lane-c"}
