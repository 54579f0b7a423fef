"""
Worker process for executing jobs.

The worker runs a fixed number of slots on one event loop. Each slot fetches
the next eligible job, executes its handler and reports the outcome back to
the queue, which owns retry and lock bookkeeping.
"""

import asyncio
import importlib
import inspect
import logging
import os
import signal
import sys
import time
from collections.abc import Iterable

import pydantic
from prometheus_client import start_http_server
from sqlalchemy.exc import SQLAlchemyError

from jobdispatch.client import close_client, get_dispatch_client
from jobdispatch.config import get_settings
from jobdispatch.constants import (
    EXIT_CONFIG_ERROR,
    EXIT_OK,
    EXIT_STARTUP_ERROR,
    SPAN_ACK_JOB,
    SPAN_EXECUTE_JOB,
    SPAN_FETCH_JOB,
    JobStatus,
    SlotState,
    WorkerState,
)
from jobdispatch.exceptions import AttemptsExhaustedError, HandlerError, UnknownTaskError
from jobdispatch.observability.logging import get_logger, job_log_context, setup_logging
from jobdispatch.observability.metrics import get_metrics, setup_metrics
from jobdispatch.observability.tracing import get_tracer, setup_tracing
from jobdispatch.registry import JobRegistry, registry as default_registry
from jobdispatch.types.job import JobContext, JobRecord, JobResult
from jobdispatch.types.queue import QueueConnection

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Startup check that every known task identifier has a handler
    - Up to `concurrency` jobs in flight; lanes are kept exclusive by the queue
    - Heartbeat to refresh locks on running jobs
    - Graceful shutdown: stop fetching, let running jobs finish
    """

    def __init__(
        self,
        connection: QueueConnection,
        registry: JobRegistry | None = None,
        *,
        worker_id: str | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        shutdown_timeout: float | None = None,
        heartbeat_interval: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            connection: Queue connection to fetch from and report to.
            registry: Task registry. Defaults to the module-level registry.
            worker_id: Lock owner name. Defaults to hostname + PID.
            concurrency: Number of slots.
            poll_interval: Seconds a slot waits when the queue is empty.
            shutdown_timeout: Seconds running jobs get to finish on stop().
            heartbeat_interval: Seconds between lock refreshes.
        """
        settings = get_settings()

        self.connection = connection
        self.registry = registry if registry is not None else default_registry
        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.concurrency = concurrency or settings.concurrency
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.poll_interval_seconds
        )
        self.shutdown_timeout = (
            shutdown_timeout
            if shutdown_timeout is not None
            else settings.worker_shutdown_timeout_seconds
        )
        self.heartbeat_interval = heartbeat_interval or settings.worker_heartbeat_interval_seconds

        self.state = WorkerState.STARTING
        self.slot_states: list[SlotState] = [SlotState.IDLE] * self.concurrency

        self._stopping = asyncio.Event()
        self._identifiers: list[str] = []
        self._current_jobs: dict[int, JobRecord] = {}
        self._slots: list[asyncio.Task] = []
        self._heartbeat_task: asyncio.Task | None = None
        self._metrics = get_metrics()

    @property
    def running_jobs(self) -> list[int]:
        return list(self._current_jobs)

    async def check_registry(self) -> None:
        """
        Fail fast when a known task identifier has no handler.

        Known identifiers are those declared by producers plus those of
        every job still active in the queue.

        Raises:
            UnknownTaskError: Listing every missing identifier.
        """
        expected = self.registry.declared() | await self.connection.active_identifiers()
        self.registry.check(expected)

    async def start(self) -> None:
        """
        Run the worker until stop() is called.

        Raises:
            UnknownTaskError: If the startup check fails; nothing is fetched.
        """
        await self.check_registry()
        self.registry.freeze()
        self._identifiers = self.registry.identifiers()

        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "concurrency": self.concurrency,
                "tasks": self._identifiers,
            },
        )

        self.state = WorkerState.RUNNING_POOL
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self._slots = [
            asyncio.create_task(self._slot_loop(slot), name=f"{self.worker_id}-slot-{slot}")
            for slot in range(self.concurrency)
        ]

        try:
            await self._stopping.wait()
        finally:
            await self._shutdown()

    def request_stop(self) -> None:
        """Stop fetching; start() returns once running jobs are done. Safe from a signal handler."""
        if self._stopping.is_set():
            return
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self.state = WorkerState.SHUTTING_DOWN
        self._stopping.set()

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        self.request_stop()

    async def _shutdown(self) -> None:
        self.state = WorkerState.SHUTTING_DOWN

        if self._current_jobs:
            logger.info(f"Waiting for {len(self._current_jobs)} jobs to complete")

        if self._slots:
            _, pending = await asyncio.wait(self._slots, timeout=self.shutdown_timeout)
            if pending:
                logger.warning(
                    "Shutdown timeout reached, abandoning running jobs",
                    extra={"worker_id": self.worker_id, "job_ids": self.running_jobs},
                )
                for task in pending:
                    task.cancel()
            await asyncio.gather(*self._slots, return_exceptions=True)

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass

        self.state = WorkerState.STOPPED
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def run_once(self) -> bool:
        """
        Fetch and execute at most one job in the calling task.

        Returns:
            True if a job was executed.
        """
        if not self._identifiers:
            self._identifiers = self.registry.identifiers()

        job = await self.connection.fetch_job(self.worker_id, self._identifiers)
        if job is None:
            return False

        await self._process(job, slot=0)
        return True

    async def _slot_loop(self, slot: int) -> None:
        while not self._stopping.is_set():
            job = await self._fetch(slot)
            if job is None:
                await self._idle(slot)
                continue
            await self._process(job, slot)
        self.slot_states[slot] = SlotState.IDLE

    async def _fetch(self, slot: int) -> JobRecord | None:
        self.slot_states[slot] = SlotState.FETCHING
        try:
            with get_tracer().start_as_current_span(SPAN_FETCH_JOB):
                return await self.connection.fetch_job(self.worker_id, self._identifiers)
        except Exception as e:
            logger.exception(
                f"Error fetching job: {e}",
                extra={"worker_id": self.worker_id, "slot": slot},
            )
            return None

    async def _idle(self, slot: int) -> None:
        self.slot_states[slot] = SlotState.IDLE
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    async def _process(self, job: JobRecord, slot: int) -> None:
        """
        Execute a single job and report its outcome.

        Handles the full lifecycle:
        1. RUNNING: resolve the handler and run it
        2. ACKING on success, RETRY_SCHEDULING on failure
        """
        started = time.monotonic()
        self._current_jobs[job.id] = job
        self._metrics.record_job_fetched(self.worker_id)
        self._metrics.set_slots_busy(self.worker_id, len(self._current_jobs))

        try:
            with job_log_context(job.id, job.identifier):
                self.slot_states[slot] = SlotState.RUNNING
                try:
                    await self._execute(job)
                except HandlerError as error:
                    self.slot_states[slot] = SlotState.RETRY_SCHEDULING
                    await self._reschedule(job, error, started)
                else:
                    self.slot_states[slot] = SlotState.ACKING
                    await self._ack(job, started)
        except Exception as e:
            # The lock stays in place and expires, so the job is retried later.
            logger.exception(
                f"Failed to record job outcome: {e}",
                extra={"job_id": job.id, "worker_id": self.worker_id},
            )
        finally:
            self._current_jobs.pop(job.id, None)
            self._metrics.set_slots_busy(self.worker_id, len(self._current_jobs))
            self.slot_states[slot] = SlotState.IDLE

    async def _execute(self, job: JobRecord) -> None:
        """
        Run the handler for a job.

        Raises:
            HandlerError: If the handler raised, reported failure, or the
                payload does not satisfy the task's schema.
        """
        try:
            registration = self.registry.resolve(job.identifier)
        except UnknownTaskError as e:
            raise HandlerError(e.message, retryable=False) from e

        payload = job.payload
        if registration.schema is not None:
            try:
                payload = registration.schema.model_validate(job.payload)
            except pydantic.ValidationError as e:
                raise HandlerError(
                    f"Payload does not match schema for '{job.identifier}': {e}",
                    retryable=False,
                ) from e

        context = JobContext(
            job_id=job.id,
            identifier=job.identifier,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            worker_id=self.worker_id,
            queue_name=job.queue_name,
            logger=get_logger(
                f"jobdispatch.tasks.{job.identifier}",
                job_id=job.id,
                task=job.identifier,
                attempt=job.attempts,
                worker_id=self.worker_id,
            ),
        )

        logger.info(
            "Executing job",
            extra={
                "job_id": job.id,
                "task": job.identifier,
                "queue_name": job.queue_name,
                "attempt": job.attempts,
            },
        )

        with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
            span.set_attribute("job_id", job.id)
            span.set_attribute("task", job.identifier)
            span.set_attribute("attempt", job.attempts)

            try:
                outcome = registration.handler(payload, context)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
            except Exception as e:
                logger.exception(
                    "Handler raised exception",
                    extra={"job_id": job.id, "task": job.identifier, "error": str(e)},
                )
                raise HandlerError(f"Handler exception: {e}") from e

        if isinstance(outcome, JobResult) and not outcome.success:
            raise HandlerError(
                outcome.error or "Handler reported failure",
                retryable=outcome.retryable,
            )

    async def _ack(self, job: JobRecord, started: float) -> None:
        with get_tracer().start_as_current_span(SPAN_ACK_JOB):
            removed = await self.connection.complete_job(job.id, self.worker_id)

        duration = time.monotonic() - started
        if not removed:
            logger.warning(
                "Job lock was lost before ack",
                extra={"job_id": job.id, "worker_id": self.worker_id},
            )
            return

        logger.info(
            "Job completed successfully",
            extra={"job_id": job.id, "task": job.identifier, "duration": f"{duration:.2f}s"},
        )
        self._metrics.record_job_completed(job.identifier, "succeeded", duration)

    async def _reschedule(self, job: JobRecord, error: HandlerError, started: float) -> None:
        updated = await self.connection.fail_job(
            job.id,
            self.worker_id,
            error=error.message,
            retryable=error.retryable,
        )

        duration = time.monotonic() - started
        if updated is None:
            logger.warning(
                "Job lock was lost before failure was recorded",
                extra={"job_id": job.id, "worker_id": self.worker_id},
            )
            return

        if updated.status == JobStatus.FAILED:
            exhausted = AttemptsExhaustedError(
                job.id, job.identifier, updated.attempts, error.message
            )
            logger.error(exhausted.message, extra=exhausted.details)
            self._metrics.record_job_completed(job.identifier, "failed", duration)
        else:
            logger.warning(
                "Job failed, retry scheduled",
                extra={
                    "job_id": job.id,
                    "task": job.identifier,
                    "error": error.message,
                    "attempt": updated.attempts,
                    "run_at": updated.run_at.isoformat(),
                },
            )
            self._metrics.record_job_completed(job.identifier, "retried", duration)

    async def _heartbeat_loop(self) -> None:
        """
        Periodically refresh locks on running jobs.

        Keeps jobs that are still executing from looking abandoned to
        other workers. Runs until cancelled after shutdown.
        """
        while True:
            try:
                await asyncio.sleep(self.heartbeat_interval)

                self._metrics.update_queue_depth(await self.connection.queue_depth())

                if not self._current_jobs:
                    continue

                extended = await self.connection.extend_locks(self.worker_id, self.running_jobs)
                logger.debug("Extended locks", extra={"count": extended})

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")


def load_task_modules(names: Iterable[str]) -> None:
    """Import handler modules so their tasks register themselves."""
    for name in names:
        importlib.import_module(name)
        logger.info(f"Loaded task module: {name}")


async def run_async() -> int:
    """
    Run the worker asynchronously.

    Returns:
        Process exit code.
    """
    settings = get_settings()

    try:
        load_task_modules(settings.task_module_names)
    except ImportError as e:
        logger.error(f"Failed to import task module: {e}")
        return EXIT_STARTUP_ERROR

    dispatch = get_dispatch_client()
    try:
        connection = await dispatch.get()
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Queue is unreachable: {e}")
        return EXIT_STARTUP_ERROR

    worker = Worker(connection)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, worker.request_stop)

    try:
        await worker.start()
    except UnknownTaskError as e:
        logger.error(e.message, extra=e.details)
        return EXIT_STARTUP_ERROR
    finally:
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)
        await close_client()

    return EXIT_OK


def run() -> None:
    """Run the worker."""
    try:
        settings = get_settings()
    except pydantic.ValidationError as e:
        setup_logging(level="INFO", log_format="console", role="worker")
        logger.error(f"Invalid worker configuration: {e}")
        sys.exit(EXIT_CONFIG_ERROR)

    setup_logging(role="worker")
    setup_metrics()
    setup_tracing()

    if settings.metrics_port:
        start_http_server(settings.metrics_port)

    sys.exit(asyncio.run(run_async()))


if __name__ == "__main__":
    run()
