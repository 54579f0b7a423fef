"""
Built-in job handlers.

Importing this module registers its tasks on the default registry. Handlers
must be idempotent - they may be executed more than once for the same job if
a worker crashes mid-execution.
"""

import asyncio
from typing import Any

from pydantic import BaseModel, Field

from jobdispatch.registry import task
from jobdispatch.types.job import JobContext, JobResult


class HelloPayload(BaseModel):
    """Payload for the hello task."""

    name: str = Field(..., min_length=1)


class SleepPayload(BaseModel):
    """Payload for the sleep task."""

    duration_seconds: float = Field(default=1.0, ge=0)


@task("hello", schema=HelloPayload)
async def handle_hello(payload: HelloPayload, context: JobContext) -> None:
    """Greet by name. The smallest end-to-end check of a deployment."""
    context.logger.info(f"Hello, {payload.name}")


@task("echo")
async def handle_echo(payload: Any, context: JobContext) -> JobResult:
    """
    Echo handler for testing.

    Simply returns the input payload as output.
    """
    context.logger.info("Echo job executing")

    return JobResult(
        success=True,
        output={"echo": payload},
    )


@task("sleep", schema=SleepPayload)
async def handle_sleep(payload: SleepPayload, context: JobContext) -> JobResult:
    """
    Sleep handler for testing delays and lane ordering.
    """
    context.logger.info("Sleep job starting", duration=payload.duration_seconds)

    await asyncio.sleep(payload.duration_seconds)

    return JobResult(
        success=True,
        output={"slept_for": payload.duration_seconds},
    )


@task("failing_job")
async def handle_failing_job(payload: Any, context: JobContext) -> JobResult:
    """
    Handler that always fails - for testing retry logic.
    """
    context.logger.info("Failing job executing (will fail)")

    return JobResult(
        success=False,
        error=f"Intentional failure on attempt {context.attempt}",
    )
