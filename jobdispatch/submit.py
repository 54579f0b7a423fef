"""
Job submission façade.

The only entry point application code uses to enqueue work. Validates the
submission, applies defaults and performs exactly one enqueue against the
process-wide dispatch client.
"""

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import pydantic
from pydantic import JsonValue, TypeAdapter
from sqlalchemy.exc import SQLAlchemyError

from jobdispatch.client import DispatchClient, get_dispatch_client
from jobdispatch.config import get_settings
from jobdispatch.constants import SPAN_SUBMIT_JOB
from jobdispatch.exceptions import EnqueueError, ValidationError
from jobdispatch.observability.metrics import get_metrics
from jobdispatch.observability.tracing import get_tracer
from jobdispatch.registry import JobRegistry, registry as default_registry, validate_identifier
from jobdispatch.types.job import JobHandle, JobOptions, NewJob

logger = logging.getLogger(__name__)

_json_payload = TypeAdapter(JsonValue)


def _validate_payload(identifier: str, payload: Any, registry: JobRegistry) -> Any:
    """
    Check the payload is plain JSON and, when a schema is shared for the
    identifier, that it satisfies the schema.
    """
    if payload is None:
        payload = {}

    schema = registry.schema_for(identifier)
    if schema is not None:
        try:
            if isinstance(payload, schema):
                model = payload
            else:
                model = schema.model_validate(payload)
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Payload does not match schema for '{identifier}'",
                {
                    "identifier": identifier,
                    "errors": e.errors(include_url=False, include_context=False, include_input=False),
                },
            ) from e
        return model.model_dump(mode="json")

    try:
        return _json_payload.validate_python(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Payload must be JSON-serializable",
            {
                "identifier": identifier,
                "errors": e.errors(include_url=False, include_context=False, include_input=False),
            },
        ) from e


def _validate_options(options: JobOptions | Mapping[str, Any] | None) -> JobOptions:
    if options is None:
        return JobOptions()
    if isinstance(options, JobOptions):
        return options
    try:
        return JobOptions.model_validate(dict(options))
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Invalid job options",
            {"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        ) from e
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid job options: {e}") from e


def build_job(
    identifier: str,
    payload: Any = None,
    options: JobOptions | Mapping[str, Any] | None = None,
    registry: JobRegistry | None = None,
) -> NewJob:
    """
    Validate a submission and apply defaults.

    Args:
        identifier: Task identifier.
        payload: JSON-serializable payload (None means {}).
        options: JobOptions or a mapping of its fields.
        registry: Registry holding shared payload schemas.

    Returns:
        NewJob ready for the queue.

    Raises:
        ValidationError: On malformed identifier, payload or options.
    """
    registry = registry or default_registry
    validate_identifier(identifier)
    opts = _validate_options(options)
    body = _validate_payload(identifier, payload, registry)

    return NewJob(
        identifier=identifier,
        payload=body,
        run_at=opts.run_at or datetime.now(UTC),
        max_attempts=opts.max_attempts or get_settings().default_max_attempts,
        queue_name=opts.queue_name,
        priority=opts.priority,
        job_key=opts.job_key,
    )


async def submit(
    identifier: str,
    payload: Any = None,
    options: JobOptions | Mapping[str, Any] | None = None,
    *,
    client: DispatchClient | None = None,
    registry: JobRegistry | None = None,
) -> JobHandle:
    """
    Submit a job for background execution.

    The identifier does not need a registered handler in this process; the
    worker verifies handlers at startup.

    Args:
        identifier: Task identifier.
        payload: JSON-serializable payload.
        options: queue_name, run_at, max_attempts, priority, job_key.
        client: Dispatch client to use. Defaults to the process-wide one.
        registry: Registry holding shared payload schemas.

    Returns:
        JobHandle for the queued job.

    Raises:
        ValidationError: On malformed input; nothing is enqueued.
        EnqueueError: If the queue connection fails. Not retried here.
    """
    new_job = build_job(identifier, payload, options, registry)
    dispatch = client or get_dispatch_client()

    with get_tracer().start_as_current_span(SPAN_SUBMIT_JOB) as span:
        span.set_attribute("task", identifier)
        try:
            connection = await dispatch.get()
            record, created = await connection.add_job(new_job)
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Failed to enqueue job",
                extra={"task": identifier, "error": str(e)},
            )
            raise EnqueueError(
                f"Failed to enqueue '{identifier}': {e}",
                {"identifier": identifier},
            ) from e
        span.set_attribute("job_id", record.id)

    if created:
        get_metrics().record_job_submitted(identifier)

    logger.info(
        "Job submitted",
        extra={
            "job_id": record.id,
            "task": identifier,
            "queue_name": record.queue_name,
            "created": created,
        },
    )

    return JobHandle(
        id=record.id,
        identifier=record.identifier,
        run_at=record.run_at,
        max_attempts=record.max_attempts,
        queue_name=record.queue_name,
        created=created,
    )
