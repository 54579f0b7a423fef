"""
Job submission routes.
"""

from fastapi import APIRouter, status

from jobdispatch.api.dependencies import Dispatch
from jobdispatch.constants import API_V1_PREFIX
from jobdispatch.submit import submit
from jobdispatch.types.api import ErrorResponse, SubmitJobRequest, SubmitJobResponse

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


@router.post(
    "",
    response_model=SubmitJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a job",
    description="Enqueue a job for background execution by the worker process.",
    responses={
        422: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def create_job(request: SubmitJobRequest, dispatch: Dispatch) -> SubmitJobResponse:
    """
    Submit a job.

    The response only says whether the job was accepted; execution happens
    later in the worker and its outcome is not reported back here.

    Args:
        request: Job submission request.
        dispatch: Process-wide dispatch client.

    Returns:
        SubmitJobResponse with the queue-assigned job id.
    """
    handle = await submit(
        request.identifier,
        request.payload,
        request.options(),
        client=dispatch,
    )

    return SubmitJobResponse(
        id=handle.id,
        identifier=handle.identifier,
        queue_name=handle.queue_name,
        run_at=handle.run_at,
        max_attempts=handle.max_attempts,
        created=handle.created,
        message="Job accepted" if handle.created else "Job already queued (job_key)",
    )
