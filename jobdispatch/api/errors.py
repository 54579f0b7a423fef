"""
Exception handlers mapping dispatch errors to HTTP responses.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from jobdispatch.exceptions import EnqueueError, JobDispatchError, ValidationError
from jobdispatch.types.api import ErrorResponse

logger = logging.getLogger(__name__)

_STATUS_CODES: dict[type[JobDispatchError], int] = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    EnqueueError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def dispatch_error_handler(request: Request, exc: JobDispatchError) -> JSONResponse:
    """Render a JobDispatchError as an ErrorResponse."""
    status_code = _STATUS_CODES.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.warning(
            "Job submission failed",
            extra={"path": request.url.path, "error": exc.message},
        )

    body = ErrorResponse(
        error=type(exc).__name__,
        detail=exc.message,
        details=exc.details or None,
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(JobDispatchError, dispatch_error_handler)
