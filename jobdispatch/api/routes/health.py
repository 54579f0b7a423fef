"""
Health check routes.
"""

from datetime import UTC, datetime

from fastapi import APIRouter
from fastapi.responses import Response

from jobdispatch import __version__
from jobdispatch.api.dependencies import Dispatch
from jobdispatch.observability.metrics import get_metrics
from jobdispatch.types.api import HealthResponse

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and the queue connection.",
)
async def health_check(dispatch: Dispatch) -> HealthResponse:
    """
    Perform a health check.

    Connects on first use, then pings the queue.

    Returns:
        HealthResponse with service status.
    """
    queue_status = "healthy"
    try:
        connection = await dispatch.get()
        await connection.ping()
    except Exception:
        queue_status = "unhealthy"

    return HealthResponse(
        status="healthy" if queue_status == "healthy" else "degraded",
        version=__version__,
        queue=queue_status,
        timestamp=datetime.now(UTC),
    )


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """
    Liveness check endpoint.

    Returns:
        Alive status.
    """
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    """
    Expose Prometheus metrics.

    Returns:
        Prometheus-formatted metrics.
    """
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
