"""
FastAPI application entry point.

The web process only submits jobs; it never executes them. Workers run as a
separate process and the two share nothing but the queue.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from jobdispatch import __version__
from jobdispatch.api.errors import register_exception_handlers
from jobdispatch.api.routes import health_router, jobs_router
from jobdispatch.client import DispatchClient, get_dispatch_client
from jobdispatch.config import get_settings
from jobdispatch.observability.logging import setup_logging
from jobdispatch.observability.metrics import setup_metrics
from jobdispatch.observability.tracing import instrument_fastapi, setup_tracing

logger = logging.getLogger(__name__)


def create_app(dispatch_client: DispatchClient | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        dispatch_client: Client used for submissions. Defaults to the
            process-wide client.

    Returns:
        FastAPI: The configured application instance.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown events. The queue connection itself is
        opened lazily by the first request that needs it.
        """
        # Startup
        setup_logging(role="api")
        setup_metrics()
        setup_tracing()

        logger.info("Application started")

        yield

        # Shutdown
        await app.state.dispatch_client.close()
        logger.info("Application shutdown")

    app = FastAPI(
        title="Job Dispatch API",
        description="Submit background jobs to a Postgres-backed queue",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.state.dispatch_client = dispatch_client or get_dispatch_client()

    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(jobs_router)

    if get_settings().otel_enabled:
        instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app()

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
