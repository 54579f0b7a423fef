"""
API routes module.
"""

from jobdispatch.api.routes.health import router as health_router
from jobdispatch.api.routes.jobs import router as jobs_router

__all__ = ["jobs_router", "health_router"]
