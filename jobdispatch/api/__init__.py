"""
API module.
Contains the FastAPI web process that submits jobs.
"""

from jobdispatch.api.main import create_app, run

__all__ = ["create_app", "run"]
