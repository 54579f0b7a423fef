"""
FastAPI dependencies.
"""

from typing import Annotated

from fastapi import Depends, Request

from jobdispatch.client import DispatchClient


def get_dispatch(request: Request) -> DispatchClient:
    """The dispatch client the lifespan placed on app.state."""
    return request.app.state.dispatch_client


Dispatch = Annotated[DispatchClient, Depends(get_dispatch)]
