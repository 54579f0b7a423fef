"""
Dispatch client: the process-wide handle to the durable queue.

The connection is built on first use and then shared by every caller in the
process. Construction is guarded so that concurrent cold-start callers wait
for, and receive, the one connection being built.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from jobdispatch.db.connection import connect
from jobdispatch.types.queue import QueueConnection

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], Awaitable[QueueConnection]]


class DispatchClient:
    """
    Lazily-initialised, shared queue connection.

    Example:
        client = DispatchClient()
        connection = await client.get()   # connects
        connection = await client.get()   # same instance, no reconnect
    """

    def __init__(self, factory: ConnectionFactory | None = None):
        """
        Args:
            factory: Coroutine function building the connection. Defaults
                to connecting to settings.connection_string.
        """
        self._factory = factory or connect
        self._connection: QueueConnection | None = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def get(self) -> QueueConnection:
        """
        Get the connection, constructing it on the first call.

        Returns:
            The shared QueueConnection.
        """
        if self._connection is not None:
            return self._connection

        async with self._lock:
            if self._connection is None:
                self._connection = await self._factory()
                logger.info("Dispatch client connected")
        return self._connection

    async def close(self) -> None:
        """Tear down the connection. A later get() reconnects."""
        async with self._lock:
            if self._connection is not None:
                await self._connection.close()
                self._connection = None
                logger.info("Dispatch client closed")


class _ProcessContext:
    """Holder for state that must live as long as the process."""

    client: DispatchClient | None = None


# Re-executing this module (importlib.reload, dev auto-reload) reuses the
# module namespace, so an existing holder is kept rather than replaced.
_process_context: _ProcessContext = globals().get("_process_context") or _ProcessContext()


def get_dispatch_client() -> DispatchClient:
    """
    Get the process-wide dispatch client.

    Returns:
        DispatchClient: Created once per process.
    """
    if _process_context.client is None:
        _process_context.client = DispatchClient()
    return _process_context.client


async def get_client() -> QueueConnection:
    """
    Get the process-wide queue connection, connecting on first use.

    Returns:
        The shared QueueConnection.
    """
    return await get_dispatch_client().get()


async def close_client() -> None:
    """Close the process-wide connection. Call at process shutdown."""
    if _process_context.client is not None:
        await _process_context.client.close()
