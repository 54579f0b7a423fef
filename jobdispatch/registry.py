"""
Task registry.

Maps task identifiers to handlers and, optionally, to a pydantic model that
is the payload contract shared by producers and consumers of that task.

Handlers must be idempotent: a job may run more than once if a worker dies
mid-execution and its lock goes stale.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from jobdispatch.constants import MAX_IDENTIFIER_LENGTH
from jobdispatch.exceptions import (
    DuplicateIdentifierError,
    UnknownTaskError,
    ValidationError,
)
from jobdispatch.types.job import JobContext

logger = logging.getLogger(__name__)

# Handlers receive the payload (or its validated schema instance) and the
# job context; they may be plain functions or coroutines.
JobHandler = Callable[[Any, JobContext], Awaitable[Any] | Any]


@dataclass(frozen=True)
class TaskRegistration:
    """A registered task: identifier, handler and optional payload schema."""

    identifier: str
    handler: JobHandler
    schema: type[BaseModel] | None = None


def validate_identifier(identifier: Any) -> str:
    """
    Check a task identifier is a non-empty string within length limits.

    Raises:
        ValidationError: If the identifier is malformed.
    """
    if not isinstance(identifier, str) or not identifier.strip():
        raise ValidationError(
            "Task identifier must be a non-empty string",
            {"identifier": identifier},
        )
    if len(identifier) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            f"Task identifier exceeds {MAX_IDENTIFIER_LENGTH} characters",
            {"identifier": identifier[:64]},
        )
    return identifier


class JobRegistry:
    """
    Registry of task handlers keyed by identifier.

    Registration happens at process start; the worker freezes the registry
    before polling, after which it is only read.
    """

    def __init__(self, name: str = "default"):
        self.name = name
        self._handlers: dict[str, TaskRegistration] = {}
        self._declared: dict[str, type[BaseModel] | None] = {}
        self._frozen = False

    def _ensure_mutable(self, identifier: str) -> None:
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{identifier}' in {self.name} registry: registry is frozen"
            )

    def declare(self, identifier: str, schema: type[BaseModel] | None = None) -> None:
        """
        Declare a task identifier the deployment expects to be consumable.

        Producers declare the tasks they enqueue (with the payload schema
        they agree on) so submit() can validate payloads and the worker's
        startup check can insist on a handler for each of them.

        Args:
            identifier: The task identifier.
            schema: Optional pydantic model describing the payload.
        """
        validate_identifier(identifier)
        self._ensure_mutable(identifier)

        current = self._declared.get(identifier)
        if current is not None and schema is not None and current is not schema:
            raise ValidationError(
                f"Conflicting payload schema declared for '{identifier}'",
                {"identifier": identifier},
            )
        self._declared[identifier] = schema or current

    def register(
        self,
        identifier: str,
        handler: JobHandler,
        schema: type[BaseModel] | None = None,
    ) -> TaskRegistration:
        """
        Register the handler for a task identifier.

        Args:
            identifier: The task identifier.
            handler: Callable taking (payload, context).
            schema: Optional pydantic model the payload must satisfy. Falls
                back to a schema declared for the identifier.

        Returns:
            The registration.

        Raises:
            DuplicateIdentifierError: If the identifier already has a handler.
            ValidationError: If the identifier is malformed or the schema
                conflicts with the declared one.
        """
        validate_identifier(identifier)
        self._ensure_mutable(identifier)

        if identifier in self._handlers:
            raise DuplicateIdentifierError(identifier)

        declared = self._declared.get(identifier)
        if schema is not None and declared is not None and schema is not declared:
            raise ValidationError(
                f"Handler schema for '{identifier}' differs from the declared schema",
                {"identifier": identifier},
            )

        registration = TaskRegistration(
            identifier=identifier,
            handler=handler,
            schema=schema or declared,
        )
        self._handlers[identifier] = registration
        logger.debug(f"Registered handler for task: {identifier}")
        return registration

    def task(
        self,
        identifier: str,
        schema: type[BaseModel] | None = None,
    ) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Example:
            @registry.task("send_email", schema=SendEmail)
            async def send_email(payload: SendEmail, context: JobContext) -> None:
                ...
        """

        def decorator(handler: JobHandler) -> JobHandler:
            self.register(identifier, handler, schema)
            return handler

        return decorator

    def resolve(self, identifier: str) -> TaskRegistration:
        """
        Get the registration for a task identifier.

        Raises:
            UnknownTaskError: If no handler is registered.
        """
        try:
            return self._handlers[identifier]
        except KeyError:
            raise UnknownTaskError(identifier) from None

    def schema_for(self, identifier: str) -> type[BaseModel] | None:
        """Payload schema shared for an identifier, if any."""
        registration = self._handlers.get(identifier)
        if registration is not None and registration.schema is not None:
            return registration.schema
        return self._declared.get(identifier)

    def check(self, expected: Iterable[str]) -> None:
        """
        Verify every expected identifier has a handler.

        Raises:
            UnknownTaskError: Listing every identifier without a handler.
        """
        missing = sorted(set(expected) - self._handlers.keys())
        if missing:
            raise UnknownTaskError(missing)

    def identifiers(self) -> list[str]:
        """List all identifiers that have a handler."""
        return list(self._handlers.keys())

    def declared(self) -> set[str]:
        """Identifiers declared by producers."""
        return set(self._declared)

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        return self._frozen

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


# Default registry used by module-level helpers, submit() and the worker
registry = JobRegistry()

register = registry.register
task = registry.task
declare = registry.declare
