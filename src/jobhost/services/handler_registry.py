"""Handler registry: maps handler names to typed invokers.

Handlers are registered once at startup, together with the payload type
they expect. Registration builds an invoker closure that validates the
stored JSON payload into that type and calls the handler, so execution
never inspects types at runtime.

A handler is one of:
- an async function ``async def handle(payload, cancel_event) -> JobResult | None``
- a plain function with the same signature (run in a worker thread; a
  coroutine it returns is awaited)
- a JobHandler subclass, instantiated once per job

Returning None (or any value that is not a JobResult) counts as success;
raising counts as a retryable failure.

Example:
    class SendEmail(BaseModel):
        to: str

    async def send_email(payload: SendEmail, cancel_event: asyncio.Event) -> None:
        ...

    registry = HandlerRegistry()
    registry.register("send-email", send_email, SendEmail)
    registry.freeze()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError, to_json

from jobhost.services.errors import (
    HandlerExecutionError,
    HandlerRegistrationError,
    PayloadDeserializationError,
    PayloadSerializationError,
    UnknownHandlerError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobResult:
    """Outcome reported by a handler.

    Attributes:
        success: Whether the job finished successfully.
        retry: For failures, whether another attempt may fix it.
        error: Failure message recorded on the job.
    """

    success: bool
    retry: bool = True
    error: str | None = None

    @classmethod
    def ok(cls) -> JobResult:
        return cls(success=True)

    @classmethod
    def fail(cls, error: str, retry: bool = True) -> JobResult:
        return cls(success=False, retry=retry, error=error)


class JobHandler(ABC):
    """Base class for class-based handlers.

    The registry creates a fresh instance for every job, so instances may
    hold per-job state.
    """

    @abstractmethod
    async def handle(self, payload: Any, cancel_event: asyncio.Event) -> JobResult | None:
        """Process one job payload.

        Long-running handlers should check cancel_event and return early
        (e.g. with JobResult.fail(..., retry=True)) once it is set.
        """


InvokeFunc = Callable[[Any, asyncio.Event], Awaitable[Any]]


@dataclass(frozen=True)
class HandlerInvoker:
    """Deserialize-then-invoke closure for one registered handler."""

    handler_name: str
    payload_type: Any
    _adapter: TypeAdapter[Any] = field(repr=False)
    _call: InvokeFunc = field(repr=False)

    def deserialize(self, payload: str) -> Any:
        """Validate stored JSON into the registered payload type.

        Raises:
            PayloadDeserializationError: If the payload does not match.
        """
        try:
            return self._adapter.validate_json(payload or "null")
        except ValidationError as e:
            raise PayloadDeserializationError(self.handler_name, str(e)) from e

    async def __call__(self, payload: str, cancel_event: asyncio.Event) -> JobResult:
        """Run the handler for a stored payload.

        Raises:
            PayloadDeserializationError: If the payload does not match.
            HandlerExecutionError: If the handler raised.
        """
        value = self.deserialize(payload)
        try:
            outcome = await self._call(value, cancel_event)
            # Plain callables may hand back a coroutine, e.g. a lambda wrapping an async call
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            raise HandlerExecutionError(self.handler_name, e) from e

        if isinstance(outcome, JobResult):
            return outcome
        return JobResult.ok()


def serialize_payload(payload: Any) -> str:
    """Serialize a payload (models, dataclasses, dicts, ...) to JSON text.

    Raises:
        PayloadSerializationError: If the payload is not JSON-serializable.
    """
    try:
        return to_json(payload).decode()
    except PydanticSerializationError as e:
        raise PayloadSerializationError(f"Payload is not JSON-serializable: {e}") from e


def _bind(handler: Any) -> InvokeFunc:
    """Wrap any supported handler form into an async (payload, cancel_event) call."""
    if inspect.isclass(handler):
        if not issubclass(handler, JobHandler):
            msg = f"Handler class {handler.__name__} must subclass JobHandler"
            raise HandlerRegistrationError(msg)

        async def call_instance(payload: Any, cancel_event: asyncio.Event) -> Any:
            return await handler().handle(payload, cancel_event)

        return call_instance

    if not callable(handler):
        msg = f"Handler must be callable, got {type(handler).__name__}"
        raise HandlerRegistrationError(msg)

    if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    ):
        return handler

    async def call_in_thread(payload: Any, cancel_event: asyncio.Event) -> Any:
        return await asyncio.to_thread(handler, payload, cancel_event)

    return call_in_thread


class HandlerRegistry:
    """Name -> invoker map, written during startup and read-only afterwards."""

    def __init__(self) -> None:
        self._invokers: dict[str, HandlerInvoker] = {}
        self._frozen = False

    def register(self, handler_name: str, handler: Any, payload_type: Any = Any) -> None:
        """Bind a handler and its payload type to a name.

        Args:
            handler_name: Logical name used when enqueueing jobs.
            handler: Async/sync callable or JobHandler subclass.
            payload_type: Type the stored payload is validated into
                (pydantic model, dataclass, TypedDict, dict, ...). Any accepts
                any JSON value.

        Raises:
            HandlerRegistrationError: On empty or duplicate names, unsupported
                handlers, or registration after freeze().
        """
        if self._frozen:
            msg = f"Registry is frozen; cannot register handler_name={handler_name}"
            raise HandlerRegistrationError(msg)
        if not handler_name or not handler_name.strip():
            msg = "handler_name is required"
            raise HandlerRegistrationError(msg)
        if handler_name in self._invokers:
            msg = f"Handler already registered for handler_name={handler_name}"
            raise HandlerRegistrationError(msg)

        self._invokers[handler_name] = HandlerInvoker(
            handler_name=handler_name,
            payload_type=payload_type,
            _adapter=TypeAdapter(payload_type),
            _call=_bind(handler),
        )
        logger.debug(
            "Registered handler: handler_name=%s, payload_type=%s",
            handler_name,
            getattr(payload_type, "__name__", payload_type),
        )

    def resolve(self, handler_name: str) -> HandlerInvoker:
        """Return the invoker for a name.

        Raises:
            UnknownHandlerError: If nothing is registered under the name.
        """
        invoker = self._invokers.get(handler_name)
        if invoker is None:
            raise UnknownHandlerError(handler_name)
        return invoker

    def is_registered(self, handler_name: str) -> bool:
        return handler_name in self._invokers

    def names(self) -> list[str]:
        return sorted(self._invokers)

    def freeze(self) -> None:
        """Reject further registrations; call before starting workers."""
        self._frozen = True
        logger.info("Handler registry frozen: handlers=%s", self.names())

    @property
    def frozen(self) -> bool:
        return self._frozen
