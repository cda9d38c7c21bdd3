"""
gRPC error handling utilities.

Service exceptions map to gRPC status codes through one ordered table. The
grpc_error_handler decorator applies it to unary and server-streaming
handlers alike: the exception is logged at a level matching its severity and
the RPC is aborted with the mapped status.
"""

from __future__ import annotations

import functools
import inspect
import logging
from typing import Any, Callable, NamedTuple, TypeVar

import grpc

from .exceptions import (
    AnalysisCancelledError,
    AnalysisTimeoutError,
    EngineCrashedError,
    EngineError,
    EngineStartError,
    InvalidPositionError,
    InvalidRequestError,
    PoolExhaustedError,
    PoolShutdownError,
)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class StatusMapping(NamedTuple):
    """gRPC status for an exception type, plus the prefix used in logs."""

    code: grpc.StatusCode
    prefix: str


# Checked in order: subclasses before their bases
EXCEPTION_STATUS_MAP: tuple[tuple[type[Exception], StatusMapping], ...] = (
    (InvalidPositionError, StatusMapping(grpc.StatusCode.INVALID_ARGUMENT, "Invalid position")),
    (InvalidRequestError, StatusMapping(grpc.StatusCode.INVALID_ARGUMENT, "Invalid request")),
    (PoolExhaustedError, StatusMapping(grpc.StatusCode.RESOURCE_EXHAUSTED, "Pool exhausted")),
    (PoolShutdownError, StatusMapping(grpc.StatusCode.UNAVAILABLE, "Pool shutdown")),
    (AnalysisCancelledError, StatusMapping(grpc.StatusCode.CANCELLED, "Analysis cancelled")),
    (AnalysisTimeoutError, StatusMapping(grpc.StatusCode.DEADLINE_EXCEEDED, "Analysis timeout")),
    (EngineStartError, StatusMapping(grpc.StatusCode.UNAVAILABLE, "Engine start failed")),
    (EngineCrashedError, StatusMapping(grpc.StatusCode.UNAVAILABLE, "Engine crashed")),
    (EngineError, StatusMapping(grpc.StatusCode.INTERNAL, "Engine error")),
)

UNMAPPED = StatusMapping(grpc.StatusCode.INTERNAL, "Internal error")


def map_exception_to_grpc_status(exc: BaseException) -> StatusMapping:
    """Map an exception to its gRPC status code and log prefix.

    Args:
        exc: The exception to map.

    Returns:
        (code, prefix); unknown exceptions map to INTERNAL.
    """
    for exc_type, mapping in EXCEPTION_STATUS_MAP:
        if isinstance(exc, exc_type):
            return mapping
    return UNMAPPED


def log_service_error(exc: BaseException) -> StatusMapping:
    """Log exc at a severity matching its status and return the mapping.

    INTERNAL errors are logged with their traceback, everything else as a
    one-line warning.
    """
    mapping = map_exception_to_grpc_status(exc)
    if mapping.code == grpc.StatusCode.INTERNAL:
        logger.error(f"{mapping.prefix}: {exc}", exc_info=exc)
    else:
        logger.warning(f"{mapping.prefix}: {exc}")
    return mapping


def error_details(exc: BaseException) -> dict[str, str]:
    """Status name and message of exc, for embedding in a response body."""
    return {"code": map_exception_to_grpc_status(exc).code.name, "message": str(exc)}


def _abort(context: grpc.ServicerContext, exc: Exception) -> None:
    mapping = log_service_error(exc)
    context.abort(mapping.code, str(exc))


def grpc_error_handler(
    default_response: Callable[[], Any] | None = None,
) -> Callable[[F], F]:
    """Decorator to handle exceptions in gRPC service methods.

    Works on plain handlers and on generator (server-streaming) handlers; for
    the latter, errors raised while streaming abort the RPC too.

    Args:
        default_response: Factory for the value returned after abort. A real
            context raises from abort(), so this only matters for mocks.

    Example:
        @grpc_error_handler(default_response=Struct)
        def Stop(self, request, context):
            # ... implementation that may raise exceptions ...
            return response
    """

    def decorator(func: F) -> F:
        if inspect.isgeneratorfunction(func):

            @functools.wraps(func)
            def stream_wrapper(
                self: Any, request: Any, context: grpc.ServicerContext, *args: Any, **kwargs: Any
            ) -> Any:
                try:
                    yield from func(self, request, context, *args, **kwargs)
                except Exception as e:
                    _abort(context, e)

            return stream_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def wrapper(
            self: Any, request: Any, context: grpc.ServicerContext, *args: Any, **kwargs: Any
        ) -> Any:
            try:
                return func(self, request, context, *args, **kwargs)
            except Exception as e:
                _abort(context, e)
                return default_response() if default_response is not None else None

        return wrapper  # type: ignore[return-value]

    return decorator
