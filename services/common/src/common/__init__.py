"""Enpassant common utilities for Python services."""

from .exceptions import (
    AnalysisCancelledError,
    AnalysisSupersededError,
    AnalysisTimeoutError,
    EngineCrashedError,
    EngineError,
    EngineStartError,
    EnpassantError,
    InvalidPositionError,
    InvalidRequestError,
    PoolExhaustedError,
    PoolShutdownError,
)
from .grpc_errors import (
    StatusMapping,
    error_details,
    grpc_error_handler,
    log_service_error,
    map_exception_to_grpc_status,
)
from .server import GracefulServer

__all__ = [
    # Exceptions
    "EnpassantError",
    "EngineError",
    "EngineStartError",
    "EngineCrashedError",
    "AnalysisTimeoutError",
    "InvalidPositionError",
    "InvalidRequestError",
    "AnalysisCancelledError",
    "AnalysisSupersededError",
    "PoolExhaustedError",
    "PoolShutdownError",
    # gRPC utilities
    "StatusMapping",
    "error_details",
    "grpc_error_handler",
    "log_service_error",
    "map_exception_to_grpc_status",
    # Server utilities
    "GracefulServer",
]
