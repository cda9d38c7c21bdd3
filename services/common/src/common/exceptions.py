"""
Unified exception hierarchy for the Enpassant analysis services.

Every failure the orchestrator can surface to a caller is one of these types,
so the gRPC layer and the batch runner can map them consistently.
"""

from __future__ import annotations

from typing import Any


class EnpassantError(Exception):
    """Base exception for all Enpassant service errors."""


# =============================================================================
# Engine Exceptions
# =============================================================================


class EngineError(EnpassantError):
    """Base exception for engine-related errors."""


class EngineStartError(EngineError):
    """Engine process could not be created or never completed the handshake."""


class EngineCrashedError(EngineError):
    """Engine process exited while a search was pending."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class AnalysisTimeoutError(EngineError):
    """Analysis exceeded its wall-clock budget.

    partial holds the last snapshot (an EvaluationResult) taken before the
    search was stopped.
    """

    def __init__(self, message: str, partial: Any = None) -> None:
        super().__init__(message)
        self.partial = partial


# =============================================================================
# Request Exceptions
# =============================================================================


class InvalidPositionError(EnpassantError):
    """Position string was rejected by the rules engine."""


class InvalidRequestError(EnpassantError):
    """Request is missing fields or has out-of-range values."""


class AnalysisCancelledError(EnpassantError):
    """Analysis was cancelled by the caller."""


class AnalysisSupersededError(AnalysisCancelledError):
    """Queued analysis was dropped in favour of a newer position."""


# =============================================================================
# Pool Exceptions
# =============================================================================


class PoolExhaustedError(EnpassantError):
    """No more sessions can be created."""


class PoolShutdownError(EnpassantError):
    """Pool or session is shutting down."""
