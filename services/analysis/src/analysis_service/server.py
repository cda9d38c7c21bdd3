"""
Analysis gRPC Server

Exposes the session pool as the enpassant.analysis.AnalysisService gRPC
service. Messages are google.protobuf.Struct documents, so no generated stubs
are needed:

    Analyze        {fen, depth, session_id?, timeout?, move_time_ms?} -> result
    AnalyzeStream  same request -> stream of snapshots, the last one final
    Stop           {session_id} -> {session_id, stopped}
    HealthCheck    {} -> {healthy, version, sessions, busy}

A failed analysis still produces a well-formed result: evaluation "Error",
no moves, and an error {code, message} object. Malformed requests are
aborted with INVALID_ARGUMENT.
"""

from __future__ import annotations

import logging
import queue
from collections.abc import Iterator
from concurrent import futures
from dataclasses import dataclass
from typing import Any

import grpc
from google.protobuf import json_format
from google.protobuf.struct_pb2 import Struct

from common import (
    EnpassantError,
    GracefulServer,
    InvalidRequestError,
    error_details,
    grpc_error_handler,
    log_service_error,
)

from .config import EngineConfig, PoolConfig, SchedulerConfig, ServerConfig
from .pool import DEFAULT_SESSION, SessionPool
from .session import EvaluationResult

logger = logging.getLogger(__name__)

SERVICE_NAME = "enpassant.analysis.AnalysisService"
DEFAULT_DEPTH = 20
STREAM_POLL_INTERVAL = 0.1  # seconds between client liveness checks


def to_struct(data: dict[str, Any]) -> Struct:
    """Convert plain data to a Struct message."""
    message = Struct()
    message.update(data)
    return message


def failure_payload(exc: BaseException, fen: str, depth: int) -> dict[str, Any]:
    """Degenerate result document for a failed analysis."""
    log_service_error(exc)
    data = EvaluationResult.error_result(fen, depth, str(exc)).to_dict()
    data["error"] = error_details(exc)
    return data


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise InvalidRequestError(f"{name} must be an integer")
    if isinstance(value, (int, float)) and float(value).is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    raise InvalidRequestError(f"{name} must be an integer, got {value!r}")


@dataclass(frozen=True)
class AnalyzeParams:
    """Validated fields of an Analyze request."""

    fen: str
    depth: int
    session_id: str
    timeout: float | None
    move_time_ms: int | None


class AnalysisServiceImpl:
    """gRPC service implementation for engine analysis."""

    def __init__(self, pool: SessionPool, config: ServerConfig | None = None) -> None:
        """Initialize the service with a session pool.

        Args:
            pool: Session pool to run analyses on.
            config: Server configuration.
        """
        self._pool = pool
        self._config = config or ServerConfig()

    def _parse_analyze(self, request: Struct) -> AnalyzeParams:
        data = json_format.MessageToDict(request)

        fen = data.get("fen")
        if not isinstance(fen, str) or not fen.strip():
            raise InvalidRequestError("fen is required")

        depth = _as_int(data.get("depth", DEFAULT_DEPTH), "depth")
        if depth < 1:
            raise InvalidRequestError(f"depth must be positive, got {depth}")

        session_id = data.get("session_id") or DEFAULT_SESSION
        if not isinstance(session_id, str):
            raise InvalidRequestError("session_id must be a string")

        timeout: float | None = None
        if "timeout" in data:
            if isinstance(data["timeout"], bool) or not isinstance(data["timeout"], (int, float)):
                raise InvalidRequestError("timeout must be a number")
            timeout = float(data["timeout"])
            if timeout <= 0:
                raise InvalidRequestError(f"timeout must be positive, got {timeout}")
        cap = self._config.max_request_timeout
        if cap is not None:
            timeout = min(timeout, cap) if timeout is not None else cap

        move_time_ms = _as_int(data["move_time_ms"], "move_time_ms") if "move_time_ms" in data else None

        return AnalyzeParams(fen.strip(), depth, session_id, timeout, move_time_ms)

    def _stop_if_pending(
        self, context: grpc.ServicerContext, future: futures.Future[Any], session_id: str
    ) -> None:
        """Cancel this request if the client goes away before it finishes.

        Other requests on the session are not touched.
        """

        def on_done() -> None:
            if not future.done():
                logger.info(f"Client left, cancelling its request on session {session_id}")
                self._pool.stop(session_id, future)

        context.add_callback(on_done)

    @grpc_error_handler(default_response=Struct)
    def Analyze(self, request: Struct, context: grpc.ServicerContext) -> Struct:
        """Analyse a position and return the final result.

        Args:
            request: Analyze request document.
            context: gRPC service context.

        Returns:
            The final result, or a degenerate result if analysis failed.
        """
        params = self._parse_analyze(request)
        logger.debug(f"Analyze request: fen={params.fen}, depth={params.depth}")

        future = self._pool.analyze(
            params.fen,
            params.depth,
            session_id=params.session_id,
            timeout=params.timeout,
            move_time_ms=params.move_time_ms,
        )
        self._stop_if_pending(context, future, params.session_id)

        try:
            result = future.result()
        except (EnpassantError, futures.CancelledError) as e:
            return to_struct(failure_payload(e, params.fen, params.depth))
        return to_struct(result.to_dict())

    @grpc_error_handler()
    def AnalyzeStream(
        self, request: Struct, context: grpc.ServicerContext
    ) -> Iterator[Struct]:
        """Analyse a position, streaming every snapshot up to the final one.

        If the analysis fails, the stream ends with a degenerate result.
        """
        params = self._parse_analyze(request)
        logger.debug(f"AnalyzeStream request: fen={params.fen}, depth={params.depth}")

        updates: queue.Queue[EvaluationResult] = queue.Queue()
        future = self._pool.analyze(
            params.fen,
            params.depth,
            on_update=updates.put,
            session_id=params.session_id,
            timeout=params.timeout,
            move_time_ms=params.move_time_ms,
        )
        self._stop_if_pending(context, future, params.session_id)

        while True:
            try:
                snapshot = updates.get(timeout=STREAM_POLL_INTERVAL)
            except queue.Empty:
                # Updates are queued before the future resolves
                if future.done() and updates.empty():
                    break
                if not context.is_active():
                    self._pool.stop(params.session_id, future)
                    return
                continue

            yield to_struct(snapshot.to_dict())
            if snapshot.is_terminal:
                return

        exc = future.exception()
        if exc is not None:
            yield to_struct(failure_payload(exc, params.fen, params.depth))

    @grpc_error_handler(default_response=Struct)
    def Stop(self, request: Struct, context: grpc.ServicerContext) -> Struct:
        """Cancel the running search of a session (no-op when idle)."""
        data = json_format.MessageToDict(request)
        session_id = data.get("session_id") or DEFAULT_SESSION
        if not isinstance(session_id, str):
            raise InvalidRequestError("session_id must be a string")

        stopped = self._pool.stop(session_id)
        return to_struct({"session_id": session_id, "stopped": stopped})

    def HealthCheck(self, request: Struct, context: grpc.ServicerContext) -> Struct:
        """Health check endpoint.

        Returns:
            Struct with pool health status.
        """
        health = self._pool.health_check()
        healthy = self._pool.is_started and health["healthy"] == health["total"]

        return to_struct(
            {
                "healthy": healthy,
                "version": health["version"],
                "sessions": health["total"],
                "busy": health["busy"],
            }
        )


def add_analysis_service_to_server(servicer: AnalysisServiceImpl, server: grpc.Server) -> None:
    """Register the service's methods on a gRPC server."""

    def unary(method: Any) -> grpc.RpcMethodHandler:
        return grpc.unary_unary_rpc_method_handler(
            method,
            request_deserializer=Struct.FromString,
            response_serializer=Struct.SerializeToString,
        )

    handlers = {
        "Analyze": unary(servicer.Analyze),
        "AnalyzeStream": grpc.unary_stream_rpc_method_handler(
            servicer.AnalyzeStream,
            request_deserializer=Struct.FromString,
            response_serializer=Struct.SerializeToString,
        ),
        "Stop": unary(servicer.Stop),
        "HealthCheck": unary(servicer.HealthCheck),
    }
    server.add_generic_rpc_handlers(
        (grpc.method_handlers_generic_handler(SERVICE_NAME, handlers),)
    )


def create_server(
    server_config: ServerConfig | None = None,
    pool_config: PoolConfig | None = None,
    scheduler_config: SchedulerConfig | None = None,
    engine_config: EngineConfig | None = None,
    pool: SessionPool | None = None,
) -> tuple[grpc.Server, SessionPool]:
    """Create and configure the gRPC server with a session pool.

    Args:
        server_config: Server configuration.
        pool_config: Pool configuration.
        scheduler_config: Per-session scheduler configuration.
        engine_config: Engine configuration.
        pool: Use this pool instead of building one from the configs.

    Returns:
        Tuple of (server, pool). Caller should start pool, then server.
    """
    server_config = server_config or ServerConfig()

    if pool is None:
        pool = SessionPool(pool_config, scheduler_config, engine_config=engine_config)

    server = grpc.server(
        futures.ThreadPoolExecutor(max_workers=server_config.max_workers),
        maximum_concurrent_rpcs=server_config.max_concurrent_rpcs,
    )

    servicer = AnalysisServiceImpl(pool, server_config)
    add_analysis_service_to_server(servicer, server)

    server.add_insecure_port(f"[::]:{server_config.port}")

    return server, pool


def serve(
    server_config: ServerConfig | None = None,
    pool_config: PoolConfig | None = None,
    scheduler_config: SchedulerConfig | None = None,
    engine_config: EngineConfig | None = None,
) -> None:
    """Start the analysis gRPC server (blocking).

    Args:
        server_config: Server configuration.
        pool_config: Pool configuration.
        scheduler_config: Per-session scheduler configuration.
        engine_config: Engine configuration.
    """
    logging.basicConfig(level=logging.INFO)
    server_config = server_config or ServerConfig()

    server, pool = create_server(server_config, pool_config, scheduler_config, engine_config)

    pool.start()

    graceful = GracefulServer(server, on_shutdown=pool.shutdown)
    graceful.start()

    logger.info(f"Analysis gRPC server started on port {server_config.port}")

    graceful.wait()


if __name__ == "__main__":
    serve()
