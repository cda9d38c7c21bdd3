"""
Server lifecycle utilities for gRPC services.

GracefulServer turns SIGTERM/SIGINT into an orderly shutdown. Registered
shutdown hooks (engine sessions, for example) run first, newest first, then
the gRPC server drains in-flight RPCs for a grace period.
"""

from __future__ import annotations

import logging
import signal
import threading
from types import FrameType
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    import grpc

logger = logging.getLogger(__name__)

ShutdownHook = Callable[[], None]


class GracefulServer:
    """Runs a gRPC server until a shutdown signal, then tears it down.

    Usage:
        server, pool = create_server(config)
        pool.start()

        with GracefulServer(server, on_shutdown=pool.shutdown) as graceful:
            graceful.wait()  # Blocks until SIGTERM/SIGINT or stop()
    """

    def __init__(
        self,
        server: grpc.Server,
        grace_period: float = 5.0,
        on_shutdown: ShutdownHook | None = None,
    ) -> None:
        """Initialize the wrapper.

        Args:
            server: The gRPC server instance.
            grace_period: Seconds in-flight RPCs get to finish.
            on_shutdown: First shutdown hook; more can be added later.
        """
        self._server = server
        self._grace_period = grace_period
        self._hooks: list[ShutdownHook] = []
        if on_shutdown is not None:
            self._hooks.append(on_shutdown)

        self._stop_requested = threading.Event()
        self._finished = threading.Event()
        self._lock = threading.Lock()
        self._running = False
        self._saved_handlers: dict[signal.Signals, Any] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    def add_shutdown_hook(self, hook: ShutdownHook) -> None:
        """Register a callback to run before the server stops."""
        self._hooks.append(hook)

    def _on_signal(self, signum: int, frame: FrameType | None) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        self._stop_requested.set()

    def _install_handlers(self) -> None:
        # signal.signal only works on the main thread
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread, signal handlers not installed")
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            self._saved_handlers[sig] = signal.signal(sig, self._on_signal)

    def _restore_handlers(self) -> None:
        for sig, handler in self._saved_handlers.items():
            signal.signal(sig, handler)
        self._saved_handlers.clear()

    def start(self) -> None:
        """Start serving and listen for shutdown signals."""
        self._install_handlers()
        self._server.start()
        self._running = True

    def wait(self) -> None:
        """Block until shutdown is requested, then shut down."""
        try:
            self._stop_requested.wait()
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received")
        self.shutdown()

    def run(self) -> None:
        """Start, then block until shut down."""
        self.start()
        self.wait()

    def stop(self) -> None:
        """Request shutdown from code; wait() returns once it is done."""
        self._stop_requested.set()

    def shutdown(self) -> None:
        """Run the shutdown hooks and stop the server. Idempotent."""
        with self._lock:
            if not self._running:
                return
            self._running = False

        logger.info("Shutting down...")
        for hook in reversed(self._hooks):
            try:
                hook()
            except Exception as e:
                logger.exception(f"Shutdown hook failed: {e}")

        self._server.stop(grace=self._grace_period).wait()
        self._restore_handlers()
        self._finished.set()
        logger.info("Shutdown complete")

    def wait_finished(self, timeout: float | None = None) -> bool:
        """Wait for shutdown to complete. Returns False on timeout."""
        return self._finished.wait(timeout)

    def __enter__(self) -> GracefulServer:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
