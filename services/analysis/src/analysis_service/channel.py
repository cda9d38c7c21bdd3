"""
Engine channels: ownership of one engine instance and its command stream.

EngineChannel implements the UCI handshake and command discipline once;
subclasses only provide the transport:

- SubprocessChannel runs the engine binary as a child process.
- InProcessChannel drives an engine object living in this process through a
  command queue on a dedicated thread (the engine emits lines via callback).

Every output line is parsed and handed to the channel's listener (the
scheduler). An engine that goes away without being asked to is reported via
listener.on_exit().
"""

from __future__ import annotations

import logging
import queue
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from enum import Enum
from typing import Callable, Protocol

from common import EngineError, EngineStartError

from .config import EngineConfig
from .protocol import EngineIdentity, HandshakeAck, LineEvent, ReadyAck, parse_line

logger = logging.getLogger(__name__)


class ProtocolState(Enum):
    """Lifecycle of the engine's UCI session."""

    UNINITIALIZED = "uninitialized"
    HANDSHAKE_SENT = "handshake_sent"
    READY = "ready"
    CLOSED = "closed"


class ChannelListener(Protocol):
    """Receiver of everything the engine says."""

    def on_event(self, event: LineEvent) -> None:
        """Called for every parsed output line."""

    def on_exit(self, returncode: int | None) -> None:
        """Called once if the engine terminates without being shut down."""


class EngineChannel(ABC):
    """Base class for one engine instance speaking UCI.

    Usage:
        channel = SubprocessChannel(config)
        channel.set_listener(scheduler)
        channel.start()
        channel.submit(fen, depth=20)
        ...
        channel.shutdown()
    """

    kind = "engine"

    def __init__(self, config: EngineConfig | None = None) -> None:
        self._config = config or EngineConfig()
        self._state = ProtocolState.UNINITIALIZED
        self._listener: ChannelListener | None = None
        self._handshake = threading.Event()
        self._ready = threading.Event()
        self._configured = False
        self._closing = False
        self._name: str | None = None
        self._last_position: str | None = None
        self._write_lock = threading.Lock()

    @property
    def state(self) -> ProtocolState:
        return self._state

    @property
    def version(self) -> str:
        """Engine name from its id line, or the transport kind."""
        if self._state is ProtocolState.UNINITIALIZED:
            return "not started"
        return self._name or self.kind

    @property
    def last_position(self) -> str | None:
        """The position most recently sent with "position fen"."""
        return self._last_position

    def set_listener(self, listener: ChannelListener | None) -> None:
        self._listener = listener

    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the engine is still running."""

    @abstractmethod
    def _spawn(self) -> None:
        """Create the engine and begin forwarding its output."""

    @abstractmethod
    def _write(self, command: str) -> None:
        """Deliver one command line to the engine."""

    @abstractmethod
    def _close(self, timeout: float) -> None:
        """Wait up to timeout for the engine to exit after "quit", then kill it."""

    @abstractmethod
    def _kill(self) -> None:
        """Terminate the engine immediately."""

    def start(self) -> None:
        """Start the engine and bring it to the READY state.

        Raises:
            EngineStartError: If the engine cannot be created, exits before
                acknowledging the handshake, or never becomes ready.
        """
        if self._state is not ProtocolState.UNINITIALIZED:
            logger.warning(f"Channel already started ({self._state.value})")
            return

        try:
            self._spawn()
        except EngineStartError:
            self._state = ProtocolState.CLOSED
            raise
        except Exception as e:
            self._state = ProtocolState.CLOSED
            raise EngineStartError(f"Failed to start engine: {e}") from e

        self._state = ProtocolState.HANDSHAKE_SENT
        try:
            self._send("uci")
        except EngineError as e:
            self.terminate()
            raise EngineStartError(f"Engine exited before handshake: {e}") from e

        self._wait_for_handshake()
        self._wait_until_ready()
        logger.info(f"Engine ready: {self.version}")

    def _wait_for_handshake(self) -> None:
        deadline = time.monotonic() + self._config.startup_timeout
        while not self._handshake.wait(self._config.ready_poll_interval):
            if not self.is_alive():
                self.terminate()
                raise EngineStartError("Engine exited before handshake")
            if time.monotonic() >= deadline:
                self.terminate()
                raise EngineStartError(
                    f"Timed out after {self._config.startup_timeout}s waiting for uciok"
                )

    def _wait_until_ready(self) -> None:
        for attempt in range(self._config.ready_max_retries):
            if self._ready.wait(self._config.ready_poll_interval):
                return
            if not self.is_alive():
                break
            logger.debug(f"Waiting for readyok (attempt {attempt + 1})")

        self.terminate()
        raise EngineStartError("Engine did not become ready")

    def submit(self, fen: str, depth: int, move_time_ms: int | None = None) -> None:
        """Start a search of fen to the given depth.

        The caller must make sure no other search is pending.

        Raises:
            EngineError: If the engine is not ready or has gone away.
        """
        if self._state is not ProtocolState.READY:
            raise EngineError(f"Engine not ready ({self._state.value})")

        go = f"go depth {depth}"
        if move_time_ms:
            go += f" movetime {move_time_ms}"

        for command in ("stop", "ucinewgame", f"position fen {fen}", go):
            self._send(command)
        self._last_position = fen

    def stop_search(self) -> None:
        """Ask the engine to finish the current search. Safe when idle."""
        if self._state is not ProtocolState.READY or not self.is_alive():
            return
        try:
            self._send("stop")
        except EngineError as e:
            logger.debug(f"Could not send stop: {e}")

    def shutdown(self) -> None:
        """Quit the engine and release it. Safe to call more than once."""
        if self._closing:
            return
        self._closing = True

        if self.is_alive():
            try:
                self._send("quit")
            except EngineError as e:
                logger.debug(f"Could not send quit: {e}")
            try:
                self._close(self._config.quit_timeout)
                logger.info("Engine stopped")
            except Exception as e:
                logger.warning(f"Error stopping engine: {e}")
                self._kill()
        self._state = ProtocolState.CLOSED

    def terminate(self) -> None:
        """Kill the engine without the quit handshake."""
        self._closing = True
        try:
            self._kill()
        except Exception as e:
            logger.warning(f"Error killing engine: {e}")
        self._state = ProtocolState.CLOSED

    def _send(self, command: str) -> None:
        with self._write_lock:
            if self._state is ProtocolState.CLOSED:
                raise EngineError("Engine not running")
            self._write(command)
        logger.debug(f"Sent: {command}")

    def _handle_line(self, line: str) -> None:
        """Parse one output line, advance the handshake and notify the listener."""
        logger.debug(f"Recv: {line}")
        event = parse_line(line)

        if isinstance(event, EngineIdentity):
            self._name = event.name
        elif isinstance(event, HandshakeAck):
            if not self._handshake.is_set():
                self._handshake.set()
                self._send("isready")
        elif isinstance(event, ReadyAck):
            if self._handshake.is_set() and not self._configured:
                self._configured = True
                for name, value in self._config.uci_options():
                    self._send(f"setoption name {name} value {value}")
                self._state = ProtocolState.READY
                self._ready.set()

        listener = self._listener
        if listener is not None:
            try:
                listener.on_event(event)
            except Exception as e:
                logger.exception(f"Listener failed on {event!r}: {e}")

    def _on_exit(self, returncode: int | None) -> None:
        """Called by the transport once the engine is gone."""
        self._state = ProtocolState.CLOSED
        if self._closing:
            logger.debug(f"Engine exited with code {returncode}")
            return

        logger.warning(f"Engine exited unexpectedly with code {returncode}")
        listener = self._listener
        if listener is not None:
            listener.on_exit(returncode)


class SubprocessChannel(EngineChannel):
    """Engine running as a child process, talking over stdin/stdout."""

    kind = "subprocess"

    def __init__(
        self,
        config: EngineConfig | None = None,
        command: Sequence[str] | None = None,
    ) -> None:
        """Initialize the channel.

        Args:
            config: Engine configuration.
            command: Full command line; defaults to the configured engine path.
        """
        super().__init__(config)
        self._command = list(command) if command else [str(self._config.engine_path)]
        self._process: subprocess.Popen[str] | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def is_alive(self) -> bool:
        if self._process is None:
            return False
        return self._process.poll() is None

    def _spawn(self) -> None:
        logger.info(f"Starting engine: {' '.join(self._command)}")
        try:
            process = subprocess.Popen(
                self._command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as e:
            raise EngineStartError(f"Engine binary not found at {self._command[0]}") from e
        except OSError as e:
            raise EngineStartError(f"Failed to launch engine: {e}") from e

        self._process = process
        threading.Thread(
            target=self._read_stdout, args=(process,), name="engine-stdout", daemon=True
        ).start()
        threading.Thread(
            target=self._read_stderr, args=(process,), name="engine-stderr", daemon=True
        ).start()

    def _read_stdout(self, process: subprocess.Popen[str]) -> None:
        assert process.stdout is not None
        try:
            while True:
                line = process.stdout.readline()
                if not line:
                    break
                self._handle_line(line.rstrip("\r\n"))
        except (OSError, ValueError) as e:
            logger.debug(f"Engine stdout closed: {e}")
        self._on_exit(process.wait())

    def _read_stderr(self, process: subprocess.Popen[str]) -> None:
        assert process.stderr is not None
        try:
            for line in process.stderr:
                logger.warning(f"Engine stderr: {line.rstrip()}")
        except (OSError, ValueError):
            pass

    def _write(self, command: str) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise EngineError("Engine not started")
        try:
            process.stdin.write(command + "\n")
            process.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as e:
            raise EngineError(f"Failed to write to engine: {e}") from e

    def _close(self, timeout: float) -> None:
        if self._process is None:
            return
        try:
            self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Engine ignored quit, killing")
            self._kill()

    def _kill(self) -> None:
        process = self._process
        if process is None or process.poll() is not None:
            return
        process.kill()
        try:
            process.wait(timeout=self._config.quit_timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"Engine process {process.pid} did not die")


class WorkerEngine(Protocol):
    """An engine living in this process.

    It receives commands through post_message() and writes its output lines
    through the emit callback it was created with.
    """

    def post_message(self, command: str) -> None:
        """Handle one UCI command."""


WorkerFactory = Callable[[Callable[[str], None]], WorkerEngine]


class InProcessChannel(EngineChannel):
    """Engine object driven through a command queue on a dedicated thread.

    An exception escaping post_message() counts as a crash.
    """

    kind = "in_process"

    def __init__(self, engine_factory: WorkerFactory, config: EngineConfig | None = None) -> None:
        """Initialize the channel.

        Args:
            engine_factory: Called with the emit callback; returns the engine.
            config: Engine configuration.
        """
        super().__init__(config)
        self._factory = engine_factory
        self._engine: WorkerEngine | None = None
        self._commands: queue.Queue[str | None] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._alive = False

    def is_alive(self) -> bool:
        return self._alive

    def _spawn(self) -> None:
        try:
            self._engine = self._factory(self._emit)
        except Exception as e:
            raise EngineStartError(f"Failed to create in-process engine: {e}") from e

        self._alive = True
        self._thread = threading.Thread(target=self._run, name="engine-worker", daemon=True)
        self._thread.start()

    def _emit(self, line: str) -> None:
        # Output after termination belongs to nobody
        if self._alive:
            self._handle_line(line)

    def _run(self) -> None:
        assert self._engine is not None
        returncode = 0
        while True:
            command = self._commands.get()
            if command is None:
                break
            try:
                self._engine.post_message(command)
            except Exception as e:
                logger.warning(f"In-process engine failed on {command!r}: {e}")
                returncode = 1
                break
            if command == "quit":
                break
        self._alive = False
        self._on_exit(returncode)

    def _write(self, command: str) -> None:
        if not self._alive:
            raise EngineError("Engine not running")
        self._commands.put(command)

    def _close(self, timeout: float) -> None:
        if self._thread is None:
            return
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("In-process engine ignored quit, terminating")
            self._kill()

    def _kill(self) -> None:
        self._alive = False
        terminate = getattr(self._engine, "terminate", None)
        if callable(terminate):
            terminate()
        self._commands.put(None)
