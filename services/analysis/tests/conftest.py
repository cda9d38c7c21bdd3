"""Pytest configuration for analysis service tests."""

import os
import shutil
import sys
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

# Add the src directories to the Python path
services_path = Path(__file__).parent.parent.parent
sys.path.insert(0, str(services_path / "analysis" / "src"))
sys.path.insert(0, str(services_path / "common" / "src"))

FIXTURES = Path(__file__).parent / "fixtures"

# Sample FEN positions for testing
STARTING_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"
AFTER_E4_FEN = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq e3 0 1"
MATE_IN_1_FEN = "6k1/5ppp/8/8/8/8/8/4R2K w - - 0 1"  # Re1-e8#
CHECKMATED_FEN = "rnb1kbnr/pppp1ppp/8/4p3/6Pq/5P2/PPPPP2P/RNBQKBNR w KQkq - 1 3"


class ScriptedEngine:
    """In-process UCI engine that answers "go" from a script.

    Modes:
        normal: emit the scripted info lines, then the bestmove line.
        stoppable: emit the info lines, answer "stop" with the bestmove line.
        hang: emit the info lines and ignore "stop".
        crash: raise on "go".

    handshake_delay delays the answer to "uci", like a slow engine start.
    """

    def __init__(
        self,
        emit: Callable[[str], None],
        info: list[str],
        bestmove: str,
        mode: str = "normal",
        name: str = "ScriptedFish 1.0",
        handshake_delay: float = 0.0,
    ) -> None:
        self.emit = emit
        self.info = info
        self.bestmove = bestmove
        self.mode = mode
        self.name = name
        self.handshake_delay = handshake_delay
        self.commands: list[str] = []
        self.searching = False
        self.terminated = False

    def post_message(self, command: str) -> None:
        self.commands.append(command)
        if command == "uci":
            time.sleep(self.handshake_delay)
            self.emit(f"id name {self.name}")
            self.emit("uciok")
        elif command == "isready":
            self.emit("readyok")
        elif command.startswith("go"):
            if self.mode == "crash":
                raise RuntimeError("engine crashed")
            for line in self.info:
                self.emit(line)
            if self.mode == "normal":
                self.emit(self.bestmove)
            else:
                self.searching = True
        elif command == "stop":
            if self.searching and self.mode == "stoppable":
                self.searching = False
                self.emit(self.bestmove)

    def terminate(self) -> None:
        self.terminated = True


@pytest.fixture
def starting_fen() -> str:
    return STARTING_FEN


@pytest.fixture
def after_e4_fen() -> str:
    """Black to move."""
    return AFTER_E4_FEN


@pytest.fixture
def mate_in_1_fen() -> str:
    return MATE_IN_1_FEN


@pytest.fixture
def checkmated_fen() -> str:
    """White to move and checkmated (fool's mate)."""
    return CHECKMATED_FEN


@pytest.fixture
def engine_available() -> bool:
    """Check if a real UCI engine binary is available."""
    engine_path = os.environ.get("ENGINE_PATH", "stockfish")
    return shutil.which(engine_path) is not None


@pytest.fixture
def engine_config():
    """Engine configuration with fast startup polling."""
    from analysis_service.config import EngineConfig

    return EngineConfig(
        threads=1,
        hash_mb=16,
        startup_timeout=5.0,
        ready_poll_interval=0.05,
        ready_max_retries=40,
        quit_timeout=1.0,
    )


@pytest.fixture
def scheduler_config():
    """Scheduler configuration with short timeouts."""
    from analysis_service.config import SchedulerConfig

    return SchedulerConfig(request_timeout=5.0, stop_grace=0.3, update_interval=0.0)


@pytest.fixture
def fake_engine_command() -> Callable[[str], list[str]]:
    """Build the command line of the fake UCI engine script for a mode."""
    script = FIXTURES / "fake_uci_engine.py"

    def build(mode: str = "normal") -> list[str]:
        return [sys.executable, str(script), mode]

    return build


@pytest.fixture
def scripted_channel(engine_config):
    """Factory for in-process channels backed by a ScriptedEngine.

    Created engines are collected on factory.engines.
    """
    from analysis_service.channel import InProcessChannel

    class Factory:
        def __init__(self) -> None:
            self.engines: list[ScriptedEngine] = []
            self._lock = threading.Lock()

        def __call__(
            self,
            info: list[str] | None = None,
            bestmove: str = "bestmove e2e4 ponder e7e5",
            mode: str = "normal",
            handshake_delay: float = 0.0,
        ) -> InProcessChannel:
            def create(emit: Callable[[str], None]) -> ScriptedEngine:
                engine = ScriptedEngine(
                    emit, list(info or []), bestmove, mode, handshake_delay=handshake_delay
                )
                with self._lock:
                    self.engines.append(engine)
                return engine

            return InProcessChannel(create, engine_config)

    return Factory()


@pytest.fixture
def make_scheduler(scheduler_config) -> Iterator[Callable[..., object]]:
    """Create AnalysisSchedulers that are shut down after the test."""
    from analysis_service.scheduler import AnalysisScheduler

    created: list[AnalysisScheduler] = []

    def make(channel_factory, config=None, **kwargs) -> AnalysisScheduler:
        scheduler = AnalysisScheduler(channel_factory, config or scheduler_config, **kwargs)
        created.append(scheduler)
        return scheduler

    yield make

    for scheduler in created:
        scheduler.shutdown(timeout=2.0)
