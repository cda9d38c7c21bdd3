"""
Configuration for the engine analysis service.

All configuration can be set via environment variables with sensible defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_float_or_none(name: str) -> float | None:
    value = os.environ.get(name)
    return float(value) if value else None


@dataclass
class EngineConfig:
    """Configuration for a single engine instance."""

    engine_path: Path = field(
        default_factory=lambda: Path(os.environ.get("ENGINE_PATH", "stockfish"))
    )
    threads: int = field(default_factory=lambda: int(os.environ.get("ENGINE_THREADS", "1")))
    hash_mb: int = field(default_factory=lambda: int(os.environ.get("ENGINE_HASH", "128")))
    multipv: int = field(default_factory=lambda: int(os.environ.get("ENGINE_MULTIPV", "1")))
    skill_level: int = field(
        default_factory=lambda: int(os.environ.get("ENGINE_SKILL_LEVEL", "20"))
    )
    # Extra "setoption" pairs sent after the standard ones
    extra_options: dict[str, str] = field(default_factory=dict)
    startup_timeout: float = 5.0  # seconds to wait for uciok
    ready_poll_interval: float = 0.1  # seconds between readiness checks
    ready_max_retries: int = 50  # readiness checks before giving up
    quit_timeout: float = 2.0  # seconds to wait for exit after "quit"

    def uci_options(self) -> list[tuple[str, str]]:
        """Return the (name, value) pairs sent once the engine is ready."""
        options = [
            ("Threads", str(self.threads)),
            ("Hash", str(self.hash_mb)),
            ("MultiPV", str(max(1, self.multipv))),
            ("Skill Level", str(self.skill_level)),
            ("UCI_AnalyseMode", "true"),
        ]
        options.extend(self.extra_options.items())
        return options


@dataclass
class SchedulerConfig:
    """Configuration for the per-session request scheduler."""

    request_timeout: float = field(
        default_factory=lambda: float(os.environ.get("ANALYSIS_TIMEOUT", "30"))
    )
    # Seconds to wait for bestmove after "stop" before killing the engine
    stop_grace: float = field(
        default_factory=lambda: float(os.environ.get("ANALYSIS_STOP_GRACE", "0.5"))
    )
    # Minimum seconds between incremental updates (0 = every change)
    update_interval: float = field(
        default_factory=lambda: float(os.environ.get("ANALYSIS_UPDATE_INTERVAL", "0"))
    )
    move_time_ms: int | None = None
    supersede_stale: bool = True
    max_lines: int = 5
    max_line_moves: int = 5
    smoothing: bool = field(default_factory=lambda: _env_bool("ANALYSIS_SMOOTHING", "false"))
    annotate: bool = True  # convert moves to SAN before delivery


@dataclass
class PoolConfig:
    """Configuration for the session pool."""

    max_sessions: int = field(
        default_factory=lambda: int(os.environ.get("ANALYSIS_MAX_SESSIONS", "8"))
    )
    shutdown_timeout: float = 10.0  # seconds to wait for session workers to exit


@dataclass
class ServerConfig:
    """Configuration for the gRPC server."""

    port: int = field(default_factory=lambda: int(os.environ.get("GRPC_PORT", "50051")))
    max_workers: int = 10
    max_concurrent_rpcs: int = 100
    # Server-side cap on a single request's timeout (seconds)
    max_request_timeout: float | None = field(
        default_factory=lambda: _env_float_or_none("ANALYSIS_MAX_TIMEOUT")
    )


@dataclass
class BatchConfig:
    """Configuration for offline batch analysis."""

    depth: int = field(default_factory=lambda: int(os.environ.get("ANALYSIS_DEPTH", "32")))
    timeout: float = 300.0  # five minutes per position
    move_time_ms: int | None = 60000
    output_dir: Path = field(
        default_factory=lambda: Path(os.environ.get("ANALYSIS_OUTPUT_DIR", "analysis-cache"))
    )
