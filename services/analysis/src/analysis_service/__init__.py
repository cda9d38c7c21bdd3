"""
Engine Analysis Service for Enpassant

Runs a UCI chess engine as an analysis backend: one engine per session,
requests serialized through a queue, engine output folded into evaluation
snapshots in White's perspective with moves in standard algebraic notation.
"""

from .channel import EngineChannel, InProcessChannel, ProtocolState, SubprocessChannel
from .config import BatchConfig, EngineConfig, PoolConfig, SchedulerConfig, ServerConfig
from .notation import ChessRules, NotationPostProcessor, RulesEngine
from .pool import DEFAULT_SESSION, SessionPool
from .protocol import parse_line
from .scheduler import AnalysisScheduler
from .server import AnalysisServiceImpl, create_server, serve
from .session import (
    CandidateLine,
    EvaluationResult,
    SessionState,
    SmoothingPolicy,
    format_score,
)

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Config
    "EngineConfig",
    "SchedulerConfig",
    "PoolConfig",
    "ServerConfig",
    "BatchConfig",
    # Protocol
    "parse_line",
    # Session state
    "CandidateLine",
    "EvaluationResult",
    "SessionState",
    "SmoothingPolicy",
    "format_score",
    # Notation
    "RulesEngine",
    "ChessRules",
    "NotationPostProcessor",
    # Channels
    "EngineChannel",
    "ProtocolState",
    "SubprocessChannel",
    "InProcessChannel",
    # Scheduling
    "AnalysisScheduler",
    "SessionPool",
    "DEFAULT_SESSION",
    # Server
    "AnalysisServiceImpl",
    "create_server",
    "serve",
]
