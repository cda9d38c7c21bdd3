"""
Thread-safe registry of analysis sessions.

Each session (a browser tab, a server connection, a batch job) gets its own
scheduler and therefore its own engine, so sessions never see each other's
output. Sessions are created on first use.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import TypedDict

from common import PoolExhaustedError, PoolShutdownError

from .channel import SubprocessChannel
from .config import EngineConfig, PoolConfig, SchedulerConfig
from .notation import ChessRules, RulesEngine
from .scheduler import AnalysisScheduler, ChannelFactory, UpdateCallback
from .session import EvaluationResult

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"


class SessionStatus(TypedDict):
    """Health of one session."""

    busy: bool
    queued: int
    healthy: bool
    version: str


class HealthStatus(TypedDict):
    """Health check result type."""

    total: int
    busy: int
    healthy: int
    version: str
    sessions: dict[str, SessionStatus]


class SessionPool:
    """
    Pool of independent analysis sessions, one engine each.

    Usage:
        pool = SessionPool(pool_config, scheduler_config, engine_config=engine_config)
        pool.start()

        future = pool.analyze(fen, depth=20, session_id="tab-1")
        result = future.result()

        pool.stop("tab-1")
        pool.shutdown()
    """

    def __init__(
        self,
        pool_config: PoolConfig | None = None,
        scheduler_config: SchedulerConfig | None = None,
        channel_factory: ChannelFactory | None = None,
        engine_config: EngineConfig | None = None,
        rules: RulesEngine | None = None,
    ) -> None:
        """Initialize the pool.

        Args:
            pool_config: Pool configuration (session limit, shutdown timeout).
            scheduler_config: Configuration for every session's scheduler.
            channel_factory: Creates engine channels; defaults to subprocesses
                built from engine_config.
            engine_config: Engine configuration for the default factory.
            rules: Rules engine shared by all sessions.
        """
        self._pool_config = pool_config or PoolConfig()
        self._scheduler_config = scheduler_config or SchedulerConfig()
        self._engine_config = engine_config or EngineConfig()
        self._channel_factory = channel_factory or self._default_channel
        self._rules = rules or ChessRules()

        self._sessions: dict[str, AnalysisScheduler] = {}
        self._lock = threading.Lock()
        self._started = False
        self._shutdown = False

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    @property
    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _default_channel(self) -> SubprocessChannel:
        return SubprocessChannel(self._engine_config)

    def start(self) -> None:
        """Open the pool for requests. Engines start lazily per session."""
        if self._shutdown:
            raise PoolShutdownError("Pool has been shut down")
        if self._started:
            logger.warning("Pool already started")
            return
        self._started = True
        logger.info(f"Session pool started (max {self._pool_config.max_sessions} sessions)")

    def session(self, session_id: str = DEFAULT_SESSION) -> AnalysisScheduler:
        """Get or create the scheduler for a session.

        Raises:
            PoolShutdownError: If the pool is not running.
            PoolExhaustedError: If the session limit has been reached.
        """
        with self._lock:
            if self._shutdown:
                raise PoolShutdownError("Pool is shutting down")
            if not self._started:
                raise PoolShutdownError("Pool not started")

            scheduler = self._sessions.get(session_id)
            if scheduler is not None and not scheduler.is_shutdown:
                return scheduler

            if len(self._sessions) >= self._pool_config.max_sessions:
                raise PoolExhaustedError(
                    f"Session limit of {self._pool_config.max_sessions} reached"
                )

            scheduler = AnalysisScheduler(
                self._channel_factory,
                self._scheduler_config,
                rules=self._rules,
                session_id=session_id,
            )
            self._sessions[session_id] = scheduler
            logger.info(f"Created session {session_id}")
            return scheduler

    def analyze(
        self,
        fen: str,
        depth: int,
        on_update: UpdateCallback | None = None,
        session_id: str = DEFAULT_SESSION,
        timeout: float | None = None,
        move_time_ms: int | None = None,
    ) -> Future[EvaluationResult]:
        """Queue an analysis on the given session. See AnalysisScheduler.analyze."""
        return self.session(session_id).analyze(
            fen, depth, on_update=on_update, timeout=timeout, move_time_ms=move_time_ms
        )

    def stop(
        self,
        session_id: str = DEFAULT_SESSION,
        future: Future[EvaluationResult] | None = None,
    ) -> bool:
        """Cancel the current request of a session, or only the one behind future.

        Unknown or idle sessions are a no-op.

        Returns:
            True if a request was cancelled.
        """
        with self._lock:
            scheduler = self._sessions.get(session_id)
        if scheduler is None:
            return False
        return scheduler.cancel(future)

    def close_session(self, session_id: str) -> None:
        """Shut down a session and release its engine."""
        with self._lock:
            scheduler = self._sessions.pop(session_id, None)
        if scheduler is not None:
            scheduler.shutdown(self._pool_config.shutdown_timeout)
            logger.info(f"Closed session {session_id}")

    def shutdown(self) -> None:
        """Shut down every session. Further calls raise PoolShutdownError."""
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
            sessions = list(self._sessions.values())
            self._sessions.clear()

        logger.info(f"Shutting down session pool ({len(sessions)} sessions)")
        for scheduler in sessions:
            try:
                scheduler.shutdown(self._pool_config.shutdown_timeout)
            except Exception as e:
                logger.warning(f"Error shutting down session {scheduler.session_id}: {e}")

        self._started = False
        logger.info("Session pool shutdown complete")

    def health_check(self) -> HealthStatus:
        """Check the health of every session.

        Returns:
            Dict with 'total', 'busy', 'healthy' counts, 'version' and
            per-session details.
        """
        with self._lock:
            sessions = dict(self._sessions)

        details: dict[str, SessionStatus] = {
            session_id: {
                "busy": scheduler.is_busy,
                "queued": scheduler.queue_size,
                "healthy": scheduler.is_healthy(),
                "version": scheduler.version,
            }
            for session_id, scheduler in sessions.items()
        }
        versions = [d["version"] for d in details.values() if d["version"] != "not started"]

        return {
            "total": len(details),
            "busy": sum(1 for d in details.values() if d["busy"]),
            "healthy": sum(1 for d in details.values() if d["healthy"]),
            "version": versions[0] if versions else "not started",
            "sessions": details,
        }
