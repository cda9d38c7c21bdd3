"""
Unit tests for the session pool.
"""

import threading
import time

import pytest

from analysis_service.config import PoolConfig
from analysis_service.pool import SessionPool
from common import AnalysisCancelledError, PoolExhaustedError, PoolShutdownError

INFO = ["info depth 5 multipv 1 score cp 18 pv d2d4 d7d5"]


@pytest.fixture
def pool_config() -> PoolConfig:
    """Create a test pool configuration."""
    return PoolConfig(max_sessions=2, shutdown_timeout=2.0)


@pytest.fixture
def pool(pool_config, scheduler_config, scripted_channel):
    """Started pool whose sessions use scripted in-process engines."""
    pool = SessionPool(
        pool_config, scheduler_config, channel_factory=lambda: scripted_channel(info=INFO)
    )
    pool.start()
    yield pool
    pool.shutdown()


class TestSessionPoolLifecycle:
    """Tests for pool startup and shutdown."""

    def test_init_with_defaults(self) -> None:
        pool = SessionPool()

        assert not pool.is_started
        assert not pool.is_shutdown
        assert pool.session_count == 0

    def test_requires_start(self, pool_config, scheduler_config, starting_fen: str) -> None:
        pool = SessionPool(pool_config, scheduler_config)

        with pytest.raises(PoolShutdownError, match="not started"):
            pool.analyze(starting_fen, depth=5)

    def test_start_twice_is_safe(self, pool: SessionPool) -> None:
        pool.start()

        assert pool.is_started

    def test_start_after_shutdown(self, pool: SessionPool) -> None:
        pool.shutdown()

        with pytest.raises(PoolShutdownError):
            pool.start()

    def test_shutdown_idempotent(self, pool: SessionPool, starting_fen: str) -> None:
        pool.analyze(starting_fen, depth=5).result(timeout=5)

        pool.shutdown()
        pool.shutdown()

        assert pool.is_shutdown
        assert not pool.is_started
        assert pool.session_count == 0
        with pytest.raises(PoolShutdownError):
            pool.analyze(starting_fen, depth=5)


class TestSessionPoolSessions:
    """Tests for per-session routing."""

    def test_default_session(self, pool: SessionPool, starting_fen: str) -> None:
        result = pool.analyze(starting_fen, depth=5).result(timeout=5)

        assert result.best_moves[0] == {"coordinate_move": "d2d4", "algebraic_move": "d4"}
        assert pool.session_count == 1

    def test_sessions_have_own_engines(
        self, pool: SessionPool, scripted_channel, starting_fen: str
    ) -> None:
        pool.analyze(starting_fen, depth=5, session_id="tab-1").result(timeout=5)
        pool.analyze(starting_fen, depth=5, session_id="tab-2").result(timeout=5)
        pool.analyze(starting_fen, depth=5, session_id="tab-1").result(timeout=5)

        assert pool.session_count == 2
        assert len(scripted_channel.engines) == 2

    def test_session_limit(self, pool: SessionPool) -> None:
        pool.session("a")
        pool.session("b")

        with pytest.raises(PoolExhaustedError):
            pool.session("c")
        assert pool.session("a") is pool.session("a")

    def test_close_session_frees_slot(self, pool: SessionPool) -> None:
        pool.session("a")
        pool.session("b")

        pool.close_session("a")
        pool.close_session("unknown")

        assert pool.session("c") is not None
        assert pool.session_count == 2

    def test_concurrent_session_creation(self, pool: SessionPool) -> None:
        """Racing callers get the same scheduler for a session."""
        seen = []

        def grab() -> None:
            seen.append(pool.session("shared"))

        threads = [threading.Thread(target=grab) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len({id(scheduler) for scheduler in seen}) == 1


class TestSessionPoolStop:
    """Tests for stopping sessions."""

    def test_stop_unknown_session(self, pool: SessionPool) -> None:
        assert pool.stop("nobody") is False

    def test_stop_idle_session(self, pool: SessionPool, starting_fen: str) -> None:
        pool.analyze(starting_fen, depth=5).result(timeout=5)

        assert pool.stop() is False

    def test_stop_only_affects_its_session(
        self, pool_config, scheduler_config, scripted_channel, starting_fen: str
    ) -> None:
        pool = SessionPool(
            pool_config,
            scheduler_config,
            channel_factory=lambda: scripted_channel(info=INFO, mode="stoppable"),
        )
        pool.start()
        started = {"a": threading.Event(), "b": threading.Event()}
        try:
            first = pool.analyze(
                starting_fen, depth=30, session_id="a", on_update=lambda s: started["a"].set()
            )
            second = pool.analyze(
                starting_fen, depth=30, session_id="b", on_update=lambda s: started["b"].set()
            )
            assert started["a"].wait(5)
            assert started["b"].wait(5)

            assert pool.stop("a") is True

            with pytest.raises(AnalysisCancelledError):
                first.result(timeout=5)
            assert not second.done()
        finally:
            pool.shutdown()

    def test_stop_during_engine_startup(
        self, pool_config, scheduler_config, scripted_channel, starting_fen: str
    ) -> None:
        pool = SessionPool(
            pool_config,
            scheduler_config,
            channel_factory=lambda: scripted_channel(info=INFO, handshake_delay=1.0),
        )
        pool.start()
        try:
            future = pool.analyze(starting_fen, depth=5, session_id="tab")
            time.sleep(0.2)

            assert pool.stop("tab") is True

            with pytest.raises(AnalysisCancelledError):
                future.result(timeout=5)
        finally:
            pool.shutdown()


class TestSessionPoolHealth:
    """Tests for health reporting."""

    def test_health_empty(self, pool: SessionPool) -> None:
        health = pool.health_check()

        assert health["total"] == 0
        assert health["version"] == "not started"

    def test_health_with_sessions(self, pool: SessionPool, starting_fen: str) -> None:
        pool.analyze(starting_fen, depth=5, session_id="tab-1").result(timeout=5)
        pool.session("tab-2")

        health = pool.health_check()

        assert health["total"] == 2
        assert health["healthy"] == 2
        assert health["busy"] == 0
        assert health["version"] == "ScriptedFish 1.0"
        assert health["sessions"]["tab-1"]["version"] == "ScriptedFish 1.0"
        assert health["sessions"]["tab-2"]["version"] == "not started"
