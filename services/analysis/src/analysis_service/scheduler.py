"""
Request scheduler for one engine session.

Analysis requests go into a FIFO queue drained by a single worker thread, so
at most one search is ever in flight on the session's engine. The worker owns
the engine channel: it starts it lazily, sends each search, folds the
engine's events into a fresh SessionState, reports snapshots to the caller,
and resolves the caller's future.

Stopping is cooperative: on timeout or cancel the engine gets "stop" and a
short grace period to answer with bestmove. If it does not, the engine is
killed and a new one is started for the next request.
"""

from __future__ import annotations

import copy
import itertools
import logging
import queue
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, Union

from common import (
    AnalysisCancelledError,
    AnalysisSupersededError,
    AnalysisTimeoutError,
    EngineCrashedError,
    EngineError,
    EngineStartError,
    InvalidPositionError,
    InvalidRequestError,
    PoolShutdownError,
)

from .channel import EngineChannel, ProtocolState
from .config import SchedulerConfig
from .notation import ChessRules, NotationPostProcessor, RulesEngine
from .protocol import InfoUpdate, LineEvent, TerminalResult
from .session import EvaluationResult, RequestContext, SessionState, SmoothingPolicy

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[EvaluationResult], None]
ChannelFactory = Callable[[], EngineChannel]


@dataclass
class AnalysisRequest:
    """One queued or running analysis."""

    fen: str
    depth: int
    white_to_move: bool
    timeout: float
    on_update: UpdateCallback | None = None
    move_time_ms: int | None = None
    request_id: int = 0
    deadline: float | None = None  # monotonic; set when the search starts
    cancelled: bool = False
    future: Future[EvaluationResult] = field(default_factory=Future)


@dataclass(frozen=True)
class EngineExited:
    """The engine went away while a search was pending."""

    returncode: int | None


class _Cancel:
    """Marker queued to abort the active search."""


_SearchItem = Union[InfoUpdate, TerminalResult, EngineExited, _Cancel]


@dataclass
class _ActiveSearch:
    request: AnalysisRequest
    state: SessionState
    events: queue.Queue[_SearchItem] = field(default_factory=queue.Queue)
    last_emit: float | None = None
    dirty: bool = False  # a debounced snapshot has not been delivered


def _reject_queued(request: AnalysisRequest, exc: Exception) -> None:
    if request.future.set_running_or_notify_cancel():
        request.future.set_exception(exc)


class AnalysisScheduler:
    """
    Serializes analysis requests against a single engine.

    Thread-safe. Results and updates are delivered on the scheduler's worker
    thread, in order.

    Usage:
        scheduler = AnalysisScheduler(lambda: SubprocessChannel(engine_config))
        future = scheduler.analyze(fen, depth=20, on_update=print)
        result = future.result()
        scheduler.shutdown()
    """

    def __init__(
        self,
        channel_factory: ChannelFactory,
        config: SchedulerConfig | None = None,
        rules: RulesEngine | None = None,
        session_id: str = "default",
    ) -> None:
        """Initialize the scheduler.

        Args:
            channel_factory: Creates a fresh, unstarted engine channel.
            config: Scheduler configuration.
            rules: Rules engine for validation and notation.
            session_id: Name used in logs and health checks.
        """
        self._channel_factory = channel_factory
        self._config = config or SchedulerConfig()
        self._rules = rules or ChessRules()
        self._notation = NotationPostProcessor(self._rules)
        self._smoothing = SmoothingPolicy(enabled=self._config.smoothing)
        self._session_id = session_id

        self._pending: deque[AnalysisRequest] = deque()
        self._cond = threading.Condition()
        self._current: AnalysisRequest | None = None  # dequeued, not yet resolved
        self._active: _ActiveSearch | None = None
        self._channel: EngineChannel | None = None
        self._worker: threading.Thread | None = None
        self._shutdown = False
        self._ids = itertools.count(1)

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def is_busy(self) -> bool:
        """Check if a search is running."""
        return self._active is not None

    @property
    def queue_size(self) -> int:
        """Number of requests waiting behind the active one."""
        with self._cond:
            return len(self._pending)

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    @property
    def version(self) -> str:
        channel = self._channel
        return channel.version if channel is not None else "not started"

    def is_healthy(self) -> bool:
        """An idle session with no engine yet counts as healthy."""
        if self._shutdown:
            return False
        channel = self._channel
        return channel is None or channel.is_alive()

    def analyze(
        self,
        fen: str,
        depth: int,
        on_update: UpdateCallback | None = None,
        timeout: float | None = None,
        move_time_ms: int | None = None,
    ) -> Future[EvaluationResult]:
        """Queue an analysis of fen to the given depth.

        Args:
            fen: Position in FEN notation.
            depth: Target search depth (positive).
            on_update: Called with each new snapshot, then once with the
                terminal snapshot before the future resolves.
            timeout: Wall-clock budget in seconds once the search starts.
            move_time_ms: Optional cap passed to the engine as movetime.

        Returns:
            Future resolving to the final EvaluationResult. It is rejected with
            InvalidPositionError, InvalidRequestError, AnalysisTimeoutError,
            AnalysisCancelledError, EngineStartError or EngineCrashedError.

        Raises:
            PoolShutdownError: If the scheduler has been shut down.
        """
        timeout = timeout if timeout is not None else self._config.request_timeout
        move_time_ms = move_time_ms if move_time_ms is not None else self._config.move_time_ms

        rejected: Future[EvaluationResult] = Future()
        if depth < 1:
            rejected.set_exception(InvalidRequestError(f"Depth must be positive, got {depth}"))
            return rejected
        if timeout <= 0:
            rejected.set_exception(InvalidRequestError(f"Timeout must be positive, got {timeout}"))
            return rejected
        try:
            white_to_move = self._rules.validate(fen)
        except InvalidPositionError as e:
            logger.info(f"[{self._session_id}] Rejected position: {e}")
            rejected.set_exception(e)
            return rejected

        request = AnalysisRequest(
            fen=fen,
            depth=depth,
            white_to_move=white_to_move,
            timeout=timeout,
            on_update=on_update,
            move_time_ms=move_time_ms,
            request_id=next(self._ids),
        )

        stale: list[AnalysisRequest] = []
        with self._cond:
            if self._shutdown:
                raise PoolShutdownError(f"Session {self._session_id} is shut down")
            if self._config.supersede_stale:
                stale = [queued for queued in self._pending if queued.fen != fen]
                for queued in stale:
                    self._pending.remove(queued)
            self._pending.append(request)
            self._ensure_worker()
            self._cond.notify()

        for queued in stale:
            logger.debug(f"[{self._session_id}] Request {queued.request_id} superseded")
            _reject_queued(queued, AnalysisSupersededError("Superseded by a newer position"))

        logger.debug(
            f"[{self._session_id}] Queued request {request.request_id}: "
            f"depth={depth} fen={fen}"
        )
        return request.future

    def cancel(self, future: Future[EvaluationResult] | None = None) -> bool:
        """Cancel the current request, or one particular request.

        Without arguments this cancels the request the worker is handling,
        whether it is still waiting for the engine to start or already
        searching. Queued requests are unaffected.

        With future, only the request that returned it is cancelled: it is
        dropped if still queued, stopped if current, and ignored otherwise.

        Returns:
            True if a request will be rejected with AnalysisCancelledError;
            False if there was nothing to cancel.
        """
        dropped: AnalysisRequest | None = None
        search: _ActiveSearch | None = None
        with self._cond:
            if future is not None:
                dropped = next((r for r in self._pending if r.future is future), None)
                if dropped is not None:
                    self._pending.remove(dropped)

            current = self._current
            if dropped is None:
                if current is None or current.future.done() or current.cancelled:
                    return False
                if future is not None and current.future is not future:
                    return False
                current.cancelled = True
                if self._active is not None and self._active.request is current:
                    search = self._active

        if dropped is not None:
            logger.info(f"[{self._session_id}] Dropping queued request {dropped.request_id}")
            _reject_queued(dropped, AnalysisCancelledError("Analysis cancelled"))
            return True

        assert current is not None
        logger.info(f"[{self._session_id}] Cancelling request {current.request_id}")
        # Without an active search the worker sees the flag before sending go
        if search is not None:
            search.events.put(_Cancel())
        return True

    def shutdown(self, timeout: float = 5.0) -> None:
        """Reject queued work, stop the running search and quit the engine."""
        with self._cond:
            if self._shutdown:
                return
            self._shutdown = True
            pending = list(self._pending)
            self._pending.clear()
            search = self._active
            self._cond.notify_all()

        for request in pending:
            _reject_queued(request, PoolShutdownError("Session shut down"))
        if search is not None:
            search.events.put(_Cancel())

        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)
            if worker.is_alive():
                logger.warning(f"[{self._session_id}] Worker did not exit within {timeout}s")

        channel = self._channel
        self._channel = None
        if channel is not None:
            channel.set_listener(None)
            channel.shutdown()
        logger.info(f"[{self._session_id}] Session shut down")

    # ChannelListener

    def on_event(self, event: LineEvent) -> None:
        if not isinstance(event, (InfoUpdate, TerminalResult)):
            return
        with self._cond:
            search = self._active
        if search is None:
            logger.debug(f"[{self._session_id}] Dropping {event!r}: no pending request")
            return
        search.events.put(event)

    def on_exit(self, returncode: int | None) -> None:
        with self._cond:
            search = self._active
        if search is None:
            logger.warning(f"[{self._session_id}] Idle engine exited with code {returncode}")
            return
        search.events.put(EngineExited(returncode))

    # Worker

    def _ensure_worker(self) -> None:
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(
                target=self._run, name=f"scheduler-{self._session_id}", daemon=True
            )
            self._worker.start()

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._pending and not self._shutdown:
                    self._cond.wait()
                if self._shutdown:
                    return
                request = self._pending.popleft()
                self._current = request

            if not request.future.set_running_or_notify_cancel():
                logger.debug(f"[{self._session_id}] Skipping cancelled request {request.request_id}")
                self._clear_current()
                continue

            try:
                self._process(request)
            except Exception as e:
                logger.exception(f"[{self._session_id}] Request {request.request_id} failed: {e}")
                self._end_search()
                if not request.future.done():
                    request.future.set_exception(e)
            finally:
                self._clear_current()

    def _clear_current(self) -> None:
        with self._cond:
            self._current = None

    def _ensure_channel(self) -> EngineChannel:
        channel = self._channel
        if channel is not None and channel.is_alive() and channel.state is ProtocolState.READY:
            return channel
        if channel is not None:
            logger.warning(f"[{self._session_id}] Engine is gone, starting a new one")
            self._discard_channel(channel)

        channel = self._channel_factory()
        channel.set_listener(self)
        channel.start()
        if self._shutdown:
            channel.set_listener(None)
            channel.shutdown()
            raise PoolShutdownError("Session shut down")
        self._channel = channel
        return channel

    def _discard_channel(self, channel: EngineChannel) -> None:
        if self._channel is channel:
            self._channel = None
        channel.set_listener(None)
        channel.terminate()

    def _end_search(self) -> None:
        with self._cond:
            self._active = None

    def _process(self, request: AnalysisRequest) -> None:
        try:
            channel = self._ensure_channel()
        except (EngineStartError, PoolShutdownError) as e:
            logger.error(f"[{self._session_id}] Cannot analyse: {e}")
            request.future.set_exception(e)
            return

        context = RequestContext(
            fen=request.fen,
            white_to_move=request.white_to_move,
            requested_depth=request.depth,
            source_tag=channel.version,
        )
        state = SessionState(
            context,
            smoothing=self._smoothing,
            max_lines=self._config.max_lines,
            max_line_moves=self._config.max_line_moves,
        )
        search = _ActiveSearch(request, state)
        request.deadline = time.monotonic() + request.timeout

        with self._cond:
            cancelled = request.cancelled
            if not cancelled:
                self._active = search
        if cancelled:
            logger.info(f"[{self._session_id}] Request {request.request_id} cancelled before search")
            request.future.set_exception(AnalysisCancelledError("Analysis cancelled"))
            return

        logger.info(
            f"[{self._session_id}] Analysing request {request.request_id} "
            f"to depth {request.depth}: {request.fen}"
        )
        try:
            channel.submit(request.fen, request.depth, request.move_time_ms)
        except EngineError as e:
            self._end_search()
            self._discard_channel(channel)
            request.future.set_exception(EngineCrashedError(f"Engine rejected search: {e}"))
            return

        self._drive(search, channel)

    def _drive(self, search: _ActiveSearch, channel: EngineChannel) -> None:
        request = search.request
        assert request.deadline is not None

        while True:
            remaining = request.deadline - time.monotonic()
            if remaining <= 0:
                partial = self._abort(search, channel)
                logger.warning(
                    f"[{self._session_id}] Request {request.request_id} timed out "
                    f"after {request.timeout}s at depth {partial.depth}"
                )
                request.future.set_exception(
                    AnalysisTimeoutError(
                        f"Analysis timed out after {request.timeout}s", partial=partial
                    )
                )
                return

            try:
                item = search.events.get(timeout=remaining)
            except queue.Empty:
                continue

            if isinstance(item, InfoUpdate):
                if search.state.apply(item):
                    self._emit(search)
            elif isinstance(item, TerminalResult):
                self._complete(search, item)
                return
            elif isinstance(item, EngineExited):
                self._end_search()
                self._discard_channel(channel)
                request.future.set_exception(
                    EngineCrashedError(
                        f"Engine exited with code {item.returncode} during analysis",
                        returncode=item.returncode,
                    )
                )
                return
            elif isinstance(item, _Cancel):
                self._abort(search, channel)
                request.future.set_exception(AnalysisCancelledError("Analysis cancelled"))
                return

    def _abort(self, search: _ActiveSearch, channel: EngineChannel) -> EvaluationResult:
        """Stop the search, waiting briefly for bestmove before killing the engine.

        Returns:
            The last snapshot before the search was abandoned.
        """
        channel.stop_search()
        stopped = False
        deadline = time.monotonic() + self._config.stop_grace

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                item = search.events.get(timeout=remaining)
            except queue.Empty:
                break
            if isinstance(item, InfoUpdate):
                search.state.apply(item)
            elif isinstance(item, TerminalResult):
                stopped = True
                break
            elif isinstance(item, EngineExited):
                break

        self._end_search()
        if not stopped:
            logger.warning(f"[{self._session_id}] Engine did not stop, terminating it")
            self._discard_channel(channel)

        partial = search.state.snapshot()
        if self._config.annotate:
            self._notation.annotate(partial)
        return partial

    def _emit(self, search: _ActiveSearch, force: bool = False) -> None:
        interval = self._config.update_interval
        now = time.monotonic()
        if (
            not force
            and interval > 0
            and search.last_emit is not None
            and now - search.last_emit < interval
        ):
            search.dirty = True
            return

        search.dirty = False
        search.last_emit = now
        snapshot = search.state.snapshot()
        if self._config.annotate:
            self._notation.annotate(snapshot)
        self._notify(search.request, snapshot)

    def _complete(self, search: _ActiveSearch, terminal: TerminalResult) -> None:
        request = search.request
        if search.dirty:
            self._emit(search, force=True)

        search.state.apply(terminal)
        self._end_search()

        result = search.state.snapshot()
        if self._config.annotate:
            self._notation.annotate(result)

        self._notify(request, copy.deepcopy(result))
        logger.info(
            f"[{self._session_id}] Request {request.request_id} complete: "
            f"depth={result.depth} eval={result.evaluation} best={terminal.best_move or '(none)'}"
        )
        request.future.set_result(result)

    def _notify(self, request: AnalysisRequest, snapshot: EvaluationResult) -> None:
        if request.on_update is None:
            return
        try:
            request.on_update(snapshot)
        except Exception as e:
            logger.exception(f"[{self._session_id}] Update callback failed: {e}")
