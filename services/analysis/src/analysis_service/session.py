"""
Per-request analysis state.

SessionState folds the parser's events for one search into a running
EvaluationResult. It is created when a search starts and thrown away when the
search ends, so nothing carries over between requests.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from itertools import zip_longest
from typing import Any

from .protocol import SCORE_MATE, InfoUpdate, LineEvent, TerminalResult

logger = logging.getLogger(__name__)

ERROR_EVALUATION = "Error"


@dataclass(frozen=True)
class SmoothingPolicy:
    """Damping applied to small centipawn scores before display.

    Matches the display convention of a popular analysis site. Purely
    cosmetic, so it is off unless explicitly enabled.
    """

    enabled: bool = False
    steps: tuple[tuple[int, float], ...] = ((15, 0.8), (30, 0.9))

    def apply(self, cp: float) -> float:
        if not self.enabled:
            return cp
        for threshold, factor in self.steps:
            if abs(cp) < threshold:
                return cp * factor
        return cp


@dataclass(frozen=True)
class RequestContext:
    """What the session state needs to know about the request."""

    fen: str
    white_to_move: bool
    requested_depth: int = 0
    source_tag: str = ""


@dataclass
class CandidateLine:
    """One principal variation reported by the engine."""

    rank: int  # 1-based, 1 is best
    coordinate_moves: list[str] = field(default_factory=list)  # UCI notation
    algebraic_moves: list[str] = field(default_factory=list)  # SAN, may be shorter
    depth: int = 0
    evaluation: str = "0.00"

    @property
    def first_move(self) -> str:
        return self.coordinate_moves[0] if self.coordinate_moves else ""


@dataclass
class EvaluationResult:
    """Snapshot of an analysis, always from White's point of view."""

    fen: str = ""
    evaluation: str = "0.00"
    depth: int = 0
    requested_depth: int = 0
    candidate_lines: list[CandidateLine] = field(default_factory=list)
    is_terminal: bool = False
    source_tag: str = ""
    ponder_move: str | None = None
    error: str | None = None

    @property
    def best_moves(self) -> list[dict[str, str]]:
        """Moves of the top-ranked line paired with their SAN (if known)."""
        if not self.candidate_lines:
            return []
        line = self.candidate_lines[0]
        return [
            {"coordinate_move": uci, "algebraic_move": san}
            for uci, san in zip_longest(line.coordinate_moves, line.algebraic_moves, fillvalue="")
            if uci
        ]

    @classmethod
    def error_result(
        cls, fen: str, requested_depth: int, message: str, source_tag: str = ""
    ) -> EvaluationResult:
        """Degenerate result handed to callers when analysis failed."""
        return cls(
            fen=fen,
            evaluation=ERROR_EVALUATION,
            requested_depth=requested_depth,
            source_tag=source_tag,
            error=message,
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain-data form for the external API."""
        data: dict[str, Any] = {
            "fen": self.fen,
            "evaluation": self.evaluation,
            "depth": self.depth,
            "requested_depth": self.requested_depth,
            "best_moves": self.best_moves,
            "lines": [
                {
                    "rank": line.rank,
                    "moves": list(line.coordinate_moves),
                    "san": list(line.algebraic_moves),
                    "depth": line.depth,
                    "evaluation": line.evaluation,
                }
                for line in self.candidate_lines
            ],
            "completed": self.is_terminal,
            "source": self.source_tag,
        }
        if self.ponder_move:
            data["ponder"] = self.ponder_move
        if self.error is not None:
            data["error"] = self.error
        return data


def format_score(
    kind: str,
    value: int,
    white_to_move: bool,
    smoothing: SmoothingPolicy | None = None,
) -> str:
    """Format an engine score from White's perspective.

    Args:
        kind: "cp" or "mate".
        value: Score relative to the side to move.
        white_to_move: Whether White is to move in the analysed position.
        smoothing: Optional presentation policy for centipawn scores.

    Returns:
        "0.34", "-1.20", "Mate in 3" or "Mated in 2".
    """
    if kind == SCORE_MATE:
        if value == 0:
            # Side to move is already mated
            return "Mated in 0" if white_to_move else "Mate in 0"
        moves = value if white_to_move else -value
        if moves > 0:
            return f"Mate in {moves}"
        return f"Mated in {abs(moves)}"

    cp = float(value)
    if smoothing is not None:
        cp = smoothing.apply(cp)
    pawns = cp / 100 if white_to_move else -cp / 100
    text = f"{pawns:.2f}"
    return "0.00" if text == "-0.00" else text


class SessionState:
    """Mutable accumulator for one in-flight analysis.

    Not thread-safe; the scheduler's worker thread is the only caller.
    """

    def __init__(
        self,
        context: RequestContext,
        smoothing: SmoothingPolicy | None = None,
        max_lines: int = 5,
        max_line_moves: int = 5,
    ) -> None:
        self._context = context
        self._smoothing = smoothing or SmoothingPolicy()
        self._max_lines = max_lines
        self._max_line_moves = max_line_moves

        self._depth = 0
        self._evaluation = "0.00"
        self._eval_index: int | None = None  # variation the headline score follows
        self._lines: dict[int, CandidateLine] = {}
        self._order: list[CandidateLine] | None = None  # fixed once terminal
        self._terminal = False
        self._ponder: str | None = None

    @property
    def context(self) -> RequestContext:
        return self._context

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def evaluation(self) -> str:
        return self._evaluation

    @property
    def is_terminal(self) -> bool:
        return self._terminal

    def apply(self, event: LineEvent) -> bool:
        """Fold one event into the state.

        Returns:
            True if the depth or the headline evaluation changed.
        """
        if isinstance(event, InfoUpdate):
            return self._apply_info(event)
        if isinstance(event, TerminalResult):
            self._apply_terminal(event)
            return True
        return False

    def _apply_info(self, event: InfoUpdate) -> bool:
        if self._terminal:
            return False

        before = (self._depth, self._evaluation)
        self._depth = max(self._depth, event.depth)

        evaluation = format_score(
            event.score_kind, event.score_value, self._context.white_to_move, self._smoothing
        )
        if self._eval_index is None or event.multipv <= self._eval_index:
            self._eval_index = event.multipv
            self._evaluation = evaluation

        if event.pv:
            self._store_line(event, evaluation)

        return (self._depth, self._evaluation) != before

    def _store_line(self, event: InfoUpdate, evaluation: str) -> None:
        if event.multipv not in self._lines and len(self._lines) >= self._max_lines:
            return
        self._lines[event.multipv] = CandidateLine(
            rank=event.multipv,
            coordinate_moves=list(event.pv[: self._max_line_moves]),
            depth=event.depth,
            evaluation=evaluation,
        )

    def _apply_terminal(self, event: TerminalResult) -> None:
        self._terminal = True
        self._ponder = event.ponder_move
        ordered = [self._lines[index] for index in sorted(self._lines)]

        if not event.best_move:
            logger.debug(f"No legal move in {self._context.fen}")
            ordered = []
        else:
            match = next((line for line in ordered if line.first_move == event.best_move), None)
            if match is not None:
                # The engine's own choice wins over a better-looking score elsewhere
                ordered.remove(match)
                ordered.insert(0, match)
            else:
                ordered.insert(
                    0,
                    CandidateLine(
                        rank=1,
                        coordinate_moves=[event.best_move],
                        depth=self._depth,
                        evaluation=self._evaluation,
                    ),
                )
            ordered = ordered[: self._max_lines]

        self._order = ordered

    def _ranked_lines(self) -> list[CandidateLine]:
        if self._order is not None:
            lines = self._order
        else:
            lines = [self._lines[index] for index in sorted(self._lines)]
        ranked = copy.deepcopy(lines)
        for rank, line in enumerate(ranked, start=1):
            line.rank = rank
        return ranked

    def snapshot(self) -> EvaluationResult:
        """Return an independent copy of the current result."""
        return EvaluationResult(
            fen=self._context.fen,
            evaluation=self._evaluation,
            depth=self._depth,
            requested_depth=self._context.requested_depth,
            candidate_lines=self._ranked_lines(),
            is_terminal=self._terminal,
            source_tag=self._context.source_tag,
            ponder_move=self._ponder,
        )
