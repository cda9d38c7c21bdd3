"""
Conversion of engine moves to standard algebraic notation.

The rules engine is an external capability: it validates positions and turns
coordinate moves into SAN. python-chess provides the default implementation.
"""

from __future__ import annotations

import logging
from typing import Protocol

import chess

from common import InvalidPositionError

from .session import EvaluationResult

logger = logging.getLogger(__name__)


class RulesEngine(Protocol):
    """Capability the orchestrator needs from a chess rules library."""

    def validate(self, fen: str) -> bool:
        """Return True if White is to move; raise InvalidPositionError if invalid."""

    def to_algebraic(self, fen: str, move: str) -> tuple[str, str]:
        """Return (SAN, FEN after the move); raise ValueError if not playable."""


class ChessRules:
    """RulesEngine backed by python-chess."""

    def validate(self, fen: str) -> bool:
        try:
            board = chess.Board(fen)
        except ValueError as e:
            raise InvalidPositionError(f"Invalid FEN: {fen}") from e

        if not board.is_valid():
            raise InvalidPositionError(f"Illegal position ({board.status()!r}): {fen}")

        return board.turn == chess.WHITE

    def to_algebraic(self, fen: str, move: str) -> tuple[str, str]:
        board = chess.Board(fen)
        parsed = chess.Move.from_uci(move)
        if not board.is_legal(parsed):
            raise ValueError(f"Illegal move {move} in {fen}")
        san = board.san(parsed)
        board.push(parsed)
        return san, board.fen()


class NotationPostProcessor:
    """Adds SAN to the candidate lines of an EvaluationResult."""

    def __init__(self, rules: RulesEngine | None = None) -> None:
        self._rules = rules or ChessRules()

    def to_algebraic(self, fen: str, move: str) -> str:
        """Convert a single coordinate move, e.g. ("...", "g1f3") -> "Nf3"."""
        san, _ = self._rules.to_algebraic(fen, move)
        return san

    def line_to_algebraic(self, fen: str, moves: list[str]) -> list[str]:
        """Convert a move sequence, stopping at the first unplayable move."""
        sans: list[str] = []
        position = fen
        for move in moves:
            try:
                san, position = self._rules.to_algebraic(position, move)
            except ValueError as e:
                logger.debug(f"Truncating line at {move}: {e}")
                break
            sans.append(san)
        return sans

    def annotate(self, result: EvaluationResult) -> EvaluationResult:
        """Fill in algebraic moves on every candidate line, in place.

        A line is cut back to the moves that could be converted. A line whose
        first move cannot be converted keeps its coordinate moves as they are.
        """
        for line in result.candidate_lines:
            sans = self.line_to_algebraic(result.fen, line.coordinate_moves)
            if sans:
                line.coordinate_moves = line.coordinate_moves[: len(sans)]
            line.algebraic_moves = sans
        return result
