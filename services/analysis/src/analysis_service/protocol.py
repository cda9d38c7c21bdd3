"""
Parser for UCI engine output.

Each line the engine writes is turned into exactly one LineEvent. The parser
keeps no state between lines and never raises: anything it cannot make sense
of becomes Unrecognized and is dropped by the caller.

Example engine output:
    id name Stockfish 16
    uciok
    readyok
    info depth 20 seldepth 27 multipv 1 score cp 34 nodes 1048576 nps 900000 pv e2e4 e7e5
    bestmove e2e4 ponder e7e5

Scores are relative to the side to move; perspective correction happens in
the session state, which knows whose turn it is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Union

logger = logging.getLogger(__name__)

SCORE_CP = "cp"
SCORE_MATE = "mate"

# Tokens that end a principal variation when they appear after "pv"
INFO_KEYWORDS = frozenset(
    {
        "depth",
        "seldepth",
        "multipv",
        "score",
        "nodes",
        "nps",
        "hashfull",
        "tbhits",
        "sbhits",
        "time",
        "currmove",
        "currmovenumber",
        "cpuload",
        "wdl",
        "string",
        "refutation",
        "currline",
        "pv",
    }
)

# Engines answer "bestmove (none)" or "bestmove 0000" when there is no legal move
NULL_MOVES = frozenset({"(none)", "0000", "none", "null"})


@dataclass(frozen=True)
class HandshakeAck:
    """Engine acknowledged the protocol handshake (uciok)."""


@dataclass(frozen=True)
class ReadyAck:
    """Engine answered a readiness probe (readyok)."""


@dataclass(frozen=True)
class EngineIdentity:
    """Engine reported its name (id name ...)."""

    name: str


@dataclass(frozen=True)
class InfoUpdate:
    """One search progress line carrying a score."""

    depth: int
    score_kind: str  # SCORE_CP or SCORE_MATE
    score_value: int  # Relative to the side to move
    multipv: int = 1
    pv: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class TerminalResult:
    """Search finished (bestmove). Empty best_move means no legal move."""

    best_move: str = ""
    ponder_move: str | None = None


@dataclass(frozen=True)
class Unrecognized:
    """Anything else the engine printed."""

    line: str = ""


LineEvent = Union[
    HandshakeAck, ReadyAck, EngineIdentity, InfoUpdate, TerminalResult, Unrecognized
]


def parse_line(line: str) -> LineEvent:
    """Parse one line of engine output.

    Args:
        line: Raw line, with or without the trailing newline.

    Returns:
        The structured event for the line.
    """
    text = line.strip()
    if not text:
        return Unrecognized(text)

    tokens = text.split()
    head = tokens[0]

    if head == "uciok":
        return HandshakeAck()
    if head == "readyok":
        return ReadyAck()
    if head == "info":
        return _parse_info(tokens[1:], text)
    if head == "bestmove":
        return _parse_bestmove(tokens[1:])
    if head == "id" and len(tokens) > 2 and tokens[1] == "name":
        return EngineIdentity(" ".join(tokens[2:]))

    return Unrecognized(text)


def _parse_info(tokens: list[str], text: str) -> LineEvent:
    """Parse the fields of an info line, in whatever order they appear."""
    depth: int | None = None
    score_kind: str | None = None
    score_value: int | None = None
    multipv = 1
    pv: list[str] = []

    i = 0
    try:
        while i < len(tokens):
            token = tokens[i]
            if token == "string":
                # Free text runs to end of line
                break
            if token == "depth":
                depth = int(tokens[i + 1])
                i += 2
            elif token == "multipv":
                multipv = int(tokens[i + 1])
                i += 2
            elif token == "score":
                kind = tokens[i + 1]
                if kind not in (SCORE_CP, SCORE_MATE):
                    return Unrecognized(text)
                score_kind = kind
                score_value = int(tokens[i + 2])
                i += 3
                # Bound qualifiers follow the score value
                while i < len(tokens) and tokens[i] in ("lowerbound", "upperbound"):
                    i += 1
            elif token == "wdl":
                i += 4
            elif token == "pv":
                i += 1
                while i < len(tokens) and tokens[i] not in INFO_KEYWORDS:
                    pv.append(tokens[i])
                    i += 1
            elif token in ("refutation", "currline"):
                # Move lists we have no use for
                i += 1
                while i < len(tokens) and tokens[i] not in INFO_KEYWORDS:
                    i += 1
            elif token in INFO_KEYWORDS:
                i += 2
            else:
                i += 1
    except (IndexError, ValueError):
        logger.debug(f"Malformed info line: {text}")
        return Unrecognized(text)

    if depth is None or score_kind is None or score_value is None:
        return Unrecognized(text)

    return InfoUpdate(
        depth=depth,
        score_kind=score_kind,
        score_value=score_value,
        multipv=max(1, multipv),
        pv=tuple(pv),
    )


def _parse_bestmove(tokens: list[str]) -> TerminalResult:
    """Parse the arguments of a bestmove line."""
    if not tokens or tokens[0] in NULL_MOVES:
        return TerminalResult()

    ponder: str | None = None
    if len(tokens) >= 3 and tokens[1] == "ponder" and tokens[2] not in NULL_MOVES:
        ponder = tokens[2]

    return TerminalResult(best_move=tokens[0], ponder_move=ponder)
