"""
Offline deep analysis of a list of known positions.

Reads a positions file of the form

    {
        "openings": [{"fen": ..., "name": ..., "eco": ...}, ...],
        "midgame_positions": [{"fen": ..., "name": ...}, ...],
        "endgame_positions": [{"fen": ..., "name": ...}, ...]
    }

analyses every position on one session and writes one JSON document per
position to the output directory, named <fen hash>_<depth>.json.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from common import EnpassantError, InvalidRequestError

from .config import BatchConfig
from .pool import SessionPool

logger = logging.getLogger(__name__)

BATCH_SESSION = "batch"

# Section of the positions file -> position type
SECTIONS = {
    "openings": "opening",
    "midgame_positions": "middlegame",
    "endgame_positions": "endgame",
}


@dataclass(frozen=True)
class BatchPosition:
    """A position to analyse, with its catalogue metadata."""

    fen: str
    name: str
    position_type: str
    eco: str | None = None


@dataclass
class BatchSummary:
    """Outcome counts of a batch run."""

    analysed: int = 0
    failed: int = 0
    skipped: int = 0
    written: list[Path] | None = None


def fen_hash(fen: str) -> str:
    """Stable short key for a FEN string."""
    return hashlib.sha1(fen.encode("utf-8")).hexdigest()[:16]


def load_positions(path: Path) -> list[BatchPosition]:
    """Load positions from a JSON catalogue.

    Raises:
        InvalidRequestError: If the file is not a catalogue object.
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidRequestError(f"Cannot read positions file {path}: {e}") from e

    if not isinstance(data, dict):
        raise InvalidRequestError(f"Positions file {path} must contain a JSON object")

    positions: list[BatchPosition] = []
    for section, position_type in SECTIONS.items():
        for entry in data.get(section, []):
            if not isinstance(entry, dict) or not entry.get("fen"):
                logger.warning(f"Skipping malformed entry in {section}: {entry!r}")
                continue
            positions.append(
                BatchPosition(
                    fen=entry["fen"],
                    name=entry.get("name", ""),
                    position_type=position_type,
                    eco=entry.get("eco"),
                )
            )
    return positions


def output_path(output_dir: Path, fen: str, depth: int) -> Path:
    """File for an analysis of fen requested at depth.

    The depth reached can be lower when movetime ends the search first.
    """
    return output_dir / f"{fen_hash(fen)}_{depth}.json"


def find_existing(output_dir: Path, fen: str, min_depth: int) -> Path | None:
    """Return a stored analysis of fen requested at min_depth or deeper, if any."""
    for candidate in output_dir.glob(f"{fen_hash(fen)}_*.json"):
        depth_part = candidate.stem.rsplit("_", 1)[-1]
        if depth_part.isdigit() and int(depth_part) >= min_depth:
            return candidate
    return None


def analyse_position(
    pool: SessionPool, position: BatchPosition, config: BatchConfig
) -> dict[str, Any]:
    """Analyse one position and return its output document.

    Raises:
        EnpassantError: If the analysis was rejected.
    """
    logger.info(f"Analysing {position.name or position.fen} at depth {config.depth}")
    last_depth = 0

    def progress(snapshot: Any) -> None:
        nonlocal last_depth
        if snapshot.depth > last_depth and snapshot.depth % 4 == 0:
            logger.info(f"  Progress: depth {snapshot.depth}/{config.depth}")
        last_depth = max(last_depth, snapshot.depth)

    future = pool.analyze(
        position.fen,
        config.depth,
        on_update=progress,
        session_id=BATCH_SESSION,
        timeout=config.timeout,
        move_time_ms=config.move_time_ms,
    )
    result = future.result()

    document = result.to_dict()
    document.update(
        {
            "fen_hash": fen_hash(position.fen),
            "timestamp": int(time.time() * 1000),
            "position_name": position.name,
            "position_type": position.position_type,
        }
    )
    if position.eco:
        document["eco"] = position.eco
    return document


def run_batch(
    pool: SessionPool,
    positions: list[BatchPosition],
    config: BatchConfig | None = None,
    skip_existing: bool = True,
) -> BatchSummary:
    """Analyse positions one after another, writing a file per position.

    A failed position is logged and the batch moves on.
    """
    config = config or BatchConfig()
    output_dir = Path(config.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    summary = BatchSummary(written=[])
    for index, position in enumerate(positions, start=1):
        logger.info(f"[{index}/{len(positions)}] {position.position_type}: {position.name}")

        if skip_existing:
            existing = find_existing(output_dir, position.fen, config.depth)
            if existing is not None:
                logger.info(f"Already analysed: {existing.name}")
                summary.skipped += 1
                continue

        try:
            document = analyse_position(pool, position, config)
        except EnpassantError as e:
            logger.error(f"Failed to analyse {position.name or position.fen}: {e}")
            summary.failed += 1
            continue

        path = output_path(output_dir, position.fen, config.depth)
        path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        summary.analysed += 1
        summary.written.append(path)
        logger.info(f"Saved {path.name}: eval {document['evaluation']} at depth {document['depth']}")

    logger.info(
        f"Batch complete: {summary.analysed} analysed, "
        f"{summary.skipped} skipped, {summary.failed} failed"
    )
    return summary
