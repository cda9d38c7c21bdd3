"""Command line entry point: ``python -m analysis_service {serve,batch}``."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from common import EnpassantError

from .batch import load_positions, run_batch
from .config import BatchConfig, EngineConfig, PoolConfig, SchedulerConfig, ServerConfig
from .pool import SessionPool
from .server import serve

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="analysis_service", description="UCI engine analysis service"
    )
    parser.add_argument("--engine", type=Path, help="Path to the UCI engine binary")
    parser.add_argument("--threads", type=int, help="Engine Threads option")
    parser.add_argument("--hash", type=int, dest="hash_mb", help="Engine Hash option (MB)")
    parser.add_argument("--multipv", type=int, help="Number of candidate lines")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log engine traffic")

    sub = parser.add_subparsers(dest="command", required=True)

    serve_parser = sub.add_parser("serve", help="Run the gRPC analysis server")
    serve_parser.add_argument("--port", type=int, help="Port to listen on")
    serve_parser.add_argument("--max-sessions", type=int, help="Concurrent session limit")

    batch_parser = sub.add_parser("batch", help="Analyse a catalogue of positions")
    batch_parser.add_argument("positions", type=Path, help="Positions JSON file")
    batch_parser.add_argument("--depth", type=int, help="Search depth (default 32)")
    batch_parser.add_argument("--timeout", type=float, help="Seconds per position")
    batch_parser.add_argument("--movetime", type=int, help="Engine movetime in ms")
    batch_parser.add_argument("--output", type=Path, help="Output directory")
    batch_parser.add_argument(
        "--force", action="store_true", help="Re-analyse positions already on disk"
    )

    return parser


def engine_config_from_args(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig()
    if args.engine is not None:
        config.engine_path = args.engine
    if args.threads is not None:
        config.threads = args.threads
    if args.hash_mb is not None:
        config.hash_mb = args.hash_mb
    if args.multipv is not None:
        config.multipv = args.multipv
    return config


def run_serve(args: argparse.Namespace) -> int:
    server_config = ServerConfig()
    if args.port is not None:
        server_config.port = args.port
    pool_config = PoolConfig()
    if args.max_sessions is not None:
        pool_config.max_sessions = args.max_sessions

    serve(server_config, pool_config, SchedulerConfig(), engine_config_from_args(args))
    return 0


def run_batch_command(args: argparse.Namespace) -> int:
    batch_config = BatchConfig()
    if args.depth is not None:
        batch_config.depth = args.depth
    if args.timeout is not None:
        batch_config.timeout = args.timeout
    if args.movetime is not None:
        batch_config.move_time_ms = args.movetime
    if args.output is not None:
        batch_config.output_dir = args.output

    try:
        positions = load_positions(args.positions)
    except EnpassantError as e:
        logger.error(str(e))
        return 1
    logger.info(f"Loaded {len(positions)} positions from {args.positions}")

    scheduler_config = SchedulerConfig(request_timeout=batch_config.timeout)
    pool = SessionPool(
        PoolConfig(max_sessions=1), scheduler_config, engine_config=engine_config_from_args(args)
    )
    pool.start()
    try:
        summary = run_batch(pool, positions, batch_config, skip_existing=not args.force)
    finally:
        pool.shutdown()

    return 1 if summary.failed else 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        # serve() configures logging itself
        if args.verbose:
            logging.basicConfig(level=logging.DEBUG)
        return run_serve(args)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return run_batch_command(args)


if __name__ == "__main__":
    sys.exit(main())
