"""CLI runner for Deedboard workers.

Usage:
    python -m deedboard.workers.run tick
    python -m deedboard.workers.run recompute day 2026-02-19
    python -m deedboard.workers.run rebuild
    python -m deedboard.workers.run scheduler
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Any

from deedboard.core.context import new_correlation_id
from deedboard.core.errors import DeedboardError
from deedboard.core.logging import setup_logging

logger = logging.getLogger(__name__)


def _get_engine() -> Any:
    """Build the engine from environment settings."""
    from deedboard.core.config import get_settings
    from deedboard.services.engine import build_engine

    return build_engine(get_settings())


def run_tick(args: argparse.Namespace) -> int:
    """Run the scheduler tick once."""
    engine = _get_engine()
    result = engine.scheduler.on_tick().to_dict()
    logger.info(
        "Tick complete: finalized=%s users=%d errors=%d",
        result["periods_finalized"],
        result["users_finalized"],
        len(result["errors"]),
    )
    for error in result["errors"]:
        logger.warning("  %s", error)
    return 0 if result["success"] else 1


def run_recompute(args: argparse.Namespace) -> int:
    """Recompute one period from the event log."""
    engine = _get_engine()
    totals = engine.scheduler.repair(args.period, args.key)
    logger.info("Recompute complete: %s:%s users=%d", args.period, args.key, len(totals))
    return 0


def run_rebuild(args: argparse.Namespace) -> int:
    """Recompute every period touched by the event log."""
    engine = _get_engine()
    refs = engine.aggregator.rebuild()
    engine.ranker.invalidate()
    logger.info("Rebuild complete: %d periods", len(refs))
    return 0


def run_scheduler(args: argparse.Namespace) -> int:
    """Tick until SIGINT/SIGTERM."""
    engine = _get_engine()
    stop = threading.Event()

    def _stop(signum: int, frame: Any) -> None:
        logger.info("Received signal %d, stopping scheduler", signum)
        stop.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    engine.scheduler.run_forever(stop)
    return 0


WORKERS = {
    "tick": run_tick,
    "recompute": run_recompute,
    "rebuild": run_rebuild,
    "scheduler": run_scheduler,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run a Deedboard worker",
        prog="python -m deedboard.workers.run",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    sub = parser.add_subparsers(dest="worker", required=True)
    sub.add_parser("tick", help="Retry pending events and finalize ended periods")
    recompute = sub.add_parser("recompute", help="Rebuild one period from the event log")
    recompute.add_argument("period", choices=["day", "week", "month", "all_time"])
    recompute.add_argument("key", help="Period key, e.g. 2026-02-19, W2026-02-14, 2026-02, all")
    sub.add_parser("rebuild", help="Rebuild every period from the event log")
    sub.add_parser("scheduler", help="Run the tick loop until stopped")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    from deedboard.core.config import get_settings

    settings = get_settings()
    setup_logging(level=args.log_level.upper(), log_format=settings.log_format)
    new_correlation_id(f"{args.worker}-")

    logger.info("Running worker: %s", args.worker)
    try:
        exit_code = WORKERS[args.worker](args)
    except DeedboardError as exc:
        logger.error("Worker %s failed: %s", args.worker, exc.detail)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
