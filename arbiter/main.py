from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import asdict, replace

from arbiter.config import AppSettings, load_settings
from arbiter.exchanges import default_router
from arbiter.logging_setup import configure_logging
from arbiter.orchestrator import TickOrchestrator, TickParams
from arbiter.scoring.ranker import LlmRanker
from arbiter.store import ArbStore

LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Paper arbitrage loop: detect, score, execute and close simulated positions",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and print its summary",
    )
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=None,
        help="Seconds between ticks (default: ARBITER_POLL_INTERVAL_SECONDS or 60)",
    )
    parser.add_argument(
        "--holding-hours",
        type=float,
        default=None,
        help="Carry holding horizon in hours, clamped to [1, 168]",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite database path (default: ARBITER_DB_PATH or data/arbiter.db)",
    )
    parser.add_argument(
        "--ab-report",
        action="store_true",
        help="Print the A/B variant report for the last 30 days and exit",
    )
    parser.add_argument(
        "--close",
        metavar="POSITION_ID",
        default=None,
        help="Manually close one open position and exit",
    )
    return parser.parse_args(argv)


def apply_overrides(settings: AppSettings, args: argparse.Namespace) -> AppSettings:
    if args.db:
        settings = replace(settings, store=replace(settings.store, db_path=args.db))
    if args.interval_seconds is not None:
        settings = replace(settings, poll_interval_seconds=int(args.interval_seconds))
    return settings


async def _run(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = apply_overrides(load_settings(), args)
    configure_logging(settings.log_level, settings.log_file)

    store = ArbStore(settings.store.db_path)
    provider = default_router(settings.quote_timeout_seconds)
    ranker = LlmRanker(settings.reranker, store) if settings.reranker.enabled else None
    orchestrator = TickOrchestrator(settings, store, provider, ranker=ranker)
    try:
        if args.ab_report:
            orchestrator.execution.ensure_account()
            report = orchestrator.pnl.variant_report(settings.scoring.training_window_days)
            print(json.dumps({k: asdict(v) for k, v in report.items()}, indent=2))
            return

        if args.close:
            orchestrator.execution.ensure_account()
            outcome = await orchestrator.close_monitor.close_position(args.close)
            print(json.dumps(asdict(outcome), indent=2))
            return

        params = TickParams(holding_hours=args.holding_hours)
        if args.once:
            result = await orchestrator.run_tick(params)
            print(json.dumps(result.to_dict(), indent=2, default=str))
            return

        LOGGER.info(
            "paper loop account=%s interval=%ss db=%s reranker=%s",
            settings.execution.account_id,
            settings.poll_interval_seconds,
            settings.store.db_path,
            "on" if ranker is not None else "off",
        )
        await orchestrator.run_forever(settings.poll_interval_seconds, params)
    finally:
        if ranker is not None:
            await ranker.aclose()
        await provider.aclose()
        store.close()


def main(argv: list[str] | None = None) -> None:
    asyncio.run(_run(argv))


if __name__ == "__main__":
    main()
