"""Command-line interface for the RWA exposure core."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from .config import load_config
from .errors import ExposureError
from .logging_setup import configure_logging
from .services import Keeper, build_environment

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="rwa-exposure",
        description="RWA exposure strategies, optimizer and bundle orchestration",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    simulate_parser = sub.add_parser(
        "simulate", help="Allocate capital through the bundle and print the result"
    )
    simulate_parser.add_argument(
        "amount", type=int, help="Capital to allocate, in base asset units"
    )

    sub.add_parser("optimize", help="Score every strategy and print recommendations")

    keeper_parser = sub.add_parser("keeper", help="Continuous upkeep loop")
    keeper_parser.add_argument(
        "interval",
        nargs="?",
        type=int,
        default=None,
        help="Upkeep interval in minutes (overrides config)",
    )

    return parser


def _print_simulation(env, amount: int) -> None:
    exposures = env.bundle.allocate_capital(amount)
    stats = env.bundle.get_bundle_stats()
    print(f"Allocated {amount:,}")
    for strategy_id, exposure in exposures.items():
        print(f"  {strategy_id:<14} exposure {exposure:,}")
    print(f"  {'idle':<14} {env.bundle.idle_capital:,}")
    print(
        f"Total value {stats.total_value:,} · exposure {stats.total_exposure:,} · "
        f"leverage {stats.current_leverage / 100:.2f}x · "
        f"{'healthy' if stats.is_healthy else 'UNHEALTHY'}"
    )


def _print_optimization(env) -> None:
    capital = env.bundle.deployed_capital or 1_000_000
    scores = env.optimizer.analyze_strategies(env.bundle.strategies, capital)
    print(f"Strategy scores for {capital:,}")
    for s in sorted(scores, key=lambda s: s.total_score, reverse=True):
        cost = "n/a" if s.estimated_cost_bps is None else f"{s.estimated_cost_bps} bps"
        mark = "*" if s.recommended else " "
        print(
            f" {mark} {s.strategy_id:<14} score {s.total_score:>3} · cost {cost:<9} · "
            f"allocation {s.allocation_bps / 100:.2f}%"
            + (f" · error: {s.error}" if s.error else "")
        )


async def _run(args: argparse.Namespace) -> None:
    """Execute the selected command."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    env = build_environment(config)
    keeper = Keeper(env)

    if args.command == "simulate":
        await keeper.refresh_prices()
        _print_simulation(env, args.amount)
    elif args.command == "optimize":
        await keeper.refresh_prices()
        _print_optimization(env)
    elif args.command == "keeper":
        await keeper.run_continuous(args.interval)
    else:
        build_parser().print_help()
        sys.exit(1)


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        asyncio.run(_run(args))
    except (ExposureError, ValueError, FileNotFoundError) as e:
        logger.error("%s", e)
        sys.exit(2)
