"""Command-line interface for the CDP engine."""
from __future__ import annotations

import argparse
import asyncio
import sys

from .config import load_config
from .logging_setup import configure_logging
from .simulation import (
    build_system,
    format_health_table,
    format_report,
    load_scenario,
    run_scenario,
)


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="cdp-engine",
        description="LP-collateralised CDP vault engine",
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

    simulate_parser = sub.add_parser("simulate", help="Replay a scenario and print a report")
    simulate_parser.add_argument("scenario", help="Path to a scenario YAML file")

    report_parser = sub.add_parser("report", help="Replay a scenario and print vault health")
    report_parser.add_argument("scenario", help="Path to a scenario YAML file")

    keeper_parser = sub.add_parser("keeper", help="Replay a scenario, then run one keeper pass")
    keeper_parser.add_argument("scenario", help="Path to a scenario YAML file")
    keeper_parser.add_argument(
        "--liquidator",
        default=None,
        help="Liquidator address (overrides config)",
    )
    keeper_parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running after the replay instead of a single pass",
    )
    keeper_parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Check interval in minutes for --loop (overrides config)",
    )

    return parser


async def _run(args: argparse.Namespace) -> None:
    """Execute the selected command."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    scenario = load_scenario(args.scenario)
    system = build_system(config, start_time=scenario.start_time)
    results = run_scenario(system, scenario)

    if args.command == "simulate":
        print(format_report(system, results))
    elif args.command == "report":
        print(format_health_table(system))
    elif args.command == "keeper" and args.loop:
        await system.keeper(args.liquidator).run_continuous(args.interval)
    elif args.command == "keeper":
        liquidations = await system.keeper(args.liquidator).run_once()
        print(f"Liquidated {len(liquidations)} vault(s)")
        print(format_health_table(system))
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

    asyncio.run(_run(args))
