#!/usr/bin/env python3
"""Command line entry point for the mint catalog service."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from .catalog import STATUS_RANK
from .config import Config
from .errors import ConfigError
from .logging_utils import configure_runtime_logging
from .runtime import CatalogRuntime, purge_denied, refresh_market_data, reset_status

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Discover, enrich and price new Solana mints")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument("--log-file", default=None, help="Override LOG_FILE")
    parser.add_argument("--json-logs", action="store_true", help="Emit structured JSON logs")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the ingestion runtime (default)")
    sub.add_parser("purge-denied", help="Delete catalog rows whose name or symbol is denied")
    reset = sub.add_parser("reset-status", help="Force a token back to a lifecycle status")
    reset.add_argument("mint")
    reset.add_argument("--status", default="fresh", choices=sorted(STATUS_RANK))
    refresh = sub.add_parser("refresh", help="Fetch and store a market snapshot for one mint")
    refresh.add_argument("mint")
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def run_from_args(args: argparse.Namespace, config: Config) -> int:
    command = args.command or "run"
    if command == "purge-denied":
        removed = asyncio.run(purge_denied(config))
        print(f"purged {removed} token(s)")
        return 0
    if command == "reset-status":
        changed = asyncio.run(reset_status(config, args.mint, args.status))
        if not changed:
            print(f"unknown mint {args.mint}", file=sys.stderr)
            return 1
        print(f"{args.mint} -> {args.status}")
        return 0
    if command == "refresh":
        try:
            quote = asyncio.run(refresh_market_data(config, args.mint))
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return 2
        if quote is None:
            print(f"no market data for {args.mint}", file=sys.stderr)
            return 1
        print(
            f"{args.mint} price={quote.price} marketcap={quote.marketcap} "
            f"volume_24h={quote.volume_24h} liquidity={quote.liquidity} source={quote.source}"
        )
        return 0
    CatalogRuntime(config).run_forever()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_runtime_logging(level=args.log_level, logfile=args.log_file, json_logs=args.json_logs or None)
    try:
        config = Config.from_env()
    except ConfigError as exc:
        log.error("Configuration error: %s", exc)
        return 1
    return run_from_args(args, config)


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
