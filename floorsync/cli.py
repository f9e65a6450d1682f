"""Operator command line.

Examples:
    floorsync daily
    floorsync collection azuki 90
    floorsync backfill 365
    floorsync force azuki pudgypenguins --days 3
    floorsync compare azuki pudgypenguins --timeframe 90d
    floorsync selection status
    floorsync serve
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from typing import Any, Sequence

from floorsync.core.config import Settings, get_settings
from floorsync.core.exceptions import AppException
from floorsync.core.logging import get_logger, setup_logging
from floorsync.main import (
    TIMEFRAME_DAYS,
    Application,
    build_application,
    collection_to_dict,
    serve,
)


logger = get_logger("cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="floorsync",
        description="Quarterly top-N selection and daily floor-price sync",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("daily", help="Run the daily sync now")

    collection = commands.add_parser("collection", help="Sync history for one collection")
    collection.add_argument("slug")
    collection.add_argument("days", nargs="?", type=int, default=30)

    backfill = commands.add_parser("backfill", help="Select if due and backfill full history")
    backfill.add_argument("days", nargs="?", type=int, default=None)

    force = commands.add_parser("force", help="Re-fetch and overwrite collections")
    force.add_argument("slugs", nargs="+")
    force.add_argument("--days", type=int, default=1)

    compare = commands.add_parser("compare", help="Stored history for several collections")
    compare.add_argument("slugs", nargs="+")
    compare.add_argument("--timeframe", choices=list(TIMEFRAME_DAYS), default="30d")

    summary = commands.add_parser("summary", help="Floor-price summary for one collection")
    summary.add_argument("slug")

    commands.add_parser("cleanup", help="Run retention cleanup now")
    commands.add_parser("status", help="Show store stats and recent runs")

    selection = commands.add_parser("selection", help="Quarterly selection commands")
    selection.add_argument(
        "action",
        choices=["check", "update", "status", "history", "collections"],
    )
    selection.add_argument("--limit", type=int, default=10)

    commands.add_parser("serve", help="Run the scheduler until interrupted")
    return parser


async def _run_selection(app: Application, args: argparse.Namespace) -> Any:
    if args.action == "check":
        return dataclasses.asdict(await app.selection.needs_new_selection())
    if args.action == "update":
        return await app.force_selection_update()
    if args.action == "status":
        return await app.selection.get_active_selection_info()
    if args.action == "history":
        return await app.selection.get_selection_history(args.limit)
    collections = await app.selection.get_current_selection()
    return [collection_to_dict(c) for c in collections]


async def run_command(app: Application, args: argparse.Namespace) -> Any:
    """Execute one non-serve command against a started application."""
    if args.command == "daily":
        return await app.run_manual_sync()
    if args.command == "collection":
        return (await app.sync.historical_sync(args.slug, args.days)).to_dict()
    if args.command == "backfill":
        return (await app.sync.full_history_sync(args.days)).to_dict()
    if args.command == "force":
        return await app.force_sync(args.slugs, days_back=args.days)
    if args.command == "cleanup":
        return await app.run_manual_cleanup()
    if args.command == "compare":
        return await app.get_collections_comparison(args.slugs, args.timeframe)
    if args.command == "summary":
        return await app.get_price_summary(args.slug)
    if args.command == "status":
        return await app.sync.get_sync_status()
    if args.command == "selection":
        return await _run_selection(app, args)
    raise ValueError(f"Unknown command: {args.command}")


def _exit_code(result: Any) -> int:
    if isinstance(result, dict) and result.get("success") is False:
        return 1
    if isinstance(result, list) and any(
        isinstance(r, dict) and r.get("success") is False for r in result
    ):
        return 1
    return 0


async def _main(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "serve":
        await serve(settings)
        return 0

    async with build_application(settings) as app:
        try:
            result = await run_command(app, args)
        except AppException as e:
            logger.error(e.message)
            print(json.dumps(e.to_dict(), indent=2, default=str), file=sys.stderr)
            return 1

    print(json.dumps(result, indent=2, default=str))
    return _exit_code(result)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings)
    try:
        return asyncio.run(_main(args, settings))
    except KeyboardInterrupt:
        return 130
