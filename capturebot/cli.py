"""Command line entry point for running CaptureBot jobs from cron."""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from capturebot.core.db import AsyncSessionLocal, create_all
from capturebot.core.logging import setup_logging, get_logger
from capturebot.core.time import get_current_utc_time, parse_timestamp
from capturebot.interests.weights import decay_stale_interests
from capturebot.merger.pipeline import run_container_merges
from capturebot.scheduler.delivery import get_delivery_handler, run_delivery_tick
from capturebot.trender.pipeline import run_trend_detection

logger = get_logger(__name__)


async def _init_db(args) -> dict:
    await create_all()
    return {"tables": "created"}


async def _trends(args) -> dict:
    stats = await run_trend_detection(now=args.now, user_ids=args.user or None)
    return stats.to_dict()


async def _merge(args) -> dict:
    stats = await run_container_merges(user_ids=args.user or None)
    return stats.to_dict()


async def _deliver(args) -> dict:
    handler = None if args.dry_run else get_delivery_handler()
    try:
        stats = await run_delivery_tick(handler, now=args.now)
    finally:
        if handler is not None:
            await handler.aclose()
    return stats.to_dict()


async def _decay(args) -> dict:
    async with AsyncSessionLocal() as session:
        decayed = await decay_stale_interests(session, args.now or get_current_utc_time(), user_id=args.user_id)
    return {"decayed": decayed}


def _timestamp(value: str):
    parsed = parse_timestamp(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"invalid timestamp: {value}")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="capturebot", description="CaptureBot analytics jobs")
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    init_db = subparsers.add_parser('init-db', help='Create database tables')
    init_db.set_defaults(handler=_init_db)

    trends = subparsers.add_parser('trends', help='Detect, narrate and store trends')
    trends.add_argument('--user', action='append', help='Restrict to a user id (repeatable)')
    trends.add_argument('--now', type=_timestamp, default=None, help='Reference time (ISO 8601)')
    trends.set_defaults(handler=_trends)

    merge = subparsers.add_parser('merge', help='Suggest and execute container merges')
    merge.add_argument('--user', action='append', help='Restrict to a user id (repeatable)')
    merge.set_defaults(handler=_merge)

    deliver = subparsers.add_parser('deliver', help='Deliver to users whose report time is now')
    deliver.add_argument('--now', type=_timestamp, default=None, help='Reference time (ISO 8601)')
    deliver.add_argument('--dry-run', action='store_true', help='Only list the users that are due')
    deliver.set_defaults(handler=_deliver)

    decay = subparsers.add_parser('decay', help='Decay the weight of stale interests')
    decay.add_argument('--user-id', default=None, help='Restrict to one user')
    decay.add_argument('--now', type=_timestamp, default=None, help='Reference time (ISO 8601)')
    decay.set_defaults(handler=_decay)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(f"cli-{args.command}")
    if args.verbose:
        logging.getLogger('capturebot').setLevel(logging.DEBUG)

    try:
        result = asyncio.run(args.handler(args))
    except Exception as e:
        logger.error(f"Command {args.command} failed: {e}", exc_info=True)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
