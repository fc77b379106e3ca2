#!/usr/bin/env python
"""
Maintenance helper: drop cached conversation contexts that went stale.

Walks the Redis keyspace (SCAN), so run it off-peak, e.g. from cron:

    python scripts/cleanup_contexts.py --days 7
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from chatcache.logging_config import setup_logging  # noqa: E402
from chatcache.redis_client import get_redis_client  # noqa: E402
from chatcache.services.context_cache import ConversationContextCache  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Delete conversation contexts older than N days (and unreadable ones).",
    )
    parser.add_argument(
        "--days",
        type=int,
        default=7,
        help="Age threshold in days (default: 7)",
    )
    return parser.parse_args()


async def run_cleanup(days: int) -> int:
    redis = get_redis_client()
    try:
        return await ConversationContextCache(redis).cleanup_old_contexts(older_than_days=days)
    finally:
        await redis.aclose()


def main() -> None:
    args = parse_args()
    if args.days < 0:
        print("--days must not be negative")
        sys.exit(2)
    setup_logging()
    deleted = asyncio.run(run_cleanup(args.days))
    print(f"Deleted {deleted} conversation contexts")


if __name__ == "__main__":
    main()
