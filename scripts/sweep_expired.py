#!/usr/bin/env python3
"""Delete expired one-time codes, sessions and login states.

Safe to run repeatedly; meant for cron or any external scheduler.

Usage:
    DATABASE_URL=postgresql://... python scripts/sweep_expired.py

    # Count expired records without deleting anything:
    python scripts/sweep_expired.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    REDIS_URL: Redis URL (state entries there expire on their own)
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def count_expired(runtime) -> dict:
    """Number of expired rows per kind that a sweep would remove."""
    return {
        "otp_records": runtime.otp.count_expired(),
        "sessions": runtime.sessions.count_expired(),
        "states": runtime.states.count_expired(),
    }


def sweep(runtime) -> dict:
    """Run every cleanup once and return the number of rows removed per kind."""
    return {
        "otp_records": runtime.otp.cleanup_expired(),
        "sessions": runtime.sessions.cleanup_expired(),
        "states": runtime.states.cleanup_expired(),
    }


async def _run(dry_run: bool) -> dict:
    # Import here to avoid loading config before env vars are set
    from convergeauth.config import Settings
    from convergeauth.service.runtime import Runtime

    settings = Settings.from_env()
    if not settings.redis_url:
        # State lives in Redis in production; this process has no in-memory states to lose
        settings = settings.model_copy(update={"allow_redis_fallback_dev": True})
    runtime = Runtime(settings)
    try:
        if dry_run:
            return count_expired(runtime)
        return sweep(runtime)
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Sweep expired authentication records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count expired records without deleting anything",
    )
    args = parser.parse_args()

    try:
        removed = asyncio.run(_run(args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    verb = "would be removed" if args.dry_run else "removed"
    if args.dry_run:
        print("[DRY RUN] No records deleted")
    for kind, count in removed.items():
        print(f"  {kind}: {count} {verb}")


if __name__ == "__main__":
    main()
