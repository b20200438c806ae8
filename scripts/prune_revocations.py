#!/usr/bin/env python3
"""Drop revocation entries whose tokens have expired on their own.

The API server does this periodically (REVOCATION_PRUNE_INTERVAL_SECONDS);
this script runs a single pass, e.g. from cron when the interval is 0.

Usage:
    DATABASE_URL=postgresql://... python scripts/prune_revocations.py
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def prune() -> int:
    from taskman.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await runtime.auth.prune_revocations()
    finally:
        if runtime.redis is not None:
            await runtime.redis.close()


def main():
    parser = argparse.ArgumentParser(
        description="Prune expired token revocations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.parse_args()

    try:
        removed = asyncio.run(prune())
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Removed {removed} expired revocation entries")


if __name__ == "__main__":
    main()
