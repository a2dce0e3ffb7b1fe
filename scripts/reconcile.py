#!/usr/bin/env python3
"""Ledger Reconciliation Script.

Replays the audit log and compares it with stored balances and deposit
credits. Exits non-zero when anything disagrees.

Usage:
    python scripts/reconcile.py [--json]

Options:
    --json   Print problems as JSON lines instead of a summary
"""

import argparse
import asyncio
import json
import logging
import sys

from dotenv import load_dotenv

from starbit.ledger.database import close_db, get_db, init_db
from starbit.ledger.reconcile import reconcile

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def main() -> int:
    parser = argparse.ArgumentParser(description="Ledger Reconciliation")
    parser.add_argument("--json", action="store_true", help="Print problems as JSON lines")
    args = parser.parse_args()

    await init_db()

    logger.info("=" * 60)
    logger.info("LEDGER RECONCILIATION")
    logger.info("=" * 60)

    try:
        async with get_db() as session:
            problems = await reconcile(session)
    finally:
        await close_db()

    if args.json:
        for problem in problems:
            print(json.dumps(problem, default=str))
    else:
        by_kind: dict[str, int] = {}
        for problem in problems:
            by_kind[problem["kind"]] = by_kind.get(problem["kind"], 0) + 1
        logger.info("SUMMARY: " + ("OK" if not problems else "DISCREPANCY"))
        for kind, count in sorted(by_kind.items()):
            logger.info(f"  {kind}: {count}")

    return 1 if problems else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
