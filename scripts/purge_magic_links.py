"""
Periodically delete magic-link tokens that have expired or been used.
"""

from __future__ import annotations

import argparse
import logging
import random
import sys
import time
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pollboard.db import DbClient
from pollboard.dependencies import get_db_client

logger = logging.getLogger(__name__)


def purge(db: DbClient, grace_minutes: int = 0, now: Optional[float] = None) -> int:
    """Delete links that expired or were used more than `grace_minutes` ago."""
    now = time.time() if now is None else now
    cutoff = now - grace_minutes * 60
    removed = db.purge_magic_links(cutoff)
    logger.info("Purged %d magic links older than %.0f", removed, cutoff)
    return removed


def main() -> int:
    parser = argparse.ArgumentParser(description="Magic link cleanup")
    parser.add_argument(
        "--grace-minutes",
        type=int,
        default=60,
        help="Keep expired or used links for this many minutes",
    )
    parser.add_argument(
        "--interval-seconds",
        type=int,
        default=3600,
        help="Seconds between cleanup runs",
    )
    parser.add_argument(
        "--jitter-seconds",
        type=int,
        default=60,
        help="Max random jitter added to sleep",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cleanup and exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    db = get_db_client()
    while True:
        try:
            purge(db, args.grace_minutes)
        except Exception as exc:
            logger.exception("Cleanup failed: %s", exc)

        if args.once:
            return 0

        sleep_for = args.interval_seconds + random.uniform(0, args.jitter_seconds)
        logger.info("Sleeping for %.1fs", sleep_for)
        time.sleep(sleep_for)


if __name__ == "__main__":
    raise SystemExit(main())
