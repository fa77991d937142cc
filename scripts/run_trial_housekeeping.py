#!/usr/bin/env python3
"""
Trial housekeeping job.

Resolves every team whose trial window has elapsed: TRIAL projects are
suspended (no subscription) or moved onto the team's subscription.

Usage:
  python scripts/run_trial_housekeeping.py
  python scripts/run_trial_housekeeping.py --interval 3600

Notes:
- Intended for an external scheduler (cron, Kubernetes CronJob). With
  --interval the job loops instead, sleeping between passes.
- A team that fails keeps its trial marker and is retried on the next pass.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add repo root to sys.path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


async def run_job(interval: float | None) -> int:
    from src.billing.service import BillingService
    from src.config import get_settings
    from src.observability.logging import configure_logging, get_logger
    from src.storage.database import PlatformDatabase

    settings = get_settings()
    configure_logging(
        log_level=settings.logging.level,
        json_output=settings.logging.json_output,
        colorized=settings.logging.colorized,
    )
    logger = get_logger("trial_housekeeping")

    db = PlatformDatabase(db_path=settings.database.path)
    await db.initialize()

    try:
        billing = BillingService(settings, db)
        if not billing.client.is_enabled:
            logger.warning("Stripe API key not configured. Teams with subscriptions will fail.")

        while True:
            result = await billing.run_trial_housekeeping()
            logger.info(
                "Trial housekeeping pass finished",
                suspended=len(result.suspended),
                billed=len(result.billed),
                failed=len(result.failed),
            )

            if interval is None:
                return 2 if result.failed else 0

            await asyncio.sleep(interval)

    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run trial housekeeping (suspend or bill expired trial projects)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between passes; run once and exit when omitted",
    )
    args = parser.parse_args()

    if args.interval is not None and args.interval <= 0:
        parser.error("--interval must be positive")

    try:
        exit_code = asyncio.run(run_job(interval=args.interval))
    except KeyboardInterrupt:
        exit_code = 0
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
