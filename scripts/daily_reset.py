"""Run the daily quota reset once.

Usage:
  python scripts/daily_reset.py
  python scripts/daily_reset.py --force

Without ``--force`` the run is skipped when today's reset already happened,
so it is safe to call from cron next to the in-process scheduler.
"""

from __future__ import annotations

import argparse
import json
import logging

from gatekeeper.config import Settings
from gatekeeper.db import SessionLocal, init_db
from gatekeeper.logger import setup_logging
from gatekeeper.services.reset import run_daily_reset


def main() -> None:
    parser = argparse.ArgumentParser(description="Reset daily quota usage.")
    parser.add_argument("--force", action="store_true", help="Run even if today's reset is done")
    parser.add_argument("--actor-id", default="cli", help="Actor recorded in the audit trail")
    args = parser.parse_args()

    setup_logging()
    init_db(Settings())

    with SessionLocal() as session:
        result = run_daily_reset(session, force=args.force, actor_id=args.actor_id)
    if result.skipped:
        logging.info("reset for %s already done", result.reset_date.isoformat())
    print(json.dumps(result.as_dict()))


if __name__ == "__main__":
    main()
